# chatbot.py
"""
Voiceflow Dialog Manager bridge for Bot Framework channels.

- One inbound endpoint (/api/messages) receiving Bot Framework activities.
- Each user message is forwarded to the Voiceflow runtime (variables update +
  interact), the returned traces are normalized and sent back to the channel
  as text messages and hero cards, one by one and in order.
- All conversation state lives in Voiceflow, keyed by the channel user id.
- Integrates with:
    - voiceflow_client.VoiceflowClient
    - dm_responses.parse_responses
    - botframework_messaging.BotConnectorClient
    - botframework_auth.ChannelAuthenticator (inbound JWT check when MICROSOFT_APP_ID is set)
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from botframework_auth import AuthenticationError, ChannelAuthenticator
from botframework_messaging import (
    ERROR_TRACE_VALUE_TYPE,
    Activity,
    BotConnectorClient,
    ChannelSendFailure,
    hero_card_activity,
    text_activity,
    trace_activity,
)
from dm_responses import ButtonSetMessage, ImageMessage, NormalizedMessage, TextMessage, parse_responses
from voiceflow_client import UpstreamUnavailable, VoiceflowClient

try:
    from mangum import Mangum
except ImportError:  # pragma: no cover - mangum optional for local runs
    Mangum = None

# --- Configuration & logging ---
load_dotenv()
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger("voiceflow_bridge.chatbot")


def env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


VOICEFLOW_RUNTIME_ENDPOINT = os.getenv("VOICEFLOW_RUNTIME_ENDPOINT", "https://general-runtime.voiceflow.com")
VOICEFLOW_API_KEY = os.getenv("VOICEFLOW_API_KEY")
VOICEFLOW_VERSION = os.getenv("VOICEFLOW_VERSION", "production")
VOICEFLOW_TIMEOUT = float(os.getenv("VOICEFLOW_TIMEOUT", "10"))
MICROSOFT_APP_ID = os.getenv("MicrosoftAppId")
MICROSOFT_APP_PASSWORD = os.getenv("MicrosoftAppPassword")
MICROSOFT_APP_TENANT_ID = os.getenv("MicrosoftAppTenantId")
BOT_CONNECTOR_TIMEOUT = float(os.getenv("BOT_CONNECTOR_TIMEOUT", "10"))
SERIALIZE_USER_TURNS = env_flag("SERIALIZE_USER_TURNS", True)
AZURE_APP_URL = os.getenv("AZURE_APP_URL")
PORT = int(os.getenv("PORT", "3978"))

UPSTREAM_FAILURE_TEXT = "Failed to communicate with Voiceflow API."
PROCESSING_FAILURE_TEXT = "There was an issue processing your message."
TURN_ERROR_TEXTS = ("The bot encountered an error or bug.", "Please check the bot source code for errors.")

dm_client = VoiceflowClient(VOICEFLOW_RUNTIME_ENDPOINT, VOICEFLOW_API_KEY, VOICEFLOW_VERSION, timeout=VOICEFLOW_TIMEOUT)
messenger = BotConnectorClient(MICROSOFT_APP_ID, MICROSOFT_APP_PASSWORD, MICROSOFT_APP_TENANT_ID, timeout=BOT_CONNECTOR_TIMEOUT)
authenticator = ChannelAuthenticator(MICROSOFT_APP_ID)


@contextlib.asynccontextmanager
async def lifespan(_app: FastAPI):
    if AZURE_APP_URL:
        logger.info("Endpoint (Azure): %s/api/messages", AZURE_APP_URL.rstrip("/"))
    else:
        logger.info("Endpoint: http://localhost:%s/api/messages", PORT)
    if not dm_client.enabled:
        logger.warning("VOICEFLOW_API_KEY is not set; every turn will fail upstream")
    yield
    logger.info("Bye!")


app = FastAPI(title="Voiceflow Bot Framework Bridge", version="1.0.0", lifespan=lifespan)
_lambda_adapter = Mangum(app) if Mangum else None

# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------

class TurnState(str, Enum):
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Turn:
    user_id: str
    utterance: str
    state: TurnState = TurnState.PROCESSING
    items: List[Dict[str, Any]] = field(default_factory=list)
    messages: List[NormalizedMessage] = field(default_factory=list)
    error: Optional[Exception] = None

    def fail(self, error: Exception) -> None:
        self.state = TurnState.FAILED
        self.error = error


class UserTurnLocks:
    """One asyncio.Lock per user id, dropped once no turn holds or awaits it."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


user_locks = UserTurnLocks()


def turn_guard(user_id: str):
    if not SERIALIZE_USER_TURNS:
        return contextlib.nullcontext()
    return user_locks.get(user_id)

# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_message(message: NormalizedMessage) -> Dict[str, Any]:
    if isinstance(message, ImageMessage):
        return hero_card_activity(images=[message.url])
    if isinstance(message, ButtonSetMessage):
        return hero_card_activity(buttons=message.labels)
    if isinstance(message, TextMessage):
        return text_activity(message.value)
    raise TypeError(f"Unsupported message type: {type(message).__name__}")


async def send_messages(activity: Activity, messages: List[NormalizedMessage]) -> None:
    # Each send completes before the next one starts.
    for message in messages:
        await messenger.send_activity(activity, render_message(message))


async def notify_user(activity: Activity, text: str) -> None:
    try:
        await messenger.send_activity(activity, text_activity(text))
    except ChannelSendFailure:
        logger.exception("Failed to notify user=%s", activity.user_id)

# ---------------------------------------------------------------------------
# Main message handler
# ---------------------------------------------------------------------------

async def handle_incoming_activity(activity: Activity) -> Optional[Turn]:
    if activity.type != "message":
        return None
    user_id = activity.user_id
    if not user_id:
        logger.warning("Ignoring message activity without a sender id: id=%s", activity.id)
        return None

    turn = Turn(user_id=user_id, utterance=activity.text or "")
    async with turn_guard(user_id):
        try:
            turn.items = await dm_client.interact(turn.user_id, turn.utterance)
        except UpstreamUnavailable as exc:
            logger.error("[Error in interact] user=%s: %s", user_id, exc)
            turn.fail(exc)
            await notify_user(activity, UPSTREAM_FAILURE_TEXT)
            return turn

        turn.messages = parse_responses(turn.items)
        try:
            await send_messages(activity, turn.messages)
        except ChannelSendFailure as exc:
            logger.error("[Error in processing message] user=%s: %s", user_id, exc)
            turn.fail(exc)
            await notify_user(activity, PROCESSING_FAILURE_TEXT)
            return turn

    turn.state = TurnState.DONE
    logger.debug("Turn done user=%s traces=%d messages=%d", user_id, len(turn.items), len(turn.messages))
    return turn


async def on_turn_error(activity: Activity, error: Exception) -> None:
    logger.error("[on_turn_error] unhandled error: %s", error, exc_info=error)
    payloads = [trace_activity("OnTurnError Trace", str(error), ERROR_TRACE_VALUE_TYPE, "TurnError")]
    payloads.extend(text_activity(text) for text in TURN_ERROR_TEXTS)
    for payload in payloads:
        try:
            await messenger.send_activity(activity, payload)
        except ChannelSendFailure:
            logger.exception("Failed to report turn error to user=%s", activity.user_id)
            return

# ---------------------------------------------------------------------------
# Webhook endpoints
# ---------------------------------------------------------------------------

@app.get("/")
def index():
    return PlainTextResponse("Bot is running!")


@app.post("/api/messages")
async def receive_activity(request: Request):
    try:
        activity = Activity.model_validate(await request.json())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid activity: {exc}")
    if authenticator.enabled:
        try:
            await authenticator.authenticate(request.headers.get("Authorization"), activity)
        except AuthenticationError:
            raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        turn = await handle_incoming_activity(activity)
    except Exception as exc:
        await on_turn_error(activity, exc)
        return JSONResponse({"status": "failed"})
    if turn is None:
        return JSONResponse({"status": "ignored"})
    return JSONResponse({"status": "processed" if turn.state is TurnState.DONE else "failed"})


@app.get("/healthz")
def healthcheck():
    return {"status": "ok", "voiceflow_enabled": dm_client.enabled, "voiceflow_version": VOICEFLOW_VERSION, "connector_credentials": messenger.has_credentials}

# ---------------------------------------------------------------------------
# Local runner
# ---------------------------------------------------------------------------

def run():
    import uvicorn
    uvicorn.run("chatbot:app", host="0.0.0.0", port=PORT, reload=env_flag("RELOAD", False))

def lambda_handler(event, context):
    if not _lambda_adapter:
        raise RuntimeError("Mangum is not installed. Cannot handle Lambda events.")
    return _lambda_adapter(event, context)

if __name__ == "__main__":
    run()
