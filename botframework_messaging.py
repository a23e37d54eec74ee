# botframework_messaging.py
"""
Bot Framework connector helper class with activity and hero card builders.

Provides:
- Activity (inbound activity model)
- text_activity
- hero_card_activity
- trace_activity
- BotConnectorClient.send_activity
- ChannelSendFailure

Replies are posted to the Bot Connector REST endpoint of the inbound activity:
{serviceUrl}/v3/conversations/{conversationId}/activities/{replyToId}
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("botframework_messaging")

HERO_CARD_CONTENT_TYPE = "application/vnd.microsoft.card.hero"
ERROR_TRACE_VALUE_TYPE = "https://www.botframework.com/schemas/error"
TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
TOKEN_SCOPE = "https://api.botframework.com/.default"
TOKEN_REFRESH_MARGIN = 60.0


class ChannelSendFailure(Exception):
    """An outbound activity could not be delivered to the channel."""


class ChannelAccount(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    name: Optional[str] = None


class ConversationAccount(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None


class Activity(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str
    id: Optional[str] = None
    text: Optional[str] = None
    from_: Optional[ChannelAccount] = Field(default=None, alias="from")
    recipient: Optional[ChannelAccount] = None
    conversation: Optional[ConversationAccount] = None
    service_url: Optional[str] = Field(default=None, alias="serviceUrl")
    channel_id: Optional[str] = Field(default=None, alias="channelId")

    @property
    def user_id(self) -> Optional[str]:
        return self.from_.id if self.from_ else None


def text_activity(text: str) -> Dict[str, Any]:
    return {"type": "message", "text": text, "inputHint": "acceptingInput"}


def hero_card_activity(images: Optional[List[str]] = None, buttons: Optional[List[str]] = None, title: Optional[str] = None) -> Dict[str, Any]:
    # imBack actions post their value back to the bot as a regular user message.
    content: Dict[str, Any] = {
        "images": [{"url": url} for url in images or []],
        "buttons": [{"type": "imBack", "title": label, "value": label} for label in buttons or []],
    }
    if title:
        content["title"] = title
    return {"type": "message", "attachments": [{"contentType": HERO_CARD_CONTENT_TYPE, "content": content}], "inputHint": "acceptingInput"}


def trace_activity(name: str, value: Any, value_type: Optional[str] = None, label: Optional[str] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"type": "trace", "name": name, "value": value}
    if value_type:
        payload["valueType"] = value_type
    if label:
        payload["label"] = label
    return payload


class BotConnectorClient:
    def __init__(self, app_id: Optional[str], app_password: Optional[str], tenant_id: Optional[str] = None, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.app_id = app_id
        self.app_password = app_password
        self.tenant_id = tenant_id or "botframework.com"
        self.timeout = timeout
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.app_id and self.app_password)

    def reply_url(self, activity: Activity) -> str:
        base = (activity.service_url or "").rstrip("/")
        conversation_id = quote(activity.conversation.id if activity.conversation and activity.conversation.id else "", safe="")
        url = f"{base}/v3/conversations/{conversation_id}/activities"
        if activity.id:
            url += "/" + quote(activity.id, safe="")
        return url

    def reply_payload(self, activity: Activity, payload: Dict[str, Any]) -> Dict[str, Any]:
        reply = dict(payload)
        if activity.recipient:
            reply["from"] = activity.recipient.model_dump(exclude_none=True)
        if activity.from_:
            reply["recipient"] = activity.from_.model_dump(exclude_none=True)
        if activity.conversation:
            reply["conversation"] = activity.conversation.model_dump(exclude_none=True)
        if activity.channel_id:
            reply["channelId"] = activity.channel_id
        if activity.service_url:
            reply["serviceUrl"] = activity.service_url
        if activity.id:
            reply["replyToId"] = activity.id
        return reply

    async def send_activity(self, activity: Activity, payload: Dict[str, Any]) -> None:
        reply = self.reply_payload(activity, payload)
        if not activity.service_url:
            logger.info("[dry-run] %s", json.dumps(reply, indent=2, ensure_ascii=False))
            return
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                headers = {"Content-Type": "application/json"}
                if self.has_credentials:
                    headers["Authorization"] = f"Bearer {await self._access_token(client)}"
                response = await client.post(self.reply_url(activity), json=reply, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ChannelSendFailure(f"connector request failed: {exc}") from exc
        if not response.is_success:
            logger.error("Bot Connector send failed - status=%s body=%s", response.status_code, response.text)
            raise ChannelSendFailure(f"connector returned {response.status_code}")

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        data = {"grant_type": "client_credentials", "client_id": self.app_id, "client_secret": self.app_password, "scope": TOKEN_SCOPE}
        response = await client.post(TOKEN_URL.format(tenant=self.tenant_id), data=data)
        if not response.is_success:
            logger.error("Bot Framework token request failed - status=%s body=%s", response.status_code, response.text)
            raise ChannelSendFailure(f"token endpoint returned {response.status_code}")
        try:
            body = response.json()
            self._token = body["access_token"]
            self._token_expires_at = time.monotonic() + float(body.get("expires_in", 3600)) - TOKEN_REFRESH_MARGIN
        except (ValueError, KeyError, TypeError) as exc:
            raise ChannelSendFailure("token endpoint returned an unusable body") from exc
        return self._token
