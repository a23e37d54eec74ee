# botframework_auth.py
"""
Inbound Bot Framework request authentication.

Channel requests carry `Authorization: Bearer <jwt>` signed by the Bot
Connector service. The token must be:
- signed with one of the keys published at BOT_FRAMEWORK_KEYS_URL (RS256)
- issued by https://api.botframework.com
- addressed to this bot (aud == MicrosoftAppId)
- bound to the activity's serviceUrl (serviceurl claim)

Replies carry the bot's own access token to serviceUrl, so an activity is
never processed with an unverified serviceUrl while credentials are set.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import jwt

from botframework_messaging import Activity

logger = logging.getLogger("botframework_auth")

BOT_FRAMEWORK_KEYS_URL = "https://login.botframework.com/v1/.well-known/keys"
BOT_FRAMEWORK_ISSUER = "https://api.botframework.com"
ALLOWED_ALGORITHMS = ["RS256"]
CLOCK_SKEW_SECONDS = 300


class AuthenticationError(Exception):
    """The inbound request is not a valid Bot Connector request for this bot."""


class ChannelAuthenticator:
    def __init__(self, app_id: Optional[str], key_resolver: Optional[Callable[[str], Any]] = None):
        self.app_id = app_id
        self._key_resolver = key_resolver
        self._jwks_client: Optional[jwt.PyJWKClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.app_id)

    def _signing_key(self, token: str) -> Any:
        if self._key_resolver is not None:
            return self._key_resolver(token)
        if self._jwks_client is None:
            self._jwks_client = jwt.PyJWKClient(BOT_FRAMEWORK_KEYS_URL)
        return self._jwks_client.get_signing_key_from_jwt(token).key

    async def authenticate(self, authorization: Optional[str], activity: Activity) -> Dict[str, Any]:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("missing bearer token")
        token = token.strip()
        try:
            # PyJWKClient fetches the key set with blocking urllib calls.
            key = await asyncio.to_thread(self._signing_key, token)
            claims = jwt.decode(
                token,
                key,
                algorithms=ALLOWED_ALGORITHMS,
                audience=self.app_id,
                issuer=BOT_FRAMEWORK_ISSUER,
                leeway=CLOCK_SKEW_SECONDS,
                options={"require": ["exp", "iss", "aud"]},
            )
        except jwt.PyJWTError as exc:
            logger.warning("Rejected channel token: %s", exc)
            raise AuthenticationError(str(exc)) from exc

        service_url = claims.get("serviceurl")
        if not service_url or not activity.service_url or service_url.rstrip("/") != activity.service_url.rstrip("/"):
            logger.warning("Rejected channel token: serviceurl claim %r does not match activity serviceUrl %r", service_url, activity.service_url)
            raise AuthenticationError("serviceurl claim does not match the activity")
        return claims
