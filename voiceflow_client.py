# voiceflow_client.py
"""
Voiceflow Dialog Manager runtime client.

Provides:
- VoiceflowClient.interact (state update + interact, one turn)
- UpstreamUnavailable

Endpoints used:
PATCH {endpoint}/state/user/{user_id}/variables
POST  {endpoint}/state/user/{user_id}/interact
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger("voiceflow_client")

DM_CONFIG: Dict[str, bool] = {"tts": False, "stripSSML": False}


class UpstreamUnavailable(Exception):
    """Either dialogue API call failed (network, timeout, non-2xx or unusable body)."""


class VoiceflowClient:
    def __init__(self, endpoint: Optional[str], api_key: Optional[str], version_id: Optional[str] = None, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.endpoint = endpoint.rstrip("/") if endpoint else None
        self.api_key = api_key
        self.version_id = version_id
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint and self.api_key)

    def _user_url(self, user_id: str, action: str) -> str:
        return f"{self.endpoint}/state/user/{quote(user_id, safe='')}/{action}"

    def _headers(self, with_version: bool = False) -> Dict[str, str]:
        headers = {"Authorization": self.api_key or "", "Content-Type": "application/json"}
        if with_version and self.version_id:
            headers["versionID"] = self.version_id
        return headers

    async def interact(self, user_id: str, utterance: str) -> List[Dict[str, Any]]:
        if not self.enabled:
            raise UpstreamUnavailable("Voiceflow runtime endpoint or API key is not configured")
        request = {"type": "text", "payload": utterance}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                await self._update_user_variables(client, user_id)
                response = await client.post(self._user_url(user_id, "interact"), json={"action": request, "config": DM_CONFIG}, headers=self._headers(with_version=True))
                self._check(response, "interact")
        except httpx.HTTPError as exc:
            logger.error("Voiceflow request failed for user=%s: %s", user_id, exc)
            raise UpstreamUnavailable(str(exc)) from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable("interact returned a non-JSON body") from exc
        if not isinstance(data, list):
            logger.error("Unexpected interact payload for user=%s: %r", user_id, data)
            raise UpstreamUnavailable("interact returned %s instead of a list" % type(data).__name__)
        return data

    async def _update_user_variables(self, client: httpx.AsyncClient, user_id: str) -> None:
        # Keeps the {user_id} variable in the Voiceflow project in sync with the channel user.
        response = await client.patch(self._user_url(user_id, "variables"), json={"user_id": user_id}, headers=self._headers())
        self._check(response, "variables")

    @staticmethod
    def _check(response: httpx.Response, step: str) -> None:
        if not response.is_success:
            logger.error("Voiceflow %s failed - status=%s body=%s", step, response.status_code, response.text)
            response.raise_for_status()
