import time
from typing import Callable

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from botframework_auth import AuthenticationError, ChannelAuthenticator
from botframework_messaging import Activity
from conftest import APP_ID, SERVICE_URL


def _activity(service_url: str = SERVICE_URL) -> Activity:
    return Activity.model_validate({"type": "message", "from": {"id": "user-1"}, "conversation": {"id": "c"}, "serviceUrl": service_url})


def test_authenticator_is_disabled_without_app_id() -> None:
    assert not ChannelAuthenticator(None).enabled
    assert ChannelAuthenticator(APP_ID).enabled


@pytest.mark.asyncio
async def test_valid_channel_token_is_accepted(channel_authenticator: ChannelAuthenticator, make_token: Callable[..., str]) -> None:
    claims = await channel_authenticator.authenticate(f"Bearer {make_token()}", _activity(SERVICE_URL + "/"))
    assert claims["aud"] == APP_ID
    assert claims["serviceurl"] == SERVICE_URL


@pytest.mark.asyncio
@pytest.mark.parametrize("header", [None, "", "Bearer ", "Basic abc", "Bearer not-a-jwt"])
async def test_missing_or_garbled_header_is_rejected(channel_authenticator: ChannelAuthenticator, header) -> None:
    with pytest.raises(AuthenticationError):
        await channel_authenticator.authenticate(header, _activity())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "claims",
    [
        {"aud": "some-other-bot"},
        {"iss": "https://attacker.example"},
        {"exp": int(time.time()) - 3600},
        {"serviceurl": None},
        {"serviceurl": "https://attacker.example"},
    ],
)
async def test_token_claims_are_enforced(channel_authenticator: ChannelAuthenticator, make_token: Callable[..., str], claims) -> None:
    with pytest.raises(AuthenticationError):
        await channel_authenticator.authenticate(f"Bearer {make_token(**claims)}", _activity())


@pytest.mark.asyncio
async def test_token_must_match_activity_service_url(channel_authenticator: ChannelAuthenticator, make_token: Callable[..., str]) -> None:
    with pytest.raises(AuthenticationError):
        await channel_authenticator.authenticate(f"Bearer {make_token()}", _activity("https://attacker.example"))


@pytest.mark.asyncio
async def test_token_signed_by_unknown_key_is_rejected(channel_authenticator: ChannelAuthenticator, make_token: Callable[..., str]) -> None:
    other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    with pytest.raises(AuthenticationError):
        await channel_authenticator.authenticate(f"Bearer {make_token(key=other_key)}", _activity())
