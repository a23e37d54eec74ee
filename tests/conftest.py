from __future__ import annotations

import time
from typing import Any, Callable

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from botframework_auth import BOT_FRAMEWORK_ISSUER, ChannelAuthenticator

APP_ID = "app-id"
SERVICE_URL = "https://connector.example.com"


@pytest.fixture(scope="session")
def signing_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def make_token(signing_key: rsa.RSAPrivateKey) -> Callable[..., str]:
    def _make(key: Any = None, **claims: Any) -> str:
        now = int(time.time())
        payload = {"iss": BOT_FRAMEWORK_ISSUER, "aud": APP_ID, "serviceurl": SERVICE_URL, "iat": now, "nbf": now, "exp": now + 300}
        payload.update(claims)
        payload = {name: value for name, value in payload.items() if value is not None}
        return jwt.encode(payload, key or signing_key, algorithm="RS256")

    return _make


@pytest.fixture
def channel_authenticator(signing_key: rsa.RSAPrivateKey) -> ChannelAuthenticator:
    return ChannelAuthenticator(APP_ID, key_resolver=lambda token: signing_key.public_key())
