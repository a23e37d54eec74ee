import json

import httpx
import pytest

from voiceflow_client import DM_CONFIG, UpstreamUnavailable, VoiceflowClient


def _client(handler, **kwargs) -> VoiceflowClient:
    return VoiceflowClient("https://runtime.example.com/", "VF.DM.key", "production", transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.asyncio
async def test_interact_updates_variables_then_interacts() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "PATCH":
            return httpx.Response(200, json={})
        return httpx.Response(200, json=[{"type": "text", "payload": {"message": "Hi"}}])

    traces = await _client(handler).interact("user 1/a", "hello")

    assert traces == [{"type": "text", "payload": {"message": "Hi"}}]
    patch, post = seen
    assert patch.method == "PATCH"
    assert patch.url.raw_path.decode() == "/state/user/user%201%2Fa/variables"
    assert json.loads(patch.content) == {"user_id": "user 1/a"}
    assert patch.headers["Authorization"] == "VF.DM.key"
    assert patch.headers["Content-Type"] == "application/json"
    assert "versionID" not in patch.headers

    assert post.method == "POST"
    assert post.url.raw_path.decode() == "/state/user/user%201%2Fa/interact"
    assert json.loads(post.content) == {"action": {"type": "text", "payload": "hello"}, "config": DM_CONFIG}
    assert post.headers["versionID"] == "production"
    assert post.headers["Authorization"] == "VF.DM.key"


@pytest.mark.asyncio
async def test_variables_failure_skips_interact() -> None:
    methods = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        return httpx.Response(401, json={"message": "unauthorized"})

    with pytest.raises(UpstreamUnavailable):
        await _client(handler).interact("u1", "hello")
    assert methods == ["PATCH"]


@pytest.mark.asyncio
async def test_interact_failure_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PATCH":
            return httpx.Response(200, json={})
        return httpx.Response(503, text="unavailable")

    with pytest.raises(UpstreamUnavailable):
        await _client(handler).interact("u1", "hello")


@pytest.mark.asyncio
async def test_network_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(UpstreamUnavailable) as info:
        await _client(handler).interact("u1", "hello")
    assert isinstance(info.value.__cause__, httpx.ConnectTimeout)


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b'{"trace": []}', b"<html>"])
async def test_unusable_interact_body_raises(body: bytes) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PATCH":
            return httpx.Response(200, json={})
        return httpx.Response(200, content=body)

    with pytest.raises(UpstreamUnavailable):
        await _client(handler).interact("u1", "hello")


@pytest.mark.asyncio
async def test_unconfigured_client_fails_without_io() -> None:
    client = VoiceflowClient("https://runtime.example.com", None)
    assert not client.enabled
    with pytest.raises(UpstreamUnavailable):
        await client.interact("u1", "hello")
