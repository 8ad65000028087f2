"""Tests for the chat gateways and pool registries, against mocked transports."""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from openai import APIConnectionError

from persona_sim.config import Settings
from persona_sim.errors import GatewayError
from persona_sim.gateway.chat import (
    ModelKeyGateway,
    OpenAIGateway,
    _to_openai_messages,
    make_chat_gateway,
)
from persona_sim.gateway.pools import (
    HttpModelPoolRegistry,
    StaticModelPoolRegistry,
    make_pool_registry,
)

pytestmark = pytest.mark.asyncio

URL = "https://chat.example/api/chat"
MESSAGES = [{"role": "system", "content": "hi"}]


def _gateway(handler, attempts=5):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ModelKeyGateway(URL, max_attempts=attempts, poll_interval=0, client=client)


def _task_api(statuses, create=(200, {"success": True, "taskId": "t1"})):
    """Answer the create POST, then one (status_code, body) from `statuses` per poll."""
    polls = iter(statuses)
    seen = {"polls": 0, "created": None}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            seen["created"] = json.loads(request.content)
            return httpx.Response(create[0], json=create[1])
        seen["polls"] += 1
        code, body = next(polls)
        return httpx.Response(code, json=body)

    return handler, seen


async def test_completed_task_returns_content():
    handler, seen = _task_api([
        (200, {"status": "pending"}),
        (200, {"status": "completed", "result": {"success": True, "response": {"content": "{}"}}}),
    ])
    result = await _gateway(handler).call("pool-a", MESSAGES, instance_id=7)
    assert result.success and result.content == "{}"
    assert seen["created"] == {"modelKey": "pool-a", "messages": MESSAGES, "instanceId": 7}
    assert seen["polls"] == 2


async def test_poll_http_error_is_skipped():
    handler, seen = _task_api([
        (503, None),
        (200, {"status": "completed", "result": {"success": False, "error": {"message": "busy"}}}),
    ])
    result = await _gateway(handler).call("pool-a", MESSAGES)
    assert not result.success
    assert result.error_message == "busy"


async def test_failed_task_raises():
    handler, _ = _task_api([(200, {"status": "failed", "error": {"message": "model crashed"}})])
    with pytest.raises(GatewayError, match="model crashed"):
        await _gateway(handler).call("pool-a", MESSAGES)


async def test_poll_exhaustion_times_out():
    handler, seen = _task_api([(200, {"status": "running"})] * 3)
    with pytest.raises(GatewayError, match="timed out"):
        await _gateway(handler, attempts=3).call("pool-a", MESSAGES)
    assert seen["polls"] == 3


async def test_create_error_uses_body_message():
    handler, _ = _task_api([], create=(400, {"error": "unknown modelKey"}))
    with pytest.raises(GatewayError, match="unknown modelKey"):
        await _gateway(handler).call("pool-a", MESSAGES)


async def test_transport_error_becomes_gateway_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GatewayError):
        await _gateway(handler).call("pool-a", MESSAGES)


async def test_arguments_are_required():
    gateway = _gateway(lambda r: httpx.Response(500))
    with pytest.raises(ValueError):
        await gateway.call("", MESSAGES)
    with pytest.raises(ValueError):
        await gateway.call("pool-a", [])


# ── OpenAI ────────────────────────────────────────────────────────────────────

def _openai_client(content='{"liked": true}'):
    mock_client = MagicMock()
    mock_client.chat.completions.create = AsyncMock()
    mock_client.chat.completions.create.return_value.choices[0].message.content = content
    return mock_client


async def test_openai_gateway_maps_image_blocks():
    mock_client = _openai_client()
    messages = [
        {"role": "system", "content": "persona"},
        {"role": "user", "content": [{"type": "image", "image": {"format": "png", "source_url": "https://x/a.png"}}]},
    ]
    result = await OpenAIGateway(client=mock_client).call("gpt-4o", messages, instance_id=3)
    assert result.success and result.content == '{"liked": true}'
    kwargs = mock_client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o"
    assert kwargs["user"] == "persona-3"
    assert kwargs["messages"][1]["content"] == [{"type": "image_url", "image_url": {"url": "https://x/a.png"}}]


async def test_openai_error_is_unsuccessful_result():
    mock_client = _openai_client()
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    mock_client.chat.completions.create.side_effect = APIConnectionError(request=request)
    result = await OpenAIGateway(client=mock_client).call("gpt-4o", MESSAGES)
    assert not result.success
    assert result.error_message


async def test_openai_gateway_uses_api_key():
    with patch("persona_sim.gateway.chat.AsyncOpenAI") as MockOpenAI:
        OpenAIGateway("sk-test")
    MockOpenAI.assert_called_once_with(api_key="sk-test")


async def test_text_messages_pass_through():
    assert _to_openai_messages(MESSAGES) == MESSAGES


# ── Pool registries and factories ─────────────────────────────────────────────

async def test_http_registry_keeps_active_pools_in_order():
    def handler(request):
        return httpx.Response(200, json={"count": 3, "pools": [
            {"poolId": "b", "isActive": True},
            {"poolId": "c", "isActive": False},
            {"poolId": "a", "isActive": True},
        ]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    assert await HttpModelPoolRegistry("https://pools", client=client).list_active_pool_ids() == ["b", "a"]


async def test_http_registry_error():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(RuntimeError):
        await HttpModelPoolRegistry("https://pools", client=client).list_active_pool_ids()


async def test_factories_follow_chat_backend():
    settings = Settings(chat_backend="modelkey", chat_api_url=URL, model_pools_url="https://pools")
    assert isinstance(make_chat_gateway(settings), ModelKeyGateway)
    assert isinstance(make_pool_registry(settings), HttpModelPoolRegistry)

    settings = Settings(chat_backend="openai", openai_api_key="sk-test")
    assert isinstance(make_chat_gateway(settings), OpenAIGateway)
    registry = make_pool_registry(settings)
    assert isinstance(registry, StaticModelPoolRegistry)
    assert await registry.list_active_pool_ids() == ["gpt-4o"]

    with pytest.raises(ValueError):
        make_chat_gateway(Settings(chat_backend="modelkey"))
    with pytest.raises(ValueError):
        make_chat_gateway(Settings(chat_backend="openai"))
    with pytest.raises(ValueError):
        make_pool_registry(Settings(chat_backend="carrier-pigeon"))
