"""Model call gateways: one chat completion per persona, behind a common interface.

Toggle via CHAT_BACKEND:
  CHAT_BACKEND=modelkey   (default) task-based chat API, polled until done
  CHAT_BACKEND=openai     OpenAI chat completions, routing key = model name
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
from openai import AsyncOpenAI, OpenAIError

from persona_sim.config import Settings
from persona_sim.errors import GatewayError
from persona_sim.utils.retry import llm_call_with_retry

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatResult:
    success: bool
    content: str | None = None
    error_message: str | None = None


# ── Protocol ─────────────────────────────────────────────────────────────────

@runtime_checkable
class ChatGateway(Protocol):
    """Minimal interface for sending one chat exchange to a model pool."""

    async def call(self, routing_key: str, messages: list[dict[str, Any]], *, instance_id: int = 0) -> ChatResult:
        """Run the exchange on the pool named by routing_key.

        instance_id spreads load across duplicate instances of the same model.
        May raise GatewayError; retries and polling are internal.
        """
        ...

    async def aclose(self) -> None:
        ...


# ── ModelKeyGateway ───────────────────────────────────────────────────────────

class ModelKeyGateway:
    """Creates a chat task with POST, then polls GET {url}/{taskId} until it settles."""

    def __init__(
        self,
        url: str,
        *,
        max_attempts: int = 60,
        poll_interval: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._max_attempts = max_attempts
        self._poll_interval = poll_interval
        self._client = client or httpx.AsyncClient(timeout=30)

    async def call(self, routing_key: str, messages: list[dict[str, Any]], *, instance_id: int = 0) -> ChatResult:
        if not routing_key:
            raise ValueError("routing_key is required")
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        try:
            task_id = await self._create_task(routing_key, messages, instance_id)
            return await self._poll(task_id)
        except httpx.HTTPError as exc:
            raise GatewayError(f"chat API request failed: {exc}") from exc

    async def _create_task(self, routing_key: str, messages: list[dict[str, Any]], instance_id: int) -> str:
        response = await self._client.post(
            self._url,
            json={"modelKey": routing_key, "messages": messages, "instanceId": instance_id},
        )
        if response.is_error:
            message = f"HTTP error! status: {response.status_code}"
            try:
                body = response.json()
                message = body.get("error") or body.get("message") or message
            except ValueError:
                pass
            raise GatewayError(message)

        data = response.json()
        if not data.get("success") or not data.get("taskId"):
            raise GatewayError(data.get("error") or "failed to create chat task")
        _log.debug("chat task created: %s", data["taskId"])
        return data["taskId"]

    async def _poll(self, task_id: str) -> ChatResult:
        for attempt in range(self._max_attempts):
            # First poll is immediate.
            if attempt > 0:
                await asyncio.sleep(self._poll_interval)

            response = await self._client.get(f"{self._url}/{task_id}")
            if response.is_error:
                _log.warning("chat task %s status poll failed: HTTP %s", task_id, response.status_code)
                continue

            data = response.json()
            status = data.get("status")
            _log.debug("chat task %s status=%s attempt=%d", task_id, status, attempt + 1)

            if status == "completed" and data.get("result"):
                return _to_result(data["result"])
            if status == "failed":
                raise GatewayError((data.get("error") or {}).get("message") or "chat task failed")

        raise GatewayError(f"chat task {task_id} timed out after {self._max_attempts} polls")

    async def aclose(self) -> None:
        await self._client.aclose()


def _to_result(result: dict[str, Any]) -> ChatResult:
    return ChatResult(
        success=bool(result.get("success")),
        content=(result.get("response") or {}).get("content"),
        error_message=(result.get("error") or {}).get("message"),
    )


# ── OpenAIGateway ─────────────────────────────────────────────────────────────

def _to_openai_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Rewrite {type: image, image: {format, source_url}} blocks as image_url parts."""
    converted = []
    for msg in messages:
        content = msg["content"]
        if isinstance(content, list):
            parts = []
            for block in content:
                if block.get("type") == "image":
                    parts.append({"type": "image_url", "image_url": {"url": block["image"]["source_url"]}})
                else:
                    parts.append(block)
            content = parts
        converted.append({"role": msg["role"], "content": content})
    return converted


class OpenAIGateway:
    def __init__(self, api_key: str | None = None, *, client: AsyncOpenAI | None = None) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key)

    async def call(self, routing_key: str, messages: list[dict[str, Any]], *, instance_id: int = 0) -> ChatResult:
        try:
            response = await llm_call_with_retry(
                self._client.chat.completions.create,
                model=routing_key,
                messages=_to_openai_messages(messages),
                user=f"persona-{instance_id}",
            )
        except OpenAIError as exc:
            return ChatResult(success=False, error_message=str(exc))
        return ChatResult(success=True, content=response.choices[0].message.content)

    async def aclose(self) -> None:
        await self._client.close()


# ── Factory ───────────────────────────────────────────────────────────────────

def make_chat_gateway(settings: Settings) -> ChatGateway:
    """Return the gateway for settings.chat_backend.

    Raises ValueError if the backend is unknown or its endpoint/key is unset.
    """
    if settings.chat_backend == "modelkey":
        if not settings.chat_api_url:
            raise ValueError("CHAT_BACKEND=modelkey requires CHAT_API_URL to be set")
        return ModelKeyGateway(
            settings.chat_api_url,
            max_attempts=settings.chat_poll_attempts,
            poll_interval=settings.chat_poll_interval,
        )
    if settings.chat_backend == "openai":
        if not settings.openai_api_key:
            raise ValueError("CHAT_BACKEND=openai requires OPENAI_API_KEY to be set")
        return OpenAIGateway(settings.openai_api_key)
    raise ValueError(f"Unknown CHAT_BACKEND={settings.chat_backend!r}. Use 'modelkey' or 'openai'.")
