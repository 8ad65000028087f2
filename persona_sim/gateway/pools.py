"""Model pool registries: which routing keys are currently usable.

Toggle via CHAT_BACKEND:
  CHAT_BACKEND=modelkey   pools fetched from MODEL_POOLS_URL
  CHAT_BACKEND=openai     pools are the model names listed in MODEL_POOLS
"""
from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx

from persona_sim.config import Settings

_log = logging.getLogger(__name__)


@runtime_checkable
class ModelPoolRegistry(Protocol):
    async def list_active_pool_ids(self) -> list[str]:
        """Return ids of active pools, in registry order."""
        ...


class HttpModelPoolRegistry:
    """Reads {count, pools: [{poolId, isActive, ...}]} from the pools endpoint."""

    def __init__(self, url: str, *, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._client = client

    async def list_active_pool_ids(self) -> list[str]:
        try:
            if self._client is not None:
                response = await self._client.get(self._url)
            else:
                async with httpx.AsyncClient(timeout=30) as client:
                    response = await client.get(self._url)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to fetch model pools: {exc}") from exc

        pools = data.get("pools", [])
        active = [p["poolId"] for p in pools if p.get("isActive")]
        _log.debug("model pools: %d total, %d active", len(pools), len(active))
        return active


class StaticModelPoolRegistry:
    def __init__(self, pool_ids: list[str] | tuple[str, ...]) -> None:
        self._pool_ids = list(pool_ids)

    async def list_active_pool_ids(self) -> list[str]:
        return list(self._pool_ids)


def make_pool_registry(settings: Settings) -> ModelPoolRegistry:
    """Return the registry matching settings.chat_backend."""
    if settings.chat_backend == "modelkey":
        if not settings.model_pools_url:
            raise ValueError("CHAT_BACKEND=modelkey requires MODEL_POOLS_URL to be set")
        return HttpModelPoolRegistry(settings.model_pools_url)
    if settings.chat_backend == "openai":
        return StaticModelPoolRegistry(settings.model_pools or ("gpt-4o",))
    raise ValueError(f"Unknown CHAT_BACKEND={settings.chat_backend!r}. Use 'modelkey' or 'openai'.")
