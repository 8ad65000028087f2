"""Persona fan-out: one model call per persona, bounded concurrency, per-persona fallback.

Flow:
  1. Resolve a routing key once per batch from the model pool registry.
     No active pool is the only error that fails the whole batch.
  2. Every persona task is submitted at once; a semaphore keeps at most
     `concurrency` model calls in flight.
  3. Each task returns a record: parsed from the model output, or a
     synthesized fallback if the call or the parse failed.
"""
import asyncio
import logging
import random
from pathlib import PurePosixPath
from typing import Any, Sequence

from persona_sim.analyzers.aggregator import aggregate_results
from persona_sim.analyzers.fallback import fallback_behavior
from persona_sim.analyzers.parser import Fallback, parse_persona_response
from persona_sim.errors import GatewayError, PreconditionError
from persona_sim.gateway.chat import ChatGateway
from persona_sim.gateway.pools import ModelPoolRegistry
from persona_sim.models import AnalysisResult, PersonaBehaviorRecord, PersonaProfile
from persona_sim.personas.selector import select_personas

_log = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10

_IMAGE_FORMATS = {"jpg": "jpeg", "jpeg": "jpeg", "png": "png", "webp": "webp", "gif": "gif"}


def detect_image_format(object_key: str | None) -> str:
    """Map an object key's extension to an image format name; jpeg when unknown."""
    if not object_key:
        return "jpeg"
    extension = PurePosixPath(object_key).suffix.lstrip(".").lower()
    return _IMAGE_FORMATS.get(extension, "jpeg")


def build_messages(persona: PersonaProfile, content_url: str, image_format: str) -> list[dict[str, Any]]:
    return [
        {"role": "system", "content": persona.system_prompt},
        {
            "role": "user",
            "content": [
                {"type": "image", "image": {"format": image_format, "source_url": content_url}},
            ],
        },
    ]


async def resolve_routing_key(registry: ModelPoolRegistry) -> str:
    pool_ids = await registry.list_active_pool_ids()
    if not pool_ids:
        raise PreconditionError("no active model pool is available")
    return pool_ids[0]


async def evaluate_persona(
    gateway: ChatGateway,
    routing_key: str,
    persona: PersonaProfile,
    content_url: str,
    image_format: str,
) -> PersonaBehaviorRecord:
    """Evaluate one persona. Never raises: failures become fallback records."""
    _log.debug("evaluating persona %s (%s)", persona.user_id, persona.name)
    messages = build_messages(persona, content_url, image_format)
    try:
        response = await gateway.call(routing_key, messages, instance_id=persona.id)
        if not response.success or not response.content:
            raise GatewayError("AI analysis failed: " + (response.error_message or "Unknown error"))
    except Exception as exc:
        _log.warning("persona %s evaluation failed: %s", persona.user_id, exc)
        return fallback_behavior(persona, str(exc) or type(exc).__name__)

    outcome = parse_persona_response(response.content, persona)
    if isinstance(outcome, Fallback):
        _log.warning("persona %s: %s", persona.user_id, outcome.reason)
    else:
        _log.debug("persona %s done: status=%s", persona.user_id, outcome.record.status)
    return outcome.record


async def evaluate_personas(
    content_url: str,
    personas: Sequence[PersonaProfile],
    image_format: str,
    *,
    gateway: ChatGateway,
    registry: ModelPoolRegistry,
    concurrency: int = DEFAULT_CONCURRENCY,
) -> list[PersonaBehaviorRecord]:
    """Evaluate every persona; one record per persona, order not guaranteed.

    Raises PreconditionError, before any model call, if no pool is active.
    """
    if not personas:
        return []

    routing_key = await resolve_routing_key(registry)
    _log.debug("routing key: %s", routing_key)
    semaphore = asyncio.Semaphore(concurrency)

    async def _limited(persona: PersonaProfile) -> PersonaBehaviorRecord:
        async with semaphore:
            return await evaluate_persona(gateway, routing_key, persona, content_url, image_format)

    return list(await asyncio.gather(*(_limited(p) for p in personas)))


async def analyze_content(
    content_url: str,
    catalog: Sequence[PersonaProfile],
    *,
    gateway: ChatGateway,
    registry: ModelPoolRegistry,
    persona_count: int | None = None,
    object_key: str | None = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    rng: random.Random | None = None,
) -> AnalysisResult:
    """Select personas, evaluate them and aggregate the results."""
    count = len(catalog) if persona_count is None else persona_count
    _log.info("starting analysis of %s with %d personas", content_url, count)

    personas = select_personas(catalog, count, rng=rng)
    _log.info(
        "selected %d personas (random=%s): %s",
        len(personas), count < len(catalog), [p.user_id for p in personas],
    )

    records = await evaluate_personas(
        content_url,
        personas,
        detect_image_format(object_key),
        gateway=gateway,
        registry=registry,
        concurrency=concurrency,
    )
    result = aggregate_results(records)
    _log.info("analysis aggregated: metrics=%s summary=%s", result.metrics.to_dict(), result.summary.to_dict())
    return result
