"""Turn a model's textual verdict into a PersonaBehaviorRecord.

The model is asked for bare JSON but often wraps it in a ```json fence. The
result of parsing is a tagged variant: Parsed(record) when the payload was
usable, Fallback(record, reason) when it was not. Both carry a record of the
same shape so callers can treat them uniformly.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Union

from pydantic import ValidationError

from persona_sim.analyzers.fallback import fallback_behavior
from persona_sim.errors import ParseError
from persona_sim.models import PersonaBehaviorRecord, PersonaProfile, TimelineStep

_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)\s*```")

DEFAULT_MONOLOGUE = "Not interested in this content."
DEFAULT_INSIGHTS = "This user showed no clear interest in the content."


def default_timeline() -> list[TimelineStep]:
    return [
        TimelineStep(time="0s", action="saw cover", active=True),
        TimelineStep(time="2s", action="scrolled past", active=False),
    ]


@dataclass(frozen=True)
class Parsed:
    record: PersonaBehaviorRecord


@dataclass(frozen=True)
class Fallback:
    record: PersonaBehaviorRecord
    reason: str


ParseOutcome = Union[Parsed, Fallback]


def extract_json_payload(text: str) -> str:
    """Return the body of the first ```json fence, or the whole text if there is none."""
    match = _JSON_FENCE.search(text)
    return match.group(1) if match else text


def build_record(data: dict[str, Any], persona: PersonaProfile) -> PersonaBehaviorRecord:
    """Build a record from decoded model output, defaulting each missing field.

    Fields are defaulted independently; flag monotonicity is not re-checked.
    """
    timeline = data.get("timeline")
    return PersonaBehaviorRecord(
        user_id=persona.user_id,
        name=persona.name,
        opened=data.get("opened") or False,
        liked=data.get("liked") or False,
        commented=data.get("commented") or False,
        purchased=data.get("purchased") or False,
        browse_time=data.get("browseTime") or 0,
        interest=data.get("interest") or 0,
        price_range=persona.price_range or "unknown",
        status=data.get("status") or "viewed",
        inner_monologue=data.get("innerMonologue") or DEFAULT_MONOLOGUE,
        timeline=default_timeline() if timeline is None else timeline,
        insights=data.get("insights") or DEFAULT_INSIGHTS,
        used_fallback=False,
    )


def parse_behavior(text: str) -> dict[str, Any]:
    """Decode the (possibly fenced) JSON object in text. Raises ParseError."""
    try:
        data = json.loads(extract_json_payload(text))
    except json.JSONDecodeError as exc:
        raise ParseError(str(exc)) from exc
    if not isinstance(data, dict):
        raise ParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


def parse_persona_response(text: str, persona: PersonaProfile) -> ParseOutcome:
    try:
        record = build_record(parse_behavior(text), persona)
    except (ParseError, ValidationError) as exc:
        reason = f"parse failed: {exc}"
        return Fallback(fallback_behavior(persona, reason), reason)
    return Parsed(record)
