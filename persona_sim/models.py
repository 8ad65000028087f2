import math
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

BehaviorStatus = Literal["viewed", "opened", "liked", "commented", "purchased"]
SessionStatus = Literal["analyzing", "completed", "failed"]

# Deepest stage first; used to derive a status from behavior flags.
STAGES: tuple[str, ...] = ("purchased", "commented", "liked", "opened")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase on the wire and in the record store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class PersonaProfile(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int = 0
    user_id: str
    name: str
    description: str = ""
    category: Optional[str] = None
    price_range: Optional[str] = None
    system_prompt: str

    @model_validator(mode="before")
    @classmethod
    def _default_numeric_id(cls, data):
        # Catalog files only carry the zero-padded userId; the numeric id follows it.
        if isinstance(data, dict) and not data.get("id"):
            user_id = data.get("userId", data.get("user_id", ""))
            if isinstance(user_id, str) and user_id.isdigit():
                data = {**data, "id": int(user_id)}
        return data


class TimelineStep(CamelModel):
    time: str
    action: str
    active: bool


class PersonaBehaviorRecord(CamelModel):
    user_id: str
    name: str
    opened: bool = False
    liked: bool = False
    commented: bool = False
    purchased: bool = False
    browse_time: int | float = Field(default=0, ge=0)   # seconds
    interest: int | float = Field(default=0, ge=0, le=100)
    price_range: str = "unknown"
    status: BehaviorStatus = "viewed"
    inner_monologue: str = ""
    timeline: list[TimelineStep] = []
    insights: str = ""
    used_fallback: bool = False
    error: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)

    @field_validator("browse_time", "interest")
    @classmethod
    def _finite(cls, value):
        # 1e400 and Infinity both decode to inf; the aggregate cannot floor them.
        if not math.isfinite(value):
            raise ValueError("must be a finite number")
        return value


class Metrics(CamelModel):
    interest: int = 0
    open: int = 0
    like: int = 0
    comment: int = 0
    purchase: int = 0


class JourneyStep(CamelModel):
    label: str
    value: str   # "<percent>%"
    count: int


class Summary(CamelModel):
    total_views: int = 0
    open_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    purchase_count: int = 0
    avg_browse_time: int = 0
    success_count: int = 0
    failed_count: int = 0


class AnalysisResult(CamelModel):
    users: list[PersonaBehaviorRecord]
    metrics: Metrics
    journey_steps: list[JourneyStep]
    summary: Summary


class SessionAggregate(CamelModel):
    session_id: str
    object_key: str
    content_title: Optional[str] = None
    status: SessionStatus = "analyzing"
    total_users: int = 0
    metrics: Metrics = Field(default_factory=Metrics)
    journey_steps: list[JourneyStep] = []
    summary: Summary = Field(default_factory=Summary)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    ttl: Optional[int] = None


class AnalysisMessage(CamelModel):
    """Queue payload that asks a worker to run one session's analysis."""

    session_id: str
    object_key: str
    content_title: Optional[str] = None
    persona_count: Optional[int] = None
