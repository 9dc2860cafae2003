"""Event normalizer: raw activity payloads -> typed ActivityEvent.

This is the only place loosely-typed input is accepted. Payloads are tagged
with ``kind`` and validated with pydantic; any failure becomes a
``ValidationError(field, reason)`` and nothing downstream runs.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from reloop.rewards.catalog import RuleCatalog
from reloop.rewards.errors import ValidationError
from reloop.rewards.types import (
    ActivityEvent,
    MissionJoinRequest,
    SessionContext,
    SocialAction,
    WasteSubmission,
)

if TYPE_CHECKING:
    from reloop.config import Settings


@dataclass(frozen=True)
class EventLimits:
    """Bounds on submitted amounts and on how far ``occurred_at`` may drift from now."""

    max_weight_kg: float = 1000.0
    max_quantity: int = 1000
    max_event_age: timedelta = timedelta(days=1)
    max_clock_skew: timedelta = timedelta(minutes=5)

    @classmethod
    def from_settings(cls, settings: Settings) -> EventLimits:
        return cls(
            max_weight_kg=settings.max_submission_weight_kg,
            max_quantity=settings.max_submission_quantity,
            max_event_age=timedelta(seconds=settings.max_event_age_seconds),
            max_clock_skew=timedelta(seconds=settings.max_clock_skew_seconds),
        )


DEFAULT_LIMITS = EventLimits()


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    user_id: str | None = Field(default=None, validation_alias=AliasChoices("user_id", "userId"))
    occurred_at: datetime | None = Field(default=None, validation_alias=AliasChoices("occurred_at", "occurredAt"))


class WasteSubmissionPayload(_Payload):
    category_name: str = Field(min_length=1, validation_alias=AliasChoices("category_name", "categoryName"))
    weight_kg: float = Field(
        gt=0, allow_inf_nan=False, validation_alias=AliasChoices("weight_kg", "weightKg", "weight")
    )
    quantity: int = Field(default=1, ge=1)
    classification_confidence: float | None = Field(
        default=None,
        ge=0,
        le=1,
        allow_inf_nan=False,
        validation_alias=AliasChoices("classification_confidence", "classificationConfidence", "aiConfidence"),
    )
    submission_id: str = Field(min_length=1, validation_alias=AliasChoices("submission_id", "submissionId"))


class SocialActionPayload(_Payload):
    action_type: str = Field(min_length=1, validation_alias=AliasChoices("action_type", "actionType"))
    action_id: str = Field(min_length=1, validation_alias=AliasChoices("action_id", "actionId"))


class MissionJoinPayload(_Payload):
    mission_id: str = Field(min_length=1, validation_alias=AliasChoices("mission_id", "missionId"))


_PAYLOAD_MODELS: dict[str, type[_Payload]] = {
    WasteSubmission.kind: WasteSubmissionPayload,
    SocialAction.kind: SocialActionPayload,
    MissionJoinRequest.kind: MissionJoinPayload,
}

# camelCase aliases -> canonical field names for error reporting
_FIELD_NAMES = {
    alias: name
    for model in _PAYLOAD_MODELS.values()
    for name, info in model.model_fields.items()
    if isinstance(info.validation_alias, AliasChoices)
    for alias in info.validation_alias.choices
    if isinstance(alias, str)
}


def _parse(model: type[_Payload], raw: Mapping[str, Any]) -> Any:
    try:
        return model.model_validate(raw)
    except pydantic.ValidationError as exc:
        err = exc.errors()[0]
        loc = str(err["loc"][0]) if err["loc"] else "payload"
        raise ValidationError(_FIELD_NAMES.get(loc, loc), err["msg"]) from exc


def _occurred_at(value: datetime | None, now: datetime, limits: EventLimits) -> datetime:
    if value is None:
        return now
    occurred_at = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if occurred_at > now + limits.max_clock_skew:
        raise ValidationError("occurred_at", "timestamp is in the future")
    if occurred_at < now - limits.max_event_age:
        raise ValidationError("occurred_at", f"timestamp is older than {limits.max_event_age}")
    return occurred_at


def _check_amounts(payload: WasteSubmissionPayload, limits: EventLimits) -> None:
    if payload.weight_kg > limits.max_weight_kg:
        raise ValidationError("weight_kg", f"must be at most {limits.max_weight_kg} kg")
    if payload.quantity > limits.max_quantity:
        raise ValidationError("quantity", f"must be at most {limits.max_quantity}")
    if not math.isfinite(payload.weight_kg * payload.quantity):
        raise ValidationError("weight_kg", "total weight is not finite")


def normalize(
    raw: Mapping[str, Any],
    context: SessionContext,
    catalog: RuleCatalog,
    now: datetime | None = None,
    limits: EventLimits = DEFAULT_LIMITS,
) -> ActivityEvent:
    """Validate a raw payload for the acting user. Raises ValidationError.

    ``occurred_at`` is checked against ``now`` (current UTC time by default):
    it may lag by ``limits.max_event_age`` and lead by ``limits.max_clock_skew``.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError("payload", "expected a mapping")
    if not context.user_id:
        raise ValidationError("user_id", "session context has no user")

    kind = raw.get("kind")
    model = _PAYLOAD_MODELS.get(kind) if isinstance(kind, str) else None
    if model is None:
        raise ValidationError("kind", f"unknown activity kind {kind!r}; expected one of {sorted(_PAYLOAD_MODELS)}")

    payload = _parse(model, raw)
    if payload.user_id is not None and payload.user_id != context.user_id:
        raise ValidationError("user_id", "payload user does not match the session user")
    occurred_at = _occurred_at(payload.occurred_at, now or datetime.now(timezone.utc), limits)

    if isinstance(payload, WasteSubmissionPayload):
        _check_amounts(payload, limits)
        rule = catalog.find_category(payload.category_name)
        if rule is None:
            raise ValidationError("category_name", f"unknown waste category {payload.category_name!r}")
        return WasteSubmission(
            user_id=context.user_id,
            category_name=rule.category_name,
            weight_kg=payload.weight_kg,
            quantity=payload.quantity,
            classification_confidence=payload.classification_confidence,
            submission_id=payload.submission_id,
            occurred_at=occurred_at,
        )

    if isinstance(payload, SocialActionPayload):
        social_rule = catalog.find_social_rule(payload.action_type)
        if social_rule is None:
            raise ValidationError("action_type", f"unknown social action {payload.action_type!r}")
        return SocialAction(
            user_id=context.user_id,
            action_type=social_rule.action_type,
            action_id=payload.action_id,
            occurred_at=occurred_at,
        )

    if catalog.mission(payload.mission_id) is None:
        raise ValidationError("mission_id", f"unknown mission {payload.mission_id!r}")
    return MissionJoinRequest(
        user_id=context.user_id,
        mission_id=payload.mission_id,
        occurred_at=occurred_at,
    )
