"""Rule catalog: point rules, social rules, missions and badge criteria.

The catalog is parsed from a plain document (JSON file or the built-in seed)
with pydantic, then frozen into dataclasses. It is loaded once and treated as
immutable while events are processed; swapping it only affects later events.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from reloop.config import Settings
from reloop.rewards.types import MissionType, UserSnapshot

logger = logging.getLogger(__name__)


class BadgeMetric(str, Enum):
    """Snapshot fields a badge criterion may test."""

    TOTAL_WEIGHT = "total_weight_recycled_kg"
    CO2_SAVED = "co2_saved_kg"
    POINTS = "points_balance"
    SUBMISSIONS = "submissions_count"
    SOCIAL_ACTIONS = "social_actions_count"
    COMPLETED_MISSIONS = "completed_missions"
    CATEGORY_WEIGHT = "category_weight_kg"


# ---------------------------------------------------------------------------
# Runtime (frozen) catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PointRule:
    category_name: str
    points_per_kg: float
    co2_factor_per_kg: float


@dataclass(frozen=True)
class SocialRule:
    action_type: str
    points: int


@dataclass(frozen=True)
class MissionDefinition:
    mission_id: str
    title: str
    type: MissionType
    target_value: float
    points_reward: int
    start_date: datetime
    end_date: datetime
    max_participants: int | None = None
    category_name: str | None = None
    action_type: str | None = None
    description: str = ""

    def is_open(self, at: datetime) -> bool:
        """True while ``at`` falls inside the mission window (inclusive)."""
        return self.start_date <= at <= self.end_date

    def is_expired(self, now: datetime) -> bool:
        return now > self.end_date


@dataclass(frozen=True)
class BadgeCriterion:
    """``metric >= threshold`` evaluated on the current snapshot only."""

    metric: BadgeMetric
    threshold: float
    category_name: str | None = None

    def measure(self, snapshot: UserSnapshot) -> float:
        if self.metric is BadgeMetric.COMPLETED_MISSIONS:
            return float(len(snapshot.completed_missions))
        if self.metric is BadgeMetric.CATEGORY_WEIGHT:
            return snapshot.category_weight_kg.get(self.category_name or "", 0.0)
        return float(getattr(snapshot, self.metric.value))

    def is_met(self, snapshot: UserSnapshot) -> bool:
        return self.measure(snapshot) >= self.threshold


@dataclass(frozen=True)
class BadgeDefinition:
    badge_id: str
    name: str
    criterion: BadgeCriterion
    description: str = ""
    one_time: bool = True

    def predicate(self, snapshot: UserSnapshot) -> bool:
        return self.criterion.is_met(snapshot)


@dataclass(frozen=True)
class RuleCatalog:
    point_rules: Mapping[str, PointRule]
    social_rules: Mapping[str, SocialRule] = field(default_factory=dict)
    missions: Mapping[str, MissionDefinition] = field(default_factory=dict)
    badges: tuple[BadgeDefinition, ...] = ()
    low_confidence_threshold: float = 0.5
    low_confidence_multiplier: float = 0.5

    def find_category(self, name: str) -> PointRule | None:
        """Case-insensitive category lookup; returns the rule with its canonical spelling."""
        rule = self.point_rules.get(name)
        if rule is not None:
            return rule
        folded = name.casefold()
        for key, candidate in self.point_rules.items():
            if key.casefold() == folded:
                return candidate
        return None

    def point_rule(self, category_name: str) -> PointRule:
        rule = self.find_category(category_name)
        if rule is None:
            raise KeyError(category_name)
        return rule

    def find_social_rule(self, action_type: str) -> SocialRule | None:
        return self.social_rules.get(action_type.upper())

    def mission(self, mission_id: str) -> MissionDefinition | None:
        return self.missions.get(mission_id)


# ---------------------------------------------------------------------------
# Document models (catalog file format)
# ---------------------------------------------------------------------------


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class PointRuleDocument(BaseModel):
    category_name: str = Field(min_length=1)
    points_per_kg: float = Field(ge=0)
    co2_factor_per_kg: float = Field(ge=0)


class SocialRuleDocument(BaseModel):
    action_type: str = Field(min_length=1)
    points: int = Field(ge=0)

    @field_validator("action_type")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper()


class MissionDocument(BaseModel):
    mission_id: str = Field(min_length=1)
    title: str
    description: str = ""
    type: MissionType
    target_value: float = Field(gt=0)
    points_reward: int = Field(ge=0)
    start_date: datetime
    end_date: datetime
    max_participants: int | None = Field(default=None, ge=1)
    category_name: str | None = None
    action_type: str | None = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _tz_aware(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @model_validator(mode="after")
    def _window(self) -> MissionDocument:
        if self.end_date < self.start_date:
            raise ValueError(f"mission {self.mission_id}: end_date precedes start_date")
        return self


class BadgeDocument(BaseModel):
    badge_id: str = Field(min_length=1)
    name: str
    description: str = ""
    metric: BadgeMetric
    threshold: float = Field(ge=0)
    category_name: str | None = None

    @model_validator(mode="after")
    def _category_required(self) -> BadgeDocument:
        if self.metric is BadgeMetric.CATEGORY_WEIGHT and not self.category_name:
            raise ValueError(f"badge {self.badge_id}: category_weight_kg criteria need a category_name")
        return self


class CatalogDocument(BaseModel):
    categories: list[PointRuleDocument] = Field(min_length=1)
    social_actions: list[SocialRuleDocument] = []
    missions: list[MissionDocument] = []
    badges: list[BadgeDocument] = []
    low_confidence_threshold: float = Field(default=0.5, ge=0, le=1)
    low_confidence_multiplier: float = Field(default=0.5, ge=0, le=1)

    @model_validator(mode="after")
    def _unique_ids(self) -> CatalogDocument:
        for label, ids in (
            ("category", [c.category_name.casefold() for c in self.categories]),
            ("social action", [s.action_type for s in self.social_actions]),
            ("mission", [m.mission_id for m in self.missions]),
            ("badge", [b.badge_id for b in self.badges]),
        ):
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            if dupes:
                raise ValueError(f"duplicate {label} ids: {dupes}")
        return self


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def build_catalog(data: Mapping[str, Any]) -> RuleCatalog:
    """Validate a catalog document and freeze it. Raises pydantic.ValidationError."""
    doc = CatalogDocument.model_validate(data)

    return RuleCatalog(
        point_rules={
            c.category_name: PointRule(c.category_name, c.points_per_kg, c.co2_factor_per_kg)
            for c in doc.categories
        },
        social_rules={s.action_type: SocialRule(s.action_type, s.points) for s in doc.social_actions},
        missions={
            m.mission_id: MissionDefinition(
                mission_id=m.mission_id,
                title=m.title,
                description=m.description,
                type=m.type,
                target_value=m.target_value,
                points_reward=m.points_reward,
                start_date=m.start_date,
                end_date=m.end_date,
                max_participants=m.max_participants,
                category_name=m.category_name,
                action_type=m.action_type.upper() if m.action_type else None,
            )
            for m in doc.missions
        },
        badges=tuple(
            BadgeDefinition(
                badge_id=b.badge_id,
                name=b.name,
                description=b.description,
                criterion=BadgeCriterion(b.metric, b.threshold, b.category_name),
            )
            for b in doc.badges
        ),
        low_confidence_threshold=doc.low_confidence_threshold,
        low_confidence_multiplier=doc.low_confidence_multiplier,
    )


def load_catalog(path: str | Path) -> RuleCatalog:
    """Load a catalog from a JSON file."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    catalog = build_catalog(data)
    logger.info(
        "Loaded rule catalog from %s: %d categories, %d missions, %d badges",
        path, len(catalog.point_rules), len(catalog.missions), len(catalog.badges),
    )
    return catalog


def catalog_from_settings(settings: Settings, now: datetime | None = None) -> RuleCatalog:
    """Catalog file from settings, else the built-in seed with windows around ``now``.

    The low-confidence policy comes from settings unless the document sets it.
    """
    from reloop.rewards.seed import seed_catalog_data

    if settings.rule_catalog_path:
        data = json.loads(Path(settings.rule_catalog_path).read_text(encoding="utf-8"))
    else:
        data = seed_catalog_data(now)

    data = dict(data)
    data.setdefault("low_confidence_threshold", settings.low_confidence_threshold)
    data.setdefault("low_confidence_multiplier", settings.low_confidence_multiplier)
    return build_catalog(data)
