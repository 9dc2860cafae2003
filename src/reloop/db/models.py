"""ORM models backing the SQL ledger store.

One row per user holds the whole reward snapshot so that a single conditional
UPDATE on ``version`` is the atomic read-modify-write the applier relies on.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from reloop.db.base import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class UserLedger(Base):
    """Denormalized reward snapshot, single row per user, optimistic ``version``."""

    __tablename__ = "user_ledgers"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    points_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_weight_recycled_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    co2_saved_kg: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    submissions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    social_actions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    category_weight_kg: Mapped[dict[str, float]] = mapped_column(JSONDocument, nullable=False, default=dict)
    mission_status: Mapped[dict[str, str]] = mapped_column(JSONDocument, nullable=False, default=dict)
    mission_progress: Mapped[dict[str, float]] = mapped_column(JSONDocument, nullable=False, default=dict)
    awarded_badge_ids: Mapped[list[str]] = mapped_column(JSONDocument, nullable=False, default=list)
    active_mission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LedgerIdempotencyKey(Base):
    """Applied-event log: UNIQUE(user_id, idempotency_key) prevents double application."""

    __tablename__ = "ledger_idempotency_keys"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="ledger_idempotency_keys_user_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(256), nullable=False)
    result: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MissionEnrollment(Base):
    """Participant counter per mission, incremented atomically on join."""

    __tablename__ = "mission_enrollments"

    mission_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    participant_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
