from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from store.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


# ── Profiles ──

class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    answers: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    profile_context: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True, default=dict)
    clinical_assessment: Mapped[str] = mapped_column(Text, default="")
    calibration_notes: Mapped[str] = mapped_column(Text, default="")
    onboarded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ── Trigger / prodrome settings ──

class UserTrigger(Base):
    __tablename__ = "user_triggers"
    __table_args__ = (UniqueConstraint("user_id", "label", name="uq_user_trigger_label"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    label: Mapped[str] = mapped_column(String(100))
    severity: Mapped[str] = mapped_column(String(10), default="NONE")
    favorite: Mapped[bool] = mapped_column(Boolean, default=False)
    is_automatable: Mapped[bool] = mapped_column(Boolean, default=False)
    is_automated: Mapped[bool] = mapped_column(Boolean, default=False)
    direction: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    default_threshold: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    user_threshold: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    unit: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    exposure_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class UserProdrome(Base):
    __tablename__ = "user_prodromes"
    __table_args__ = (UniqueConstraint("user_id", "label", name="uq_user_prodrome_label"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    label: Mapped[str] = mapped_column(String(100))
    severity: Mapped[str] = mapped_column(String(10), default="NONE")
    favorite: Mapped[bool] = mapped_column(Boolean, default=False)
    is_automatable: Mapped[bool] = mapped_column(Boolean, default=False)
    is_automated: Mapped[bool] = mapped_column(Boolean, default=False)
    direction: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    default_threshold: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    user_threshold: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    unit: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    exposure_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ── Logged events ──

class EventRow(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    kind: Mapped[str] = mapped_column(String(10), default="trigger")
    label: Mapped[str] = mapped_column(String(100))
    severity: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
    linked_migraine_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    source: Mapped[str] = mapped_column(String(20), default="manual")
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Migraine(Base):
    __tablename__ = "migraines"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
    pain_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ── Gauge configuration ──

class DecayWeight(Base):
    __tablename__ = "decay_weights"
    __table_args__ = (UniqueConstraint("user_id", "severity", name="uq_decay_user_severity"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    severity: Mapped[str] = mapped_column(String(10))
    day_0: Mapped[float] = mapped_column(Float, default=0.0)
    day_1: Mapped[float] = mapped_column(Float, default=0.0)
    day_2: Mapped[float] = mapped_column(Float, default=0.0)
    day_3: Mapped[float] = mapped_column(Float, default=0.0)
    day_4: Mapped[float] = mapped_column(Float, default=0.0)
    day_5: Mapped[float] = mapped_column(Float, default=0.0)
    day_6: Mapped[float] = mapped_column(Float, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def cells(self) -> list[float]:
        return [getattr(self, f"day_{i}") or 0.0 for i in range(7)]


class GaugeThreshold(Base):
    __tablename__ = "gauge_thresholds"
    __table_args__ = (UniqueConstraint("user_id", "zone", name="uq_threshold_user_zone"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    zone: Mapped[str] = mapped_column(String(10))
    minimum: Mapped[float] = mapped_column(Float, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ── Recalibration ──

class RecalibrationBatch(Base):
    __tablename__ = "recalibration_batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    mode: Mapped[str] = mapped_column(String(20), default="full")
    state: Mapped[str] = mapped_column(String(20), default="DONE")
    used_fallback: Mapped[bool] = mapped_column(Boolean, default=False)
    clinical_assessment: Mapped[str] = mapped_column(Text, default="")
    calibration_notes: Mapped[str] = mapped_column(Text, default="")
    summary: Mapped[str] = mapped_column(Text, default="")
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    applied: Mapped[bool] = mapped_column(Boolean, default=False)
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class RecalibrationProposal(Base):
    __tablename__ = "recalibration_proposals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    batch_id: Mapped[str] = mapped_column(String(36), index=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    type: Mapped[str] = mapped_column(String(30))
    label: Mapped[str] = mapped_column(String(100), default="")
    from_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    to_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    reasoning: Mapped[str] = mapped_column(Text, default="")
    accepted: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")


class RecalibrationHistory(Base):
    __tablename__ = "recalibration_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    batch_id: Mapped[str] = mapped_column(String(36), index=True)
    mode: Mapped[str] = mapped_column(String(20), default="full")
    accepted_count: Mapped[int] = mapped_column(Integer, default=0)
    rejected_count: Mapped[int] = mapped_column(Integer, default=0)
    changes: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ── Risk snapshots ──

class RiskScoreLive(Base):
    __tablename__ = "risk_scores_live"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    score: Mapped[float] = mapped_column(Float, default=0.0)
    zone: Mapped[str] = mapped_column(String(10), default="NONE")
    percent: Mapped[int] = mapped_column(Integer, default=0)
    top_triggers: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    forecast: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class RiskScoreDaily(Base):
    __tablename__ = "risk_scores_daily"
    __table_args__ = (UniqueConstraint("user_id", "day", name="uq_daily_user_day"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    day: Mapped[date] = mapped_column(Date)
    score: Mapped[float] = mapped_column(Float, default=0.0)
    zone: Mapped[str] = mapped_column(String(10), default="NONE")
    contributors: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ── Calibration timeline ──

class CalibrationEvent(Base):
    __tablename__ = "calibration_timeline"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    kind: Mapped[str] = mapped_column(String(50))
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
