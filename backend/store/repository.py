"""Row <-> value-type helpers. Callers own the session and the commit."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schemas import (
    DECAY_DAYS,
    CalibrationMode,
    CalibrationOutcome,
    CalibrationProposal,
    DecayTable,
    Event,
    EventKind,
    GaugeThresholds,
    ProdromeSetting,
    Severity,
    TriggerSetting,
    Zone,
)
from store.models import (
    DecayWeight,
    EventRow,
    GaugeThreshold,
    Migraine,
    Profile,
    RecalibrationBatch,
    RecalibrationProposal,
    RiskScoreDaily,
    UserProdrome,
    UserTrigger,
)

logger = logging.getLogger("migrainegauge.repository")

_SETTING_FIELDS = (
    "severity", "favorite", "is_automatable", "is_automated", "direction",
    "default_threshold", "user_threshold", "unit", "exposure_level",
)


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _utc_day(ts: datetime) -> date:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).date()


def setting_table(kind: EventKind):
    return UserProdrome if kind == EventKind.PRODROME else UserTrigger


# ── Profile ──

async def get_profile(db: AsyncSession, user_id: str) -> Optional[Profile]:
    result = await db.execute(select(Profile).where(Profile.id == user_id))
    return result.scalar_one_or_none()


async def get_or_create_profile(db: AsyncSession, user_id: str) -> Profile:
    profile = await get_profile(db, user_id)
    if profile is None:
        profile = Profile(id=user_id)
        db.add(profile)
        await db.flush()
    return profile


# ── Settings ──

async def load_settings(
    db: AsyncSession, user_id: str,
) -> tuple[dict[str, TriggerSetting], dict[str, ProdromeSetting]]:
    triggers_rows = (await db.execute(select(UserTrigger).where(UserTrigger.user_id == user_id))).scalars().all()
    prodrome_rows = (await db.execute(select(UserProdrome).where(UserProdrome.user_id == user_id))).scalars().all()
    triggers = {r.label: TriggerSetting.model_validate(r) for r in triggers_rows}
    prodromes = {r.label: ProdromeSetting.model_validate(r) for r in prodrome_rows}
    return triggers, prodromes


async def find_setting_row(db: AsyncSession, user_id: str, kind: EventKind, label: str):
    table = setting_table(kind)
    rows = (await db.execute(select(table).where(table.user_id == user_id))).scalars().all()
    key = label.strip().lower()
    return next((r for r in rows if r.label.strip().lower() == key), None)


async def save_settings(
    db: AsyncSession,
    user_id: str,
    kind: EventKind,
    settings: dict[str, TriggerSetting],
):
    """Upsert every setting of one kind. Labels not in settings are left alone."""
    table = setting_table(kind)
    for setting in settings.values():
        row = await find_setting_row(db, user_id, kind, setting.label)
        if row is None:
            row = table(user_id=user_id, label=setting.label)
            db.add(row)
        for field in _SETTING_FIELDS:
            value = getattr(setting, field)
            setattr(row, field, value.value if isinstance(value, Severity) else value)
    await db.flush()


# ── Gauge configuration ──

async def load_thresholds(
    db: AsyncSession, user_id: str, defaults: Optional[GaugeThresholds] = None,
) -> GaugeThresholds:
    rows = (await db.execute(select(GaugeThreshold).where(GaugeThreshold.user_id == user_id))).scalars().all()
    minimums = dict(defaults.minimums) if defaults else {}
    for row in rows:
        try:
            minimums[Zone(row.zone)] = row.minimum
        except ValueError:
            logger.warning("Ignoring threshold row with unknown zone %s", row.zone)
    return GaugeThresholds(minimums=minimums)


async def load_decay(
    db: AsyncSession, user_id: str, defaults: Optional[DecayTable] = None,
) -> DecayTable:
    rows = (await db.execute(select(DecayWeight).where(DecayWeight.user_id == user_id))).scalars().all()
    table = dict(defaults.rows) if defaults else {}
    for row in rows:
        sev = Severity.coerce(row.severity)
        if sev is None or sev == Severity.NONE:
            continue
        table[sev] = row.cells()
    return DecayTable(rows=table)


async def upsert_threshold(db: AsyncSession, user_id: str, zone: Zone, minimum: float):
    result = await db.execute(
        select(GaugeThreshold).where(GaugeThreshold.user_id == user_id, GaugeThreshold.zone == zone.value)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = GaugeThreshold(user_id=user_id, zone=zone.value)
        db.add(row)
    row.minimum = float(minimum)


async def decay_row(
    db: AsyncSession, user_id: str, severity: Severity, seed: Optional[list[float]] = None,
) -> DecayWeight:
    """Fetch the decay row for one severity, creating it from seed (or zeros) if missing."""
    result = await db.execute(
        select(DecayWeight).where(DecayWeight.user_id == user_id, DecayWeight.severity == severity.value)
    )
    row = result.scalar_one_or_none()
    if row is None:
        cells = list(seed or [])[:DECAY_DAYS]
        cells += [0.0] * (DECAY_DAYS - len(cells))
        row = DecayWeight(user_id=user_id, severity=severity.value, **{f"day_{i}": v for i, v in enumerate(cells)})
        db.add(row)
    return row


async def save_gauge(db: AsyncSession, user_id: str, thresholds: GaugeThresholds, decay_table: DecayTable):
    for zone, minimum in thresholds.minimums.items():
        await upsert_threshold(db, user_id, zone, minimum)
    for sev, cells in decay_table.rows.items():
        row = await decay_row(db, user_id, sev)
        for i, value in enumerate(cells):
            setattr(row, f"day_{i}", value)
    await db.flush()


# ── Events ──

def event_from_row(row: EventRow) -> Event:
    return Event(
        id=row.id,
        label=row.label,
        timestamp=row.ts,
        severity=Severity.coerce(row.severity),
        kind=EventKind(row.kind),
        linked_migraine_id=row.linked_migraine_id,
        source=row.source,
        active=row.active,
    )


async def load_events(
    db: AsyncSession,
    user_id: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    include_inactive: bool = False,
) -> list[Event]:
    query = select(EventRow).where(EventRow.user_id == user_id)
    if start is not None:
        query = query.where(EventRow.ts >= _day_start(start))
    if end is not None:
        query = query.where(EventRow.ts < _day_start(end + timedelta(days=1)))
    if not include_inactive:
        query = query.where(EventRow.active.is_(True))
    rows = (await db.execute(query.order_by(EventRow.ts))).scalars().all()
    return [event_from_row(r) for r in rows]


async def migraine_dates(db: AsyncSession, user_id: str, start: date) -> list[date]:
    rows = (await db.execute(
        select(Migraine.start_at).where(Migraine.user_id == user_id, Migraine.start_at >= _day_start(start))
    )).scalars().all()
    return [_utc_day(ts) for ts in rows]


async def daily_zones(db: AsyncSession, user_id: str, start: date) -> dict[date, Zone]:
    rows = (await db.execute(
        select(RiskScoreDaily).where(RiskScoreDaily.user_id == user_id, RiskScoreDaily.day >= start)
    )).scalars().all()
    return {r.day: Zone(r.zone) for r in rows}


# ── Recalibration batches ──

async def save_batch(db: AsyncSession, user_id: str, outcome: CalibrationOutcome) -> RecalibrationBatch:
    config = outcome.config
    batch = RecalibrationBatch(
        user_id=user_id,
        mode=outcome.mode.value,
        state=outcome.state.value,
        used_fallback=config.used_fallback,
        clinical_assessment=config.clinical_assessment,
        calibration_notes=config.calibration_notes,
        summary=config.summary,
        error=outcome.error,
    )
    db.add(batch)
    await db.flush()

    for position, proposal in enumerate(config.proposals):
        db.add(RecalibrationProposal(
            id=proposal.id,
            batch_id=batch.id,
            user_id=user_id,
            position=position,
            type=proposal.type.value,
            label=proposal.label,
            from_value=proposal.from_value,
            to_value=proposal.to_value,
            reasoning=proposal.reasoning,
            accepted=proposal.accepted,
        ))
    await db.flush()
    return batch


async def get_batch(db: AsyncSession, batch_id: str) -> Optional[RecalibrationBatch]:
    result = await db.execute(select(RecalibrationBatch).where(RecalibrationBatch.id == batch_id))
    return result.scalar_one_or_none()


async def latest_batch(
    db: AsyncSession, user_id: str, mode: Optional[CalibrationMode] = None,
) -> Optional[RecalibrationBatch]:
    query = select(RecalibrationBatch).where(RecalibrationBatch.user_id == user_id)
    if mode is not None:
        query = query.where(RecalibrationBatch.mode == mode.value)
    result = await db.execute(query.order_by(RecalibrationBatch.created_at.desc()).limit(1))
    return result.scalar_one_or_none()


async def load_batch_proposals(db: AsyncSession, batch_id: str) -> list[CalibrationProposal]:
    rows = (await db.execute(
        select(RecalibrationProposal)
        .where(RecalibrationProposal.batch_id == batch_id)
        .order_by(RecalibrationProposal.position)
    )).scalars().all()
    return [CalibrationProposal.model_validate(r) for r in rows]


async def save_selections(db: AsyncSession, batch_id: str, proposals: list[CalibrationProposal]):
    accepted = {p.id: p.accepted for p in proposals}
    rows = (await db.execute(
        select(RecalibrationProposal).where(RecalibrationProposal.batch_id == batch_id)
    )).scalars().all()
    for row in rows:
        if row.id in accepted:
            row.accepted = accepted[row.id]
    await db.flush()
