"""Loads a user's events and gauge config, computes today's risk and the
7-day outlook, and stores the live and daily snapshots."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select

from schemas import RiskResponse
from store.db import async_session
from store.models import Profile, RiskScoreDaily, RiskScoreLive
from store import repository
from core.aggregator import DEFAULT_LOOKBACK_DAYS, FORECAST_DAYS, forecast, resolve_severities
from core.calibration import DEFAULT_DECAY_TABLE, DEFAULT_GAUGE_THRESHOLDS

logger = logging.getLogger("migrainegauge.risk")


async def recalc_user(user_id: str, today: Optional[date] = None) -> RiskResponse:
    today = today or datetime.now(timezone.utc).date()

    async with async_session() as db:
        triggers, prodromes = await repository.load_settings(db, user_id)
        thresholds = await repository.load_thresholds(db, user_id, DEFAULT_GAUGE_THRESHOLDS)
        decay_table = await repository.load_decay(db, user_id, DEFAULT_DECAY_TABLE)
        events = await repository.load_events(
            db, user_id,
            start=today - timedelta(days=DEFAULT_LOOKBACK_DAYS),
            end=today + timedelta(days=FORECAST_DAYS - 1),
        )
        events = resolve_severities(events, triggers, prodromes)

        outlook = forecast(today, events, decay_table, thresholds)
        current = outlook[0]
        now = datetime.now(timezone.utc)

        top = [c.model_dump(mode="json") for c in current.top_triggers]
        live = await db.get(RiskScoreLive, user_id)
        if live is None:
            live = RiskScoreLive(user_id=user_id)
            db.add(live)
        live.score = current.score
        live.zone = current.zone.value
        live.percent = current.percent
        live.top_triggers = top
        live.forecast = [d.model_dump(mode="json") for d in outlook]
        live.computed_at = now

        daily = (await db.execute(
            select(RiskScoreDaily).where(RiskScoreDaily.user_id == user_id, RiskScoreDaily.day == today)
        )).scalar_one_or_none()
        if daily is None:
            daily = RiskScoreDaily(user_id=user_id, day=today)
            db.add(daily)
        daily.score = current.score
        daily.zone = current.zone.value
        daily.contributors = top
        daily.computed_at = now

        await db.commit()

    logger.info("Risk for %s on %s: %.2f (%s)", user_id, today, current.score, current.zone.value)
    return RiskResponse(
        user_id=user_id,
        score=current.score,
        zone=current.zone,
        percent=current.percent,
        top_triggers=current.top_triggers,
        forecast=outlook,
        computed_at=now,
    )


async def recalc_all(today: Optional[date] = None) -> int:
    async with async_session() as db:
        user_ids = (await db.execute(select(Profile.id))).scalars().all()

    done = 0
    for user_id in user_ids:
        try:
            await recalc_user(user_id, today)
            done += 1
        except Exception as e:
            logger.error("Risk recalc failed for %s: %s", user_id, e)
    return done
