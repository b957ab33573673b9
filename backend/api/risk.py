from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from schemas import Contributor, DayRisk, RiskResponse, ScoreRequest, Zone
from store.db import get_db
from store.models import RiskScoreLive
from store import repository
from core.aggregator import forecast, resolve_severities
from core.calibration import DEFAULT_DECAY_TABLE, DEFAULT_GAUGE_THRESHOLDS
from core.risk_worker import recalc_user

router = APIRouter(prefix="/api/risk", tags=["risk"])


@router.post("/score", response_model=RiskResponse)
async def score(req: ScoreRequest):
    """Stateless scoring: everything needed comes in the request body."""
    triggers = {t.label: t for t in req.triggers}
    prodromes = {p.label: p for p in req.prodromes}
    events = resolve_severities(req.events, triggers, prodromes)

    outlook = forecast(
        req.today,
        events,
        req.decay_table or DEFAULT_DECAY_TABLE,
        req.thresholds or DEFAULT_GAUGE_THRESHOLDS,
        days=req.days,
        lookback_days=req.lookback_days,
    )
    current = outlook[0]
    return RiskResponse(
        score=current.score,
        zone=current.zone,
        percent=current.percent,
        top_triggers=current.top_triggers,
        forecast=outlook,
        computed_at=datetime.now(timezone.utc),
    )


@router.get("/{user_id}", response_model=RiskResponse)
async def get_risk(user_id: str, db: AsyncSession = Depends(get_db)):
    if await repository.get_profile(db, user_id) is None:
        raise HTTPException(404, "User not found")

    live = await db.get(RiskScoreLive, user_id)
    if live is None:
        return await recalc_user(user_id)

    return RiskResponse(
        user_id=user_id,
        score=live.score,
        zone=Zone(live.zone),
        percent=live.percent,
        top_triggers=[Contributor.model_validate(c) for c in live.top_triggers or []],
        forecast=[DayRisk.model_validate(d) for d in live.forecast or []],
        computed_at=live.computed_at,
    )


@router.post("/{user_id}/recalc", response_model=RiskResponse)
async def recalc(user_id: str, today: Optional[date] = None, db: AsyncSession = Depends(get_db)):
    if await repository.get_profile(db, user_id) is None:
        raise HTTPException(404, "User not found")
    return await recalc_user(user_id, today)
