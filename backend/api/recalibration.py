from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from schemas import (
    AvailableItems,
    CalibrationMode,
    CalibrationResponse,
    DataContext,
    MappingResult,
    PoolItem,
    ProfileContext,
    RecalibrationRunRequest,
    ReviewState,
    ReviewStatus,
)
from store.db import get_db
from store import repository
from core import review
from core.aggregator import gauge_performance
from core.calibration import DEFAULT_DECAY_TABLE, DEFAULT_GAUGE_THRESHOLDS, run_calibration
from core.executor import apply_batch
from core import logging as timeline_log

logger = logging.getLogger("migrainegauge.recalibration")

router = APIRouter(prefix="/api/recalibration", tags=["recalibration"])

PERFORMANCE_WINDOW_DAYS = 90


async def _require_profile(db: AsyncSession, user_id: str):
    profile = await repository.get_profile(db, user_id)
    if not profile:
        raise HTTPException(404, "User not found")
    return profile


async def _review_state(db: AsyncSession, user_id: str, batch_id: str) -> ReviewState:
    batch = await repository.get_batch(db, batch_id)
    if not batch or batch.user_id != user_id:
        raise HTTPException(404, "Batch not found")
    try:
        proposals = await repository.load_batch_proposals(db, batch_id)
    except Exception as e:
        return review.load_failed(str(e), batch_id)
    state = review.load_proposals(batch_id, proposals, batch.clinical_assessment, batch.calibration_notes)
    if batch.applied:
        state = state.model_copy(update={"status": ReviewStatus.APPLIED})
    return state


@router.get("/{user_id}/cooldown")
async def cooldown(user_id: str, db: AsyncSession = Depends(get_db)):
    await _require_profile(db, user_id)
    out = {}
    for mode in CalibrationMode:
        last = await repository.latest_batch(db, user_id, mode)
        remaining = review.cooldown_remaining(last.created_at if last else None, mode)
        out[mode.value] = {"remaining_s": int(remaining.total_seconds()), "allowed": remaining == timedelta(0)}
    return out


@router.post("/{user_id}/run", response_model=CalibrationResponse)
async def run(user_id: str, req: RecalibrationRunRequest = RecalibrationRunRequest(), db: AsyncSession = Depends(get_db)):
    profile = await _require_profile(db, user_id)

    if not req.force:
        last = await repository.latest_batch(db, user_id, req.mode)
        remaining = review.cooldown_remaining(last.created_at if last else None, req.mode)
        if remaining > timedelta(0):
            raise HTTPException(429, f"Recalibration available in {int(remaining.total_seconds())}s")

    triggers, prodromes = await repository.load_settings(db, user_id)
    mapping = MappingResult(
        triggers=triggers,
        prodromes=prodromes,
        profile_context=ProfileContext.model_validate(profile.profile_context or {}),
    )
    available = AvailableItems(
        triggers=[PoolItem(label=s.label, is_automatable=s.is_automatable, direction=s.direction, unit=s.unit)
                  for s in triggers.values()],
        prodromes=[PoolItem(label=s.label, is_automatable=s.is_automatable, direction=s.direction, unit=s.unit)
                   for s in prodromes.values()],
    )

    since = datetime.now(timezone.utc).date() - timedelta(days=PERFORMANCE_WINDOW_DAYS)
    zones = await repository.daily_zones(db, user_id, since)
    migraines = await repository.migraine_dates(db, user_id, since)
    performance = gauge_performance(zones, migraines) if zones else None

    enabled = (profile.answers or {}).get("enabled_metrics") or {}
    data_context = DataContext(
        wearable_connected=any(enabled.values()),
        enabled_metrics=enabled,
        days_of_data=len(zones),
        migraine_count=len(migraines),
    )

    outcome = await run_calibration(
        mapping,
        available=available,
        data_context=data_context,
        mode=req.mode,
        base_thresholds=await repository.load_thresholds(db, user_id, DEFAULT_GAUGE_THRESHOLDS),
        base_decay=await repository.load_decay(db, user_id, DEFAULT_DECAY_TABLE),
        performance=performance,
    )
    batch = await repository.save_batch(db, user_id, outcome)
    await db.commit()

    await timeline_log.log_event(
        user_id=user_id,
        kind="RECALIBRATION_PROPOSED",
        payload={
            "batch_id": batch.id,
            "mode": req.mode.value,
            "state": outcome.state.value,
            "proposals": len(outcome.config.proposals),
            "error": outcome.error,
        },
    )

    return CalibrationResponse(
        user_id=user_id,
        batch_id=batch.id,
        state=outcome.state,
        used_fallback=outcome.config.used_fallback,
        clinical_assessment=outcome.config.clinical_assessment,
        calibration_notes=outcome.config.calibration_notes,
        summary=outcome.config.summary,
        proposals=outcome.config.proposals,
    )


@router.get("/{user_id}/proposals", response_model=ReviewState)
async def latest_proposals(user_id: str, batch_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    await _require_profile(db, user_id)
    if batch_id is None:
        batch = await repository.latest_batch(db, user_id)
        if not batch:
            raise HTTPException(404, "No recalibration batch")
        batch_id = batch.id
    return await _review_state(db, user_id, batch_id)


async def _save(db: AsyncSession, before: ReviewState, after: ReviewState) -> ReviewState:
    if after is not before:
        await repository.save_selections(db, after.batch_id, after.proposals)
        await db.commit()
    return after


@router.post("/{user_id}/batches/{batch_id}/proposals/{proposal_id}/toggle", response_model=ReviewState)
async def toggle(user_id: str, batch_id: str, proposal_id: str, db: AsyncSession = Depends(get_db)):
    state = await _review_state(db, user_id, batch_id)
    return await _save(db, state, review.toggle_proposal(state, proposal_id))


@router.post("/{user_id}/batches/{batch_id}/accept-all", response_model=ReviewState)
async def accept_all(user_id: str, batch_id: str, db: AsyncSession = Depends(get_db)):
    state = await _review_state(db, user_id, batch_id)
    return await _save(db, state, review.accept_all(state))


@router.post("/{user_id}/batches/{batch_id}/reject-all", response_model=ReviewState)
async def reject_all(user_id: str, batch_id: str, db: AsyncSession = Depends(get_db)):
    state = await _review_state(db, user_id, batch_id)
    return await _save(db, state, review.reject_all(state))


@router.post("/{user_id}/batches/{batch_id}/apply", response_model=ReviewState)
async def apply(user_id: str, batch_id: str, db: AsyncSession = Depends(get_db)):
    state = await _review_state(db, user_id, batch_id)
    result = await review.apply_decisions(state, apply_batch)
    if result.status == ReviewStatus.APPLIED and state.status != ReviewStatus.APPLIED:
        logger.info("Batch %s applied for %s", batch_id, user_id)
    return result


@router.get("/{user_id}/timeline")
async def timeline(user_id: str):
    return await timeline_log.get_timeline(user_id)
