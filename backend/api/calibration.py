from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from schemas import CalibrationResponse, EventKind, OnboardingRequest
from store.db import get_db
from store import repository
from core.mapper import map_questionnaire
from core.calibration import DEFAULT_DECAY_TABLE, DEFAULT_GAUGE_THRESHOLDS, run_calibration
from core import logging as timeline_log

logger = logging.getLogger("migrainegauge.onboarding")

router = APIRouter(prefix="/api/calibration", tags=["calibration"])


@router.post("/{user_id}/onboarding", response_model=CalibrationResponse)
async def onboard(user_id: str, req: OnboardingRequest, db: AsyncSession = Depends(get_db)):
    """Map the questionnaire to floor ratings, persist them with the default gauge,
    then run the calibration pipeline. Its proposals wait in a review batch."""
    mapping = map_questionnaire(req.answers, req.available)

    profile = await repository.get_or_create_profile(db, user_id)
    profile.answers = req.answers.model_dump(mode="json")
    profile.profile_context = mapping.profile_context.model_dump(exclude_none=True)
    profile.onboarded_at = datetime.now(timezone.utc)

    await repository.save_settings(db, user_id, EventKind.TRIGGER, mapping.triggers)
    await repository.save_settings(db, user_id, EventKind.PRODROME, mapping.prodromes)
    await repository.save_gauge(db, user_id, DEFAULT_GAUGE_THRESHOLDS, DEFAULT_DECAY_TABLE)
    await db.commit()

    await timeline_log.log_event(
        user_id=user_id,
        kind="FLOOR_MAPPED",
        payload={"triggers": len(mapping.triggers), "prodromes": len(mapping.prodromes)},
    )

    outcome = await run_calibration(
        mapping,
        available=req.available,
        data_context=req.data_context,
    )

    batch = await repository.save_batch(db, user_id, outcome)
    await db.commit()

    await timeline_log.log_event(
        user_id=user_id,
        kind="CALIBRATION_FINISHED",
        payload={
            "batch_id": batch.id,
            "state": outcome.state.value,
            "used_fallback": outcome.config.used_fallback,
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
