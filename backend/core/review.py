"""Recalibration review: LOADING -> READY -> APPLYING -> APPLIED | ERROR.

The transforms here are pure and return a new ReviewState. Only apply_decisions
touches the outside world, through the writer it is given."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, Optional

from schemas import CalibrationMode, CalibrationProposal, ReviewState, ReviewStatus

logger = logging.getLogger("migrainegauge.review")

FULL_COOLDOWN_DAYS = int(os.getenv("RECALIBRATION_COOLDOWN_DAYS", "30"))
PROFILE_ONLY_COOLDOWN_DAYS = 1

Writer = Callable[[str, list[CalibrationProposal]], Awaitable[object]]


def load_proposals(
    batch_id: str,
    proposals: Iterable[CalibrationProposal],
    clinical_assessment: str = "",
    calibration_notes: str = "",
) -> ReviewState:
    return ReviewState(
        status=ReviewStatus.READY,
        batch_id=batch_id,
        proposals=list(proposals),
        clinical_assessment=clinical_assessment,
        calibration_notes=calibration_notes,
    )


def load_failed(message: str, batch_id: Optional[str] = None) -> ReviewState:
    logger.warning("Could not load proposals for batch %s: %s", batch_id, message)
    return ReviewState(status=ReviewStatus.ERROR, batch_id=batch_id, error=message)


def _with_selection(state: ReviewState, select: Callable[[CalibrationProposal], bool]) -> ReviewState:
    if state.status != ReviewStatus.READY:
        return state
    proposals = [p.model_copy(update={"accepted": select(p)}) for p in state.proposals]
    return state.model_copy(update={"proposals": proposals})


def toggle_proposal(state: ReviewState, proposal_id: str) -> ReviewState:
    """Flip one proposal. Unknown ids leave the state as it was."""
    if not any(p.id == proposal_id for p in state.proposals):
        return state
    return _with_selection(state, lambda p: (not p.accepted) if p.id == proposal_id else p.accepted)


def accept_all(state: ReviewState) -> ReviewState:
    return _with_selection(state, lambda p: True)


def reject_all(state: ReviewState) -> ReviewState:
    return _with_selection(state, lambda p: False)


async def apply_decisions(
    state: ReviewState,
    writer: Writer,
    on_transition: Optional[Callable[[ReviewState], None]] = None,
) -> ReviewState:
    """Hand the accepted proposals to writer in one call.

    The writer owns the transaction and the per-batch applied flag, so calling
    this twice for the same batch is safe. A writer failure puts the state back
    to READY with the error set and every selection kept."""
    if state.status != ReviewStatus.READY or not state.batch_id:
        return state

    applying = state.model_copy(update={"status": ReviewStatus.APPLYING, "error": None})
    if on_transition:
        on_transition(applying)

    accepted = applying.accepted
    try:
        await writer(applying.batch_id, accepted)
    except Exception as e:
        logger.error("Applying batch %s failed: %s", state.batch_id, e)
        return applying.model_copy(update={"status": ReviewStatus.READY, "error": str(e) or type(e).__name__})

    logger.info(
        "Applied batch %s: %d accepted, %d rejected",
        state.batch_id, len(accepted), len(applying.proposals) - len(accepted),
    )
    return applying.model_copy(update={"status": ReviewStatus.APPLIED})


def cooldown_remaining(
    last_run_at: Optional[datetime],
    mode: CalibrationMode = CalibrationMode.FULL,
    now: Optional[datetime] = None,
) -> timedelta:
    """Time left before another run of this mode is allowed (zero when allowed)."""
    if last_run_at is None:
        return timedelta(0)
    now = now or datetime.now(timezone.utc)
    if last_run_at.tzinfo is None:
        last_run_at = last_run_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    days = FULL_COOLDOWN_DAYS if mode == CalibrationMode.FULL else PROFILE_ONLY_COOLDOWN_DAYS
    remaining = last_run_at + timedelta(days=days) - now
    return max(remaining, timedelta(0))
