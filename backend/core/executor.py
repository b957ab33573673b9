"""Proposal executor: writes the accepted proposals of a batch in one transaction."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from sqlalchemy import select

from schemas import CalibrationProposal, EventKind, ProposalType, Severity, Zone
from store.db import async_session
from store.models import RecalibrationBatch, RecalibrationHistory, RecalibrationProposal
from store import repository
from core import logging as timeline_log
from core.calibration import DEFAULT_DECAY_TABLE, DEFAULT_GAUGE_THRESHOLDS
from core.severity import is_elevation

logger = logging.getLogger("migrainegauge.executor")

_DECAY_LABEL = re.compile(r"^\s*(HIGH|MILD|LOW)\s+day\s+([0-6])\s*$", re.IGNORECASE)


class ApplyError(Exception):
    pass


async def apply_batch(batch_id: str, accepted: list[CalibrationProposal]) -> bool:
    """Apply the accepted proposals of batch_id; every other proposal of the batch
    is marked rejected. Returns False when the batch was already applied.

    Either everything is written or nothing is: any failure rolls the session back."""
    async with async_session() as db:
        batch = (await db.execute(
            select(RecalibrationBatch).where(RecalibrationBatch.id == batch_id)
        )).scalar_one_or_none()
        if batch is None:
            raise ApplyError(f"Unknown batch {batch_id}")
        if batch.applied:
            logger.info("Batch %s already applied, skipping", batch_id)
            return False

        user_id = batch.user_id
        accepted_ids = {p.id for p in accepted}
        changes: list[dict] = []

        try:
            for proposal in accepted:
                result = await _apply_proposal(db, user_id, proposal)
                changes.append({
                    "type": proposal.type.value,
                    "label": proposal.label,
                    "from": proposal.from_value,
                    "to": proposal.to_value,
                    "result": result,
                })

            thresholds = await repository.load_thresholds(db, user_id, DEFAULT_GAUGE_THRESHOLDS)
            if not thresholds.is_ordered():
                raise ApplyError(
                    "Accepted thresholds leave the gauge out of order: "
                    + ", ".join(f"{z.value} {v:g}" for z, v in thresholds.minimums.items())
                )

            rows = (await db.execute(
                select(RecalibrationProposal).where(RecalibrationProposal.batch_id == batch_id)
            )).scalars().all()
            for row in rows:
                row.accepted = row.id in accepted_ids
                row.status = "accepted" if row.accepted else "rejected"

            now = datetime.now(timezone.utc)
            batch.applied = True
            batch.applied_at = now
            db.add(RecalibrationHistory(
                user_id=user_id,
                batch_id=batch_id,
                mode=batch.mode,
                accepted_count=len(accepted),
                rejected_count=len(rows) - sum(1 for r in rows if r.accepted),
                changes=changes,
                ts=now,
            ))
            await timeline_log.log_event(
                user_id=user_id,
                kind="RECALIBRATION_APPLIED",
                payload={"batch_id": batch_id, "accepted": len(accepted), "rejected": len(rows) - len(accepted)},
                db=db,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    return True


async def _apply_proposal(db, user_id: str, proposal: CalibrationProposal) -> str:
    ptype = proposal.type

    if ptype in (ProposalType.TRIGGER, ProposalType.PRODROME):
        kind = EventKind.PRODROME if ptype == ProposalType.PRODROME else EventKind.TRIGGER
        severity = Severity.coerce(proposal.to_value)
        if severity is None:
            raise ApplyError(f"Bad severity {proposal.to_value!r} for {proposal.label}")
        row = await repository.find_setting_row(db, user_id, kind, proposal.label)
        if row is None:
            row = repository.setting_table(kind)(user_id=user_id, label=proposal.label)
            db.add(row)
        elif not is_elevation(row.severity, severity):
            logger.info("Kept %s %s at %s; batch proposed %s", kind.value, row.label, row.severity, severity.value)
            return f"{kind.value} {row.label} kept at {row.severity}"
        row.severity = severity.value
        return f"{kind.value} {proposal.label} -> {severity.value}"

    elif ptype == ProposalType.FAVORITE:
        favorite = str(proposal.to_value).strip().lower() == "true"
        for kind in (EventKind.TRIGGER, EventKind.PRODROME):
            row = await repository.find_setting_row(db, user_id, kind, proposal.label)
            if row is not None:
                row.favorite = favorite
                return f"favorite {proposal.label} -> {favorite}"
        return f"favorite {proposal.label}: label not found"

    elif ptype == ProposalType.GAUGE_THRESHOLD:
        try:
            zone = Zone(str(proposal.label).upper())
            minimum = float(proposal.to_value)
        except (TypeError, ValueError) as e:
            raise ApplyError(f"Bad threshold proposal {proposal.label}={proposal.to_value!r}") from e
        await repository.upsert_threshold(db, user_id, zone, minimum)
        return f"threshold {zone.value} -> {minimum}"

    elif ptype == ProposalType.GAUGE_DECAY:
        match = _DECAY_LABEL.match(proposal.label or "")
        if not match:
            raise ApplyError(f"Bad decay cell label {proposal.label!r}")
        severity = Severity(match.group(1).upper())
        day = int(match.group(2))
        try:
            value = max(0.0, float(proposal.to_value))
        except (TypeError, ValueError) as e:
            raise ApplyError(f"Bad decay value {proposal.to_value!r}") from e
        row = await repository.decay_row(db, user_id, severity, seed=DEFAULT_DECAY_TABLE.row(severity))
        setattr(row, f"day_{day}", value)
        return f"decay {severity.value}[{day}] -> {value}"

    elif ptype == ProposalType.CLINICAL_ASSESSMENT:
        profile = await repository.get_or_create_profile(db, user_id)
        profile.clinical_assessment = str(proposal.to_value or "")
        return "clinical assessment updated"

    elif ptype == ProposalType.PROFILE:
        profile = await repository.get_or_create_profile(db, user_id)
        context = dict(profile.profile_context or {})
        context[proposal.label] = proposal.to_value
        profile.profile_context = context
        return f"profile {proposal.label} updated"

    elif ptype == ProposalType.DATA_WARNING:
        return "noted"

    raise ApplyError(f"Unknown proposal type: {ptype}")
