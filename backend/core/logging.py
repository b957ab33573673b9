"""Calibration timeline: one row per pipeline / review milestone per user."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from store.db import async_session
from store.models import CalibrationEvent

logger = logging.getLogger("migrainegauge.timeline")


async def log_event(
    user_id: str,
    kind: str,
    payload: dict | None = None,
    db: AsyncSession | None = None,
):
    """Record a timeline event. With db given, the row joins that session's
    transaction and the caller commits; otherwise it is committed on its own."""
    event = CalibrationEvent(
        id=str(uuid.uuid4()),
        user_id=user_id,
        kind=kind,
        ts=datetime.now(timezone.utc),
        payload=payload,
    )
    logger.info("[%s] %s %s", user_id, kind, payload or "")

    if db:
        db.add(event)
        await db.flush()
    else:
        async with async_session() as session:
            session.add(event)
            await session.commit()


async def get_timeline(user_id: str) -> list[dict]:
    async with async_session() as session:
        result = await session.execute(
            select(CalibrationEvent)
            .where(CalibrationEvent.user_id == user_id)
            .order_by(CalibrationEvent.ts)
        )
        events = result.scalars().all()
        return [
            {
                "id": e.id,
                "user_id": e.user_id,
                "kind": e.kind,
                "ts": e.ts.isoformat() if e.ts else "",
                "payload": e.payload,
            }
            for e in events
        ]
