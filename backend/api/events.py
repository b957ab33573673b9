from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schemas import Event, EventCreate, EventUpdate, MigraineCreate
from store.db import get_db
from store.models import EventRow, Migraine
from store import repository

logger = logging.getLogger("migrainegauge.events")

router = APIRouter(prefix="/api/events", tags=["events"])


def _as_utc(ts: Optional[datetime]) -> datetime:
    if ts is None:
        return datetime.now(timezone.utc)
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


@router.post("/{user_id}", response_model=Event)
async def log_event(user_id: str, req: EventCreate, db: AsyncSession = Depends(get_db)):
    await repository.get_or_create_profile(db, user_id)
    row = EventRow(
        user_id=user_id,
        kind=req.kind.value,
        label=req.label.strip(),
        severity=req.severity.value if req.severity else None,
        ts=_as_utc(req.timestamp),
        linked_migraine_id=req.linked_migraine_id,
        source=req.source,
        active=True,
    )
    db.add(row)
    await db.commit()
    logger.info("Logged %s %s for %s", row.kind, row.label, user_id)
    return repository.event_from_row(row)


@router.get("/{user_id}", response_model=list[Event])
async def list_events(
    user_id: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
):
    return await repository.load_events(db, user_id, start, end, include_inactive)


@router.patch("/{user_id}/{event_id}", response_model=Event)
async def update_event(user_id: str, event_id: str, req: EventUpdate, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(EventRow).where(EventRow.id == event_id, EventRow.user_id == user_id)
    )
    row = result.scalar_one_or_none()
    if not row:
        raise HTTPException(404, "Event not found")

    if req.active is not None:
        row.active = req.active
    if req.unlink:
        row.linked_migraine_id = None
    elif req.linked_migraine_id is not None:
        row.linked_migraine_id = req.linked_migraine_id

    await db.commit()
    return repository.event_from_row(row)


@router.post("/{user_id}/migraines")
async def log_migraine(user_id: str, req: MigraineCreate, db: AsyncSession = Depends(get_db)):
    await repository.get_or_create_profile(db, user_id)
    migraine = Migraine(
        user_id=user_id,
        start_at=_as_utc(req.start_at),
        pain_level=req.pain_level,
        notes=req.notes,
    )
    db.add(migraine)
    await db.commit()
    return {"id": migraine.id, "user_id": user_id, "start_at": migraine.start_at.isoformat()}
