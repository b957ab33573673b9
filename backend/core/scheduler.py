"""Background scheduler for periodic risk recalculation."""

from __future__ import annotations

import logging
import os

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.risk_worker import recalc_all

logger = logging.getLogger("migrainegauge.scheduler")

RISK_SCHEDULER_ENABLED = os.getenv("RISK_SCHEDULER_ENABLED", "1").lower() in ("1", "true", "yes")
RISK_RECALC_INTERVAL_MINUTES = int(os.getenv("RISK_RECALC_INTERVAL_MINUTES", "60"))

scheduler = AsyncIOScheduler()


def start_scheduler():
    scheduler.add_job(
        _risk_recalc,
        "interval",
        minutes=RISK_RECALC_INTERVAL_MINUTES,
        id="risk_recalc",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Background scheduler started (risk recalc every %s min)", RISK_RECALC_INTERVAL_MINUTES)


async def _risk_recalc():
    try:
        count = await recalc_all()
        logger.info("Recalculated risk for %d users", count)
    except Exception as e:
        logger.error("Risk recalc job error: %s", e)


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
