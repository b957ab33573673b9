from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from store.db import init_db
from integrations import gemini_client
from core.scheduler import RISK_SCHEDULER_ENABLED, start_scheduler, stop_scheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger("migrainegauge")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("MigraineGauge starting up...")
    await init_db()
    logger.info("Database initialized")

    if not gemini_client.is_configured():
        logger.warning("GEMINI_API_KEY not set; calibration will use the deterministic fallback")

    if RISK_SCHEDULER_ENABLED:
        start_scheduler()
    logger.info("MigraineGauge ready")

    yield

    stop_scheduler()
    logger.info("MigraineGauge shut down")


app = FastAPI(
    title="MigraineGauge API",
    description="Personalized migraine risk gauge with AI-assisted calibration",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from api.events import router as events_router
from api.risk import router as risk_router
from api.calibration import router as calibration_router
from api.recalibration import router as recalibration_router

app.include_router(events_router)
app.include_router(risk_router)
app.include_router(calibration_router)
app.include_router(recalibration_router)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "migrainegauge",
        "gemini_model_fast": gemini_client.GEMINI_MODEL_FAST,
        "gemini_model_strong": gemini_client.GEMINI_MODEL_STRONG,
        "gemini_configured": gemini_client.is_configured(),
        "risk_scheduler_enabled": RISK_SCHEDULER_ENABLED,
        "database": os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./migrainegauge.db").split(":", 1)[0],
    }
