"""
Pytest configuration and fixtures

Every test session gets its own throwaway sqlite file, and the periodic
risk scheduler is switched off, before any project module is imported.
"""
import os
import sys
import tempfile
import pytest

_TMP_DIR = tempfile.mkdtemp(prefix="migrainegauge-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["RISK_SCHEDULER_ENABLED"] = "0"
os.environ["GEMINI_API_KEY"] = ""

# Add the parent directory to the path so we can import from core, store, api
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from schemas import (  # noqa: E402
    AvailableItems,
    MappingResult,
    PoolItem,
    ProdromeSetting,
    Severity,
    TriggerSetting,
)


@pytest.fixture
def floor_mapping():
    """A small floor: Caffeine MILD (manual), Sleep duration low HIGH (auto), Aura LOW prodrome."""
    return MappingResult(
        triggers={
            "Caffeine": TriggerSetting(label="Caffeine", severity=Severity.MILD),
            "Sleep duration low": TriggerSetting(
                label="Sleep duration low", severity=Severity.HIGH, is_automatable=True,
                direction="low", default_threshold=6.0,
            ),
        },
        prodromes={
            "Aura": ProdromeSetting(label="Aura", severity=Severity.LOW),
        },
    )


@pytest.fixture
def available():
    return AvailableItems(
        triggers=[
            PoolItem(label="Caffeine"),
            PoolItem(label="Sleep duration low", is_automatable=True, direction="low"),
            PoolItem(label="Alcohol"),
            PoolItem(label="Pressure low", is_automatable=True, direction="low"),
        ],
        prodromes=[PoolItem(label="Aura"), PoolItem(label="Yawning")],
    )

