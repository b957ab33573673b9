"""MonotonicGuard: the elevation-only rule every calibration adjustment passes through."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from schemas import Adjustment, FavoriteAdjustment, Severity, TriggerSetting
from core.severity import is_elevation

logger = logging.getLogger("migrainegauge.guard")


def _index(settings: dict[str, TriggerSetting]) -> dict[str, str]:
    return {label.strip().lower(): label for label in settings}


def apply_adjustments(
    floor: dict[str, TriggerSetting],
    adjustments: Iterable[Adjustment],
    setting_cls: type[TriggerSetting] = TriggerSetting,
    auto_labels: Optional[Iterable[str]] = None,
) -> tuple[dict[str, TriggerSetting], list[dict]]:
    """Merge proposed severity changes into the floor without ever lowering it.

    - existing label, higher rank: raised
    - existing label, equal or lower rank: discarded (logged, not an error)
    - new label, severity above NONE: activated fresh
    - new label at NONE: discarded

    The floor itself is not modified. Returns (merged, decisions)."""

    merged = dict(floor)
    index = _index(merged)
    auto = {label.strip().lower() for label in (auto_labels or ())}
    decisions: list[dict] = []

    for adj in adjustments:
        key = adj.label.strip().lower()
        decision = {
            "label": adj.label,
            "from": None,
            "to": adj.to_severity.value,
            "approved": True,
            "reason": "",
            "reasoning": adj.reasoning,
        }

        existing_label = index.get(key)
        if existing_label is not None:
            current = merged[existing_label]
            decision["label"] = existing_label
            decision["from"] = current.severity.value
            if not is_elevation(current.severity, adj.to_severity):
                decision["approved"] = False
                decision["reason"] = (
                    f"Would not raise {current.severity.value} to {adj.to_severity.value}"
                )
                decisions.append(decision)
                continue
            merged[existing_label] = current.model_copy(update={"severity": adj.to_severity})
            decisions.append(decision)
            continue

        if adj.to_severity == Severity.NONE:
            decision["approved"] = False
            decision["reason"] = "New label proposed at NONE"
            decisions.append(decision)
            continue

        label = adj.label.strip()
        merged[label] = setting_cls(
            label=label,
            severity=adj.to_severity,
            is_automatable=key in auto,
        )
        index[key] = label
        decision["from"] = Severity.NONE.value
        decisions.append(decision)

    dropped = [d for d in decisions if not d["approved"]]
    if dropped:
        logger.info("Guard discarded %d adjustments: %s", len(dropped), dropped)

    return merged, decisions


def apply_favorites(
    settings: dict[str, TriggerSetting],
    favorites: Iterable[FavoriteAdjustment],
) -> tuple[dict[str, TriggerSetting], list[FavoriteAdjustment]]:
    """Flip favorite flags on active labels. Unknown labels and no-op flips are ignored."""
    merged = dict(settings)
    index = _index(merged)
    applied: list[FavoriteAdjustment] = []

    for fav in favorites:
        label = index.get(fav.label.strip().lower())
        if label is None:
            logger.info("Favorite change for unknown label %s ignored", fav.label)
            continue
        current = merged[label]
        if current.severity == Severity.NONE or current.favorite == fav.favorite:
            continue
        merged[label] = current.model_copy(update={"favorite": fav.favorite})
        applied.append(fav.model_copy(update={"label": label}))

    return merged, applied
