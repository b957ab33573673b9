"""Severity ordering and the questionnaire certainty scale.
Pure functions, no I/O. Everything that compares severities goes through rank()."""

from __future__ import annotations

from schemas import Certainty, Severity

_CERTAINTY_ORDER = [
    Certainty.NO,
    Certainty.RARELY,
    Certainty.SOMETIMES,
    Certainty.OFTEN,
    Certainty.EVERY_TIME,
]

_CERTAINTY_SEVERITY = {
    Certainty.EVERY_TIME: Severity.HIGH,
    Certainty.OFTEN: Severity.MILD,
    Certainty.SOMETIMES: Severity.LOW,
    Certainty.RARELY: Severity.LOW,
    Certainty.NO: Severity.NONE,
}

_SENSITIVITY_MULTIPLIER = {
    Certainty.EVERY_TIME: 0.60,
    Certainty.OFTEN: 0.80,
    Certainty.SOMETIMES: 1.00,
    Certainty.RARELY: 1.20,
    Certainty.NO: 1.40,
}

_EXPOSURE_LEVEL = {
    Certainty.EVERY_TIME: 1,
    Certainty.OFTEN: 1,
    Certainty.SOMETIMES: 2,
    Certainty.RARELY: 3,
    Certainty.NO: 4,
}


def rank(severity: Severity | str | None) -> int:
    return Severity.parse(severity).rank


def max_severity(*severities: Severity | str | None) -> Severity:
    best = Severity.NONE
    for sev in severities:
        parsed = Severity.parse(sev)
        if parsed.rank > best.rank:
            best = parsed
    return best


def is_elevation(existing: Severity | str | None, proposed: Severity | str | None) -> bool:
    """True only when proposed is strictly above existing."""
    return rank(proposed) > rank(existing)


def certainty_to_severity(certainty: Certainty) -> Severity:
    return _CERTAINTY_SEVERITY[certainty]


def certainty_rank(certainty: Certainty) -> int:
    return _CERTAINTY_ORDER.index(certainty)


def max_certainty(*certainties: Certainty) -> Certainty:
    return max(certainties, key=certainty_rank, default=Certainty.NO)


def downgrade(certainty: Certainty) -> Certainty:
    idx = certainty_rank(certainty)
    return _CERTAINTY_ORDER[max(0, idx - 1)]


def sensitivity_multiplier(certainty: Certainty) -> float:
    """Band half-width multiplier. More certain means a narrower band that fires sooner."""
    return _SENSITIVITY_MULTIPLIER[certainty]


def exposure_threshold(certainty: Certainty) -> int:
    """Exposure triggers: 1 fires at low+, 2 at medium+, 3 high only, 4 never."""
    return _EXPOSURE_LEVEL[certainty]


def parse_certainty(value) -> Certainty | None:
    """Accepts enum names and the questionnaire wording ("Every time", "Often", ...)."""
    if isinstance(value, Certainty):
        return value
    if value is None:
        return None
    key = str(value).strip().upper().replace(" ", "_").replace("-", "_")
    if key in ("NONE", "NEVER"):
        key = "NO"
    try:
        return Certainty(key)
    except ValueError:
        return None
