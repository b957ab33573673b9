"""Decay-weighted risk aggregation.
Pure math over the events, decay table and thresholds passed in. No DB, no globals."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional

from schemas import (
    DECAY_DAYS,
    Contributor,
    DailyScore,
    DayRisk,
    DecayTable,
    Event,
    EventKind,
    GaugePerformance,
    GaugeThresholds,
    Severity,
    TriggerSetting,
    Zone,
)

logger = logging.getLogger("migrainegauge.aggregator")

OTHER_LABEL = "Other"
DEFAULT_LOOKBACK_DAYS = DECAY_DAYS - 1
FORECAST_DAYS = 7
TOP_TRIGGERS = 3

_ZONE_WALK = (Zone.HIGH, Zone.MILD, Zone.LOW)
_POSITIVE_ZONES = (Zone.MILD, Zone.HIGH)


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def resolve_severities(
    events: Iterable[Event],
    triggers: dict[str, TriggerSetting] | None = None,
    prodromes: dict[str, TriggerSetting] | None = None,
) -> list[Event]:
    """Fill in missing event severities from the user's label settings.
    Lookup is case-insensitive and per kind. Events that already carry a
    severity are left alone; unknown labels keep severity None."""
    trigger_sev = {k.strip().lower(): s.severity for k, s in (triggers or {}).items()}
    prodrome_sev = {k.strip().lower(): s.severity for k, s in (prodromes or {}).items()}

    resolved: list[Event] = []
    for event in events:
        if event.severity is not None:
            resolved.append(event)
            continue
        pool = prodrome_sev if event.kind == EventKind.PRODROME else trigger_sev
        sev = pool.get(event.label.strip().lower())
        resolved.append(event.model_copy(update={"severity": sev}) if sev is not None else event)
    return resolved


def compute_daily_score(
    day: date,
    events: Iterable[Event],
    decay_table: DecayTable,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    known_labels: Optional[Iterable[str]] = None,
) -> DailyScore:
    """Sum the still-decaying contributions of every active event dated within
    [day - lookback_days, day].

    Contributors are per-label totals ordered by points (desc), then by the
    earliest event timestamp, then alphabetically. When known_labels is given,
    anything outside it is still scored but reported under "Other"."""
    known = {label.strip().lower() for label in known_labels} if known_labels is not None else None

    score = 0.0
    totals: dict[str, dict] = {}

    for event in events:
        if not event.active:
            continue
        sev = event.severity or Severity.NONE
        if sev == Severity.NONE:
            continue

        age = (day - event.day).days
        if age < 0 or age > lookback_days:
            continue

        points = decay_table.weight(sev, age)
        if points <= 0:
            continue
        score += points

        label = event.label.strip()
        if known is not None and label.lower() not in known:
            label = OTHER_LABEL
        bucket = totals.setdefault(label.lower(), {
            "label": label,
            "points": 0.0,
            "severity": Severity.NONE,
            "days": set(),
            "first_seen": _utc(event.timestamp),
        })
        bucket["points"] += points
        bucket["days"].add(event.day)
        bucket["first_seen"] = min(bucket["first_seen"], _utc(event.timestamp))
        if sev.rank > bucket["severity"].rank:
            bucket["severity"] = sev

    ordered = sorted(
        totals.values(),
        key=lambda b: (-b["points"], b["first_seen"], b["label"].lower()),
    )
    contributors = [
        Contributor(
            label=b["label"],
            points=round(b["points"], 6),
            severity=b["severity"],
            days_active=len(b["days"]),
        )
        for b in ordered
    ]
    return DailyScore(day=day, score=round(score, 6), contributors=contributors)


def classify_zone(score: float, thresholds: GaugeThresholds) -> Zone:
    """Highest zone whose minimum is <= score. Zones missing from the
    thresholds are never entered; a zero score is always NONE."""
    if score <= 0:
        return Zone.NONE
    for zone in _ZONE_WALK:
        minimum = thresholds.get(zone)
        if minimum is not None and score >= minimum:
            return zone
    return Zone.NONE


def gauge_percent(score: float, thresholds: GaugeThresholds) -> int:
    gauge_max = thresholds.gauge_max()
    if gauge_max <= 0:
        return 0
    return max(0, min(100, round(score / gauge_max * 100)))


def day_risk(
    day: date,
    events: Iterable[Event],
    decay_table: DecayTable,
    thresholds: GaugeThresholds,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    top_n: int = TOP_TRIGGERS,
    known_labels: Optional[Iterable[str]] = None,
) -> DayRisk:
    daily = compute_daily_score(day, events, decay_table, lookback_days, known_labels)
    return DayRisk(
        day=day,
        score=daily.score,
        zone=classify_zone(daily.score, thresholds),
        percent=gauge_percent(daily.score, thresholds),
        top_triggers=daily.contributors[:top_n],
    )


def forecast(
    today: date,
    events: Iterable[Event],
    decay_table: DecayTable,
    thresholds: GaugeThresholds,
    days: int = FORECAST_DAYS,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    top_n: int = TOP_TRIGGERS,
    known_labels: Optional[Iterable[str]] = None,
) -> list[DayRisk]:
    """Today plus days-1 projected days. Each day only sees events dated on or
    before it, so projections are pure decay of what has already been logged."""
    events = list(events)
    known = list(known_labels) if known_labels is not None else None
    outlook: list[DayRisk] = []
    for offset in range(days):
        target = today + timedelta(days=offset)
        visible = [e for e in events if e.day <= target]
        outlook.append(day_risk(target, visible, decay_table, thresholds, lookback_days, top_n, known))
    return outlook


def gauge_performance(
    daily_zones: dict[date, Zone],
    migraine_dates: Iterable[date],
    window_days: int = 2,
) -> GaugePerformance:
    """Hit/miss counts for the gauge over a history of daily zones.
    A MILD/HIGH day is a warning; a migraine is caught when a warning lands on
    the migraine day or up to window_days before it."""
    migraines = sorted(set(migraine_dates))
    positive_days = {d for d, z in daily_zones.items() if z in _POSITIVE_ZONES}

    def _in_lead_window(day: date) -> bool:
        return any(0 <= (m - day).days <= window_days for m in migraines)

    tp = sum(
        1 for m in migraines
        if any(0 <= (m - d).days <= window_days for d in positive_days)
    )
    fn = len(migraines) - tp
    fp = sum(1 for d in positive_days if not _in_lead_window(d))
    tn = sum(
        1 for d, z in daily_zones.items()
        if z not in _POSITIVE_ZONES and not _in_lead_window(d)
    )

    return GaugePerformance(
        true_positive=tp,
        false_positive=fp,
        false_negative=fn,
        true_negative=tn,
        sensitivity=round(tp / (tp + fn), 3) if tp + fn else None,
        specificity=round(tn / (tn + fp), 3) if tn + fp else None,
    )
