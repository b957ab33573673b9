"""
Tests for the decay-weighted risk aggregator.

Covers:
- daily score with the default decay table
- inclusive zone boundaries and missing zones
- the 7-day decay window edge
- forecast never inventing future events
- "Other" grouping, contributor ordering, inactive events
- gauge percent and gauge performance statistics
"""
from datetime import date, datetime, timedelta, timezone

import pytest

from schemas import DecayTable, Event, EventKind, GaugeThresholds, Severity, TriggerSetting, Zone
from core.aggregator import (
    OTHER_LABEL,
    classify_zone,
    compute_daily_score,
    forecast,
    gauge_percent,
    gauge_performance,
    resolve_severities,
)
from core.calibration import DEFAULT_DECAY_TABLE, DEFAULT_GAUGE_THRESHOLDS

TODAY = date(2026, 3, 10)


def _ts(day: date, hour: int = 9) -> datetime:
    return datetime(day.year, day.month, day.day, hour, 0, tzinfo=timezone.utc)


def _event(label, days_ago=0, severity=Severity.HIGH, hour=9, **kw) -> Event:
    return Event(label=label, timestamp=_ts(TODAY - timedelta(days=days_ago), hour), severity=severity, **kw)


class TestDailyScore:
    """compute_daily_score sums still-decaying contributions."""

    def test_single_high_event_today(self):
        daily = compute_daily_score(TODAY, [_event("Alcohol")], DEFAULT_DECAY_TABLE)
        assert daily.score == 10.0
        assert len(daily.contributors) == 1
        top = daily.contributors[0]
        assert top.label == "Alcohol"
        assert top.points == 10.0
        assert top.severity == Severity.HIGH
        assert top.days_active == 1

    def test_contributions_add_up(self):
        events = [_event("Alcohol", 0), _event("Alcohol", 1), _event("Stress", 2, Severity.MILD)]
        daily = compute_daily_score(TODAY, events, DEFAULT_DECAY_TABLE)
        # 10 (today) + 5 (yesterday) + 1.5 (MILD, two days ago)
        assert daily.score == pytest.approx(16.5)
        assert daily.contributors[0].label == "Alcohol"
        assert daily.contributors[0].days_active == 2

    def test_decay_window_edge(self):
        flat = DecayTable(rows={Severity.LOW: [1, 1, 1, 1, 1, 1, 1]})
        events = [_event("A", 6, Severity.LOW), _event("B", 7, Severity.LOW)]
        daily = compute_daily_score(TODAY, events, flat)
        assert daily.score == 1.0
        assert [c.label for c in daily.contributors] == ["A"]

    def test_future_events_ignored(self):
        daily = compute_daily_score(TODAY, [_event("Alcohol", -1)], DEFAULT_DECAY_TABLE)
        assert daily.score == 0.0
        assert daily.contributors == []

    def test_inactive_and_unrated_events_skipped(self):
        events = [
            _event("Alcohol", active=False),
            _event("Noise", severity=Severity.NONE),
            _event("Unknown", severity=None),
        ]
        daily = compute_daily_score(TODAY, events, DEFAULT_DECAY_TABLE)
        assert daily.score == 0.0
        assert daily.contributors == []

    def test_zero_point_contributors_omitted(self):
        # LOW row is 0 from day 2 onwards
        daily = compute_daily_score(TODAY, [_event("Humidity high", 3, Severity.LOW)], DEFAULT_DECAY_TABLE)
        assert daily.score == 0.0
        assert daily.contributors == []

    def test_labels_grouped_case_insensitively(self):
        events = [_event("Caffeine", 0, Severity.LOW), _event("caffeine ", 1, Severity.LOW)]
        daily = compute_daily_score(TODAY, events, DEFAULT_DECAY_TABLE)
        assert len(daily.contributors) == 1
        assert daily.contributors[0].points == pytest.approx(4.5)

    def test_unknown_labels_grouped_under_other(self):
        events = [_event("Caffeine", severity=Severity.LOW), _event("Mystery"), _event("Novelty", 1)]
        daily = compute_daily_score(TODAY, events, DEFAULT_DECAY_TABLE, known_labels=["caffeine"])
        assert daily.score == pytest.approx(3 + 10 + 5)
        labels = [c.label for c in daily.contributors]
        assert labels == [OTHER_LABEL, "Caffeine"]
        assert daily.contributors[0].points == pytest.approx(15)
        assert daily.contributors[0].days_active == 2

    def test_ties_broken_by_earliest_timestamp(self):
        events = [_event("Zeta", severity=Severity.MILD, hour=8), _event("Alpha", severity=Severity.MILD, hour=10)]
        daily = compute_daily_score(TODAY, events, DEFAULT_DECAY_TABLE)
        assert [c.label for c in daily.contributors] == ["Zeta", "Alpha"]

    def test_ties_with_same_timestamp_are_alphabetical(self):
        events = [_event("beta", severity=Severity.MILD), _event("Alpha", severity=Severity.MILD)]
        daily = compute_daily_score(TODAY, events, DEFAULT_DECAY_TABLE)
        assert [c.label for c in daily.contributors] == ["Alpha", "beta"]

    def test_is_deterministic(self):
        events = [_event("A", 0), _event("B", 1, Severity.MILD), _event("C", 2, Severity.LOW)]
        first = compute_daily_score(TODAY, events, DEFAULT_DECAY_TABLE)
        second = compute_daily_score(TODAY, list(reversed(events)), DEFAULT_DECAY_TABLE)
        assert first == second


class TestClassifyZone:
    """Zones are inclusive at their minimums."""

    thresholds = GaugeThresholds(minimums={Zone.LOW: 2.0, Zone.MILD: 5.0, Zone.HIGH: 9.0})

    def test_boundary_is_inclusive(self):
        assert classify_zone(5.0, self.thresholds) == Zone.MILD
        assert classify_zone(4.999, self.thresholds) == Zone.LOW
        assert classify_zone(9.0, self.thresholds) == Zone.HIGH

    def test_below_low_is_none(self):
        assert classify_zone(1.0, self.thresholds) == Zone.NONE

    def test_zero_score_is_none_even_with_zero_minimum(self):
        assert classify_zone(0.0, GaugeThresholds(minimums={Zone.LOW: 0.0})) == Zone.NONE

    def test_missing_zone_is_never_entered(self):
        partial = GaugeThresholds(minimums={Zone.MILD: 5.0})
        assert classify_zone(3.0, partial) == Zone.NONE
        assert classify_zone(50.0, partial) == Zone.MILD

    def test_default_thresholds(self):
        assert classify_zone(10.0, DEFAULT_GAUGE_THRESHOLDS) == Zone.MILD
        assert classify_zone(15.0, DEFAULT_GAUGE_THRESHOLDS) == Zone.HIGH


class TestForecast:
    """forecast projects pure decay of what is already logged."""

    def test_single_high_event_decays_over_the_week(self):
        outlook = forecast(TODAY, [_event("Alcohol")], DEFAULT_DECAY_TABLE, DEFAULT_GAUGE_THRESHOLDS)
        assert len(outlook) == 7
        assert [d.day for d in outlook] == [TODAY + timedelta(days=i) for i in range(7)]
        assert [d.score for d in outlook] == [10.0, 5.0, 2.5, 1.0, 0.0, 0.0, 0.0]
        assert [d.zone for d in outlook] == [Zone.MILD, Zone.LOW, Zone.NONE, Zone.NONE, Zone.NONE, Zone.NONE, Zone.NONE]
        assert outlook[0].percent == 56
        assert outlook[0].top_triggers[0].label == "Alcohol"

    def test_single_high_trigger_scenario(self):
        decay = DecayTable(rows={Severity.HIGH: [10, 5, 2.5, 0, 0, 0, 0]})
        thresholds = GaugeThresholds(minimums={Zone.LOW: 3.0, Zone.MILD: 5.0, Zone.HIGH: 10.0})
        outlook = forecast(TODAY, [_event("Stress")], decay, thresholds, days=4)
        assert [d.score for d in outlook] == [10.0, 5.0, 2.5, 0.0]
        # 2.5 sits below the LOW minimum of 3, so day+2 is NONE rather than LOW
        assert [d.zone for d in outlook] == [Zone.HIGH, Zone.MILD, Zone.NONE, Zone.NONE]
        assert classify_zone(5.0, thresholds) == Zone.MILD
        assert classify_zone(4.999, thresholds) == Zone.LOW

    def test_never_scores_above_todays_events(self):
        events = [_event("Alcohol", 0), _event("Stress", 3, Severity.MILD)]
        outlook = forecast(TODAY, events, DEFAULT_DECAY_TABLE, DEFAULT_GAUGE_THRESHOLDS)
        scores = [d.score for d in outlook]
        assert scores == sorted(scores, reverse=True)

    def test_future_event_only_appears_on_its_day(self):
        outlook = forecast(TODAY, [_event("Travel", -2, Severity.MILD)], DEFAULT_DECAY_TABLE, DEFAULT_GAUGE_THRESHOLDS)
        assert outlook[0].score == 0.0
        assert outlook[1].score == 0.0
        assert outlook[2].score == 6.0

    def test_top_triggers_limited(self):
        events = [_event(f"T{i}", severity=Severity.LOW) for i in range(5)]
        outlook = forecast(TODAY, events, DEFAULT_DECAY_TABLE, DEFAULT_GAUGE_THRESHOLDS, days=1)
        assert len(outlook) == 1
        assert len(outlook[0].top_triggers) == 3


class TestGaugePercent:
    def test_percent_against_gauge_max(self):
        # gauge max = 15 * 1.2 = 18
        assert gauge_percent(9.0, DEFAULT_GAUGE_THRESHOLDS) == 50

    def test_percent_is_capped(self):
        assert gauge_percent(100.0, DEFAULT_GAUGE_THRESHOLDS) == 100

    def test_no_high_threshold_gives_zero(self):
        assert gauge_percent(10.0, GaugeThresholds(minimums={Zone.LOW: 1.0})) == 0


class TestDecayTable:
    def test_rows_are_normalized(self):
        table = DecayTable(rows={Severity.HIGH: [4, -1, 2], Severity.NONE: [9] * 7})
        assert table.row(Severity.HIGH) == [4.0, 0.0, 2.0, 0.0, 0.0, 0.0, 0.0]
        assert Severity.NONE not in table.rows
        assert not table.is_decaying()

    def test_weight_out_of_range_is_zero(self):
        assert DEFAULT_DECAY_TABLE.weight(Severity.HIGH, 7) == 0.0
        assert DEFAULT_DECAY_TABLE.weight(Severity.HIGH, -1) == 0.0
        assert DEFAULT_DECAY_TABLE.weight(Severity.NONE, 0) == 0.0


class TestResolveSeverities:
    def test_missing_severity_comes_from_settings(self):
        events = [
            Event(label="caffeine", timestamp=_ts(TODAY), severity=None),
            Event(label="Aura", timestamp=_ts(TODAY), severity=None, kind=EventKind.PRODROME),
            Event(label="Noise", timestamp=_ts(TODAY), severity=Severity.LOW),
        ]
        triggers = {"Caffeine": TriggerSetting(label="Caffeine", severity=Severity.MILD)}
        prodromes = {"Aura": TriggerSetting(label="Aura", severity=Severity.HIGH)}
        resolved = resolve_severities(events, triggers, prodromes)
        assert [e.severity for e in resolved] == [Severity.MILD, Severity.HIGH, Severity.LOW]

    def test_unknown_label_stays_unrated(self):
        events = [Event(label="Mystery", timestamp=_ts(TODAY))]
        assert resolve_severities(events, {}, {})[0].severity is None


class TestGaugePerformance:
    def test_counts_hits_and_misses(self):
        d = date(2026, 1, 1)
        zones = {
            d: Zone.MILD,
            d + timedelta(days=1): Zone.NONE,
            d + timedelta(days=2): Zone.NONE,
            d + timedelta(days=10): Zone.HIGH,
            d + timedelta(days=20): Zone.LOW,
        }
        perf = gauge_performance(zones, [d + timedelta(days=2), d + timedelta(days=30)])
        assert perf.true_positive == 1
        assert perf.false_negative == 1
        assert perf.false_positive == 1
        assert perf.true_negative == 1
        assert perf.sensitivity == 0.5
        assert perf.specificity == 0.5

    def test_empty_history(self):
        perf = gauge_performance({}, [])
        assert perf.sensitivity is None
        assert perf.specificity is None
