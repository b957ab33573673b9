"""
Tests for the monotonic guard: adjustments may raise a floor rating, never lower it.
"""
import itertools

import pytest

from schemas import Adjustment, FavoriteAdjustment, ProdromeSetting, Severity, TriggerSetting
from core.guard import apply_adjustments, apply_favorites
from core.severity import is_elevation, max_severity, rank


def _floor(**ratings):
    return {label: TriggerSetting(label=label, severity=sev) for label, sev in ratings.items()}


class TestApplyAdjustments:
    """Elevation-only merge of proposed severity changes."""

    def test_lowering_is_discarded(self):
        floor = _floor(Caffeine=Severity.MILD)
        merged, decisions = apply_adjustments(floor, [Adjustment(label="Caffeine", to_severity=Severity.LOW)])
        assert merged["Caffeine"].severity == Severity.MILD
        assert decisions[0]["approved"] is False
        assert decisions[0]["from"] == "MILD"

    def test_raising_is_applied(self):
        floor = _floor(Caffeine=Severity.MILD)
        merged, decisions = apply_adjustments(floor, [Adjustment(label="Caffeine", to_severity=Severity.HIGH)])
        assert merged["Caffeine"].severity == Severity.HIGH
        assert decisions[0]["approved"] is True
        assert decisions[0]["to"] == "HIGH"

    def test_equal_is_discarded(self):
        floor = _floor(Caffeine=Severity.MILD)
        merged, decisions = apply_adjustments(floor, [Adjustment(label="Caffeine", to_severity=Severity.MILD)])
        assert merged == floor
        assert not decisions[0]["approved"]

    def test_floor_is_not_mutated(self):
        floor = _floor(Caffeine=Severity.LOW)
        snapshot = dict(floor)
        apply_adjustments(floor, [Adjustment(label="Caffeine", to_severity=Severity.HIGH)])
        assert floor == snapshot
        assert floor["Caffeine"].severity == Severity.LOW

    def test_labels_match_case_insensitively(self):
        floor = _floor(Caffeine=Severity.LOW)
        merged, decisions = apply_adjustments(floor, [Adjustment(label="  caffeine", to_severity=Severity.MILD)])
        assert list(merged) == ["Caffeine"]
        assert merged["Caffeine"].severity == Severity.MILD
        assert decisions[0]["label"] == "Caffeine"

    def test_new_label_is_activated(self):
        merged, decisions = apply_adjustments(
            {}, [Adjustment(label="Pressure low", to_severity=Severity.LOW)],
            auto_labels=["pressure low"],
        )
        assert merged["Pressure low"].severity == Severity.LOW
        assert merged["Pressure low"].is_automatable is True
        assert decisions[0]["from"] == "NONE"

    def test_new_label_at_none_is_discarded(self):
        merged, decisions = apply_adjustments({}, [Adjustment(label="Noise", to_severity=Severity.NONE)])
        assert merged == {}
        assert decisions[0]["approved"] is False

    def test_new_prodrome_uses_given_setting_class(self):
        merged, _ = apply_adjustments(
            {}, [Adjustment(label="Yawning", to_severity=Severity.MILD)], setting_cls=ProdromeSetting,
        )
        assert isinstance(merged["Yawning"], ProdromeSetting)

    def test_reasoning_is_carried_into_decisions(self):
        _, decisions = apply_adjustments(
            {}, [Adjustment(label="Alcohol", to_severity=Severity.HIGH, reasoning="red wine every time")],
        )
        assert decisions[0]["reasoning"] == "red wine every time"

    @pytest.mark.parametrize(
        "existing,proposed",
        list(itertools.product(list(Severity), list(Severity))),
    )
    def test_never_lowers_for_any_rank_pair(self, existing, proposed):
        floor = _floor(Label=existing)
        merged, _ = apply_adjustments(floor, [Adjustment(label="Label", to_severity=proposed)])
        result = merged["Label"].severity
        assert rank(result) >= rank(existing)
        assert result == max_severity(existing, proposed)


class TestApplyFavorites:
    def test_flag_set_on_active_label(self):
        floor = _floor(Caffeine=Severity.MILD)
        merged, applied = apply_favorites(floor, [FavoriteAdjustment(label="caffeine", favorite=True)])
        assert merged["Caffeine"].favorite is True
        assert applied[0].label == "Caffeine"

    def test_unknown_and_noop_changes_ignored(self):
        floor = _floor(Caffeine=Severity.MILD)
        merged, applied = apply_favorites(
            floor,
            [FavoriteAdjustment(label="Nope", favorite=True), FavoriteAdjustment(label="Caffeine", favorite=False)],
        )
        assert merged == floor
        assert applied == []


class TestSeverityHelpers:
    def test_order_is_total(self):
        assert [rank(s) for s in (Severity.NONE, Severity.LOW, Severity.MILD, Severity.HIGH)] == [0, 1, 2, 3]

    def test_parse_is_case_insensitive(self):
        assert Severity.parse("mild") == Severity.MILD
        assert Severity.parse("bogus") == Severity.NONE
        assert Severity.coerce("bogus") is None

    def test_is_elevation(self):
        assert is_elevation(Severity.LOW, Severity.MILD)
        assert not is_elevation(Severity.MILD, Severity.MILD)
        assert not is_elevation("HIGH", "low")
