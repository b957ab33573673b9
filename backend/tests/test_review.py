"""
Tests for the proposal review state machine and the batch executor.
"""
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from schemas import (
    AiConfig,
    CalibrationMode,
    CalibrationOutcome,
    CalibrationProposal,
    EventKind,
    PipelineState,
    ProposalType,
    ReviewState,
    ReviewStatus,
    Severity,
    TriggerSetting,
    Zone,
)
from core.calibration import DEFAULT_DECAY_TABLE, DEFAULT_GAUGE_THRESHOLDS, run_calibration
from core.executor import ApplyError, apply_batch
from core.review import (
    FULL_COOLDOWN_DAYS,
    accept_all,
    apply_decisions,
    cooldown_remaining,
    load_failed,
    load_proposals,
    reject_all,
    toggle_proposal,
)
from store import repository
from store.db import async_session, init_db
from store.models import RecalibrationHistory, RecalibrationProposal


def _proposals():
    return [
        CalibrationProposal(id="p1", type=ProposalType.TRIGGER, label="Caffeine", from_value="MILD", to_value="HIGH"),
        CalibrationProposal(id="p2", type=ProposalType.GAUGE_THRESHOLD, label="LOW", from_value=3.0, to_value=4.0),
        CalibrationProposal(id="p3", type=ProposalType.DATA_WARNING, label="sleep", to_value="No tracker"),
    ]


class TestReviewTransforms:
    """Selections only change while the review is READY."""

    def test_load_is_ready_with_everything_accepted(self):
        state = load_proposals("b1", _proposals(), clinical_assessment="ok")
        assert state.status == ReviewStatus.READY
        assert [p.id for p in state.accepted] == ["p1", "p2", "p3"]
        assert state.clinical_assessment == "ok"

    def test_load_failed(self):
        state = load_failed("boom", batch_id="b1")
        assert state.status == ReviewStatus.ERROR
        assert state.error == "boom"

    def test_toggle_flips_one(self):
        state = load_proposals("b1", _proposals())
        toggled = toggle_proposal(state, "p2")
        assert [p.accepted for p in toggled.proposals] == [True, False, True]
        assert [p.accepted for p in toggle_proposal(toggled, "p2").proposals] == [True, True, True]
        # original untouched
        assert all(p.accepted for p in state.proposals)

    def test_toggle_unknown_id_is_noop(self):
        state = load_proposals("b1", _proposals())
        assert toggle_proposal(state, "nope") is state

    def test_accept_and_reject_all(self):
        state = reject_all(load_proposals("b1", _proposals()))
        assert state.accepted == []
        assert len(accept_all(state).accepted) == 3

    @pytest.mark.parametrize("status", [ReviewStatus.LOADING, ReviewStatus.APPLYING, ReviewStatus.APPLIED, ReviewStatus.ERROR])
    def test_selection_frozen_outside_ready(self, status):
        state = ReviewState(status=status, batch_id="b1", proposals=_proposals())
        assert reject_all(state) == state
        assert toggle_proposal(state, "p1") == state


class TestApplyDecisions:
    @pytest.mark.asyncio
    async def test_success_passes_only_accepted(self):
        writer = AsyncMock(return_value=True)
        transitions = []
        state = toggle_proposal(load_proposals("b1", _proposals()), "p3")

        result = await apply_decisions(state, writer, on_transition=transitions.append)

        assert result.status == ReviewStatus.APPLIED
        batch_id, accepted = writer.await_args.args
        assert batch_id == "b1"
        assert [p.id for p in accepted] == ["p1", "p2"]
        assert [t.status for t in transitions] == [ReviewStatus.APPLYING]

    @pytest.mark.asyncio
    async def test_failure_returns_to_ready_with_selections(self):
        writer = AsyncMock(side_effect=RuntimeError("disk full"))
        state = toggle_proposal(load_proposals("b1", _proposals()), "p1")

        result = await apply_decisions(state, writer)

        assert result.status == ReviewStatus.READY
        assert result.error == "disk full"
        assert [p.accepted for p in result.proposals] == [False, True, True]

    @pytest.mark.asyncio
    async def test_not_ready_does_nothing(self):
        writer = AsyncMock()
        state = ReviewState(status=ReviewStatus.APPLIED, batch_id="b1", proposals=_proposals())
        assert await apply_decisions(state, writer) is state
        writer.assert_not_awaited()


class TestCooldown:
    NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def test_never_run(self):
        assert cooldown_remaining(None, now=self.NOW) == timedelta(0)

    def test_full_cooldown(self):
        last = self.NOW - timedelta(days=10)
        assert cooldown_remaining(last, now=self.NOW) == timedelta(days=FULL_COOLDOWN_DAYS - 10)

    def test_profile_only_is_short(self):
        last = self.NOW - timedelta(hours=30)
        assert cooldown_remaining(last, CalibrationMode.PROFILE_ONLY, now=self.NOW) == timedelta(0)

    def test_naive_timestamps_are_utc(self):
        last = (self.NOW - timedelta(hours=12)).replace(tzinfo=None)
        remaining = cooldown_remaining(last, CalibrationMode.PROFILE_ONLY, now=self.NOW)
        assert remaining == timedelta(hours=12)


class TestApplyBatch:
    """Executor against a real sqlite session."""

    @pytest.mark.asyncio
    async def test_apply_once_then_noop(self, floor_mapping):
        await init_db()
        user_id = "user-apply-batch"
        advisor = SimpleNamespace(
            clinical_pass=AsyncMock(return_value=json.dumps({
                "clinical_assessment": "Caffeine matters.",
                "adjustments": [{"label": "Caffeine", "to": "HIGH"}],
            })),
            statistical_pass=AsyncMock(return_value=json.dumps({
                "gauge_thresholds": {"low": 4, "mild": 9, "high": 16},
                "decay_weights": [{"severity": "HIGH", "weights": [12, 6, 2.5, 1, 0, 0, 0]}],
            })),
        )
        outcome = await run_calibration(floor_mapping, advisor=advisor)

        async with async_session() as db:
            await repository.get_or_create_profile(db, user_id)
            await repository.save_settings(db, user_id, EventKind.TRIGGER, floor_mapping.triggers)
            batch = await repository.save_batch(db, user_id, outcome)
            await db.commit()
            batch_id = batch.id

        async with async_session() as db:
            stored = await repository.load_batch_proposals(db, batch_id)
        assert [p.id for p in stored] == [p.id for p in outcome.config.proposals]

        low = next(p for p in stored if p.type == ProposalType.GAUGE_THRESHOLD and p.label == "LOW")
        state = toggle_proposal(load_proposals(batch_id, stored), low.id)
        applied = await apply_decisions(state, apply_batch)
        assert applied.status == ReviewStatus.APPLIED

        async with async_session() as db:
            triggers, _ = await repository.load_settings(db, user_id)
            assert triggers["Caffeine"].severity == Severity.HIGH
            thresholds = await repository.load_thresholds(db, user_id, DEFAULT_GAUGE_THRESHOLDS)
            assert thresholds.get(Zone.LOW) == 3.0
            assert thresholds.get(Zone.MILD) == 9.0
            decay = await repository.load_decay(db, user_id, DEFAULT_DECAY_TABLE)
            assert decay.row(Severity.HIGH) == [12.0, 6.0, 2.5, 1.0, 0.0, 0.0, 0.0]
            profile = await repository.get_profile(db, user_id)
            assert profile.clinical_assessment == "Caffeine matters."
            rows = (await db.execute(
                select(RecalibrationProposal).where(RecalibrationProposal.batch_id == batch_id)
            )).scalars().all()
            assert {r.status for r in rows if r.id == low.id} == {"rejected"}
            history = (await db.execute(
                select(RecalibrationHistory).where(RecalibrationHistory.batch_id == batch_id)
            )).scalars().all()
            assert len(history) == 1
            assert history[0].rejected_count == 1

        assert await apply_batch(batch_id, applied.accepted) is False

    @pytest.mark.asyncio
    async def test_unknown_batch(self):
        await init_db()
        with pytest.raises(ApplyError):
            await apply_batch("missing", [])


async def _stored_batch(user_id, proposals, triggers=None):
    """Persist a profile with the default gauge plus one batch holding proposals."""
    await init_db()
    outcome = CalibrationOutcome(config=AiConfig(proposals=proposals), state=PipelineState.DONE)
    async with async_session() as db:
        await repository.get_or_create_profile(db, user_id)
        if triggers:
            await repository.save_settings(db, user_id, EventKind.TRIGGER, triggers)
        await repository.save_gauge(db, user_id, DEFAULT_GAUGE_THRESHOLDS, DEFAULT_DECAY_TABLE)
        batch = await repository.save_batch(db, user_id, outcome)
        await db.commit()
        return batch.id


async def _caffeine(user_id):
    async with async_session() as db:
        triggers, _ = await repository.load_settings(db, user_id)
    return triggers["Caffeine"].severity


def _trigger(to_value, from_value="LOW"):
    return CalibrationProposal(type=ProposalType.TRIGGER, label="Caffeine", from_value=from_value, to_value=to_value)


class TestApplyBatchIntegrity:
    """A batch is written whole or not at all, and never undoes what calibration protects."""

    @pytest.mark.asyncio
    async def test_partial_threshold_accept_that_breaks_order_is_refused(self):
        user_id = "user-threshold-order"
        proposals = [
            CalibrationProposal(type=ProposalType.GAUGE_THRESHOLD, label=zone, from_value=old, to_value=new)
            for zone, old, new in (("LOW", 3.0, 9.0), ("MILD", 8.0, 12.0), ("HIGH", 15.0, 20.0))
        ]
        batch_id = await _stored_batch(user_id, proposals)
        state = load_proposals(batch_id, proposals)
        state = toggle_proposal(toggle_proposal(state, proposals[1].id), proposals[2].id)

        result = await apply_decisions(state, apply_batch)

        assert result.status == ReviewStatus.READY
        assert "out of order" in result.error
        assert [p.accepted for p in result.proposals] == [True, False, False]
        async with async_session() as db:
            thresholds = await repository.load_thresholds(db, user_id)
            assert thresholds == DEFAULT_GAUGE_THRESHOLDS
            assert (await repository.get_batch(db, batch_id)).applied is False

        applied = await apply_decisions(accept_all(result), apply_batch)
        assert applied.status == ReviewStatus.APPLIED
        async with async_session() as db:
            thresholds = await repository.load_thresholds(db, user_id)
        assert thresholds.minimums == {Zone.LOW: 9.0, Zone.MILD: 12.0, Zone.HIGH: 20.0}

    @pytest.mark.asyncio
    async def test_older_batch_never_lowers_a_rating(self):
        user_id = "user-batch-order"
        floor = {"Caffeine": TriggerSetting(label="Caffeine", severity=Severity.LOW)}
        older = await _stored_batch(user_id, [_trigger("MILD")], floor)
        newer = await _stored_batch(user_id, [_trigger("HIGH")])

        async with async_session() as db:
            newer_proposals = await repository.load_batch_proposals(db, newer)
            older_proposals = await repository.load_batch_proposals(db, older)
        assert (await apply_decisions(load_proposals(newer, newer_proposals), apply_batch)).status == ReviewStatus.APPLIED
        assert (await apply_decisions(load_proposals(older, older_proposals), apply_batch)).status == ReviewStatus.APPLIED

        assert await _caffeine(user_id) == Severity.HIGH
        async with async_session() as db:
            history = (await db.execute(
                select(RecalibrationHistory).where(RecalibrationHistory.batch_id == older)
            )).scalar_one()
        assert "kept at HIGH" in history.changes[0]["result"]

    @pytest.mark.asyncio
    async def test_failure_midway_rolls_back_everything(self):
        user_id = "user-rollback"
        floor = {"Caffeine": TriggerSetting(label="Caffeine", severity=Severity.LOW)}
        proposals = [
            _trigger("HIGH"),
            CalibrationProposal(type=ProposalType.GAUGE_DECAY, label="bogus", from_value=1.0, to_value=2.0),
        ]
        batch_id = await _stored_batch(user_id, proposals, floor)
        state = load_proposals(batch_id, proposals)

        result = await apply_decisions(state, apply_batch)

        assert result.status == ReviewStatus.READY
        assert "bogus" in result.error
        assert [p.id for p in result.accepted] == [p.id for p in proposals]
        assert await _caffeine(user_id) == Severity.LOW
        async with async_session() as db:
            assert (await repository.get_batch(db, batch_id)).applied is False
            history = (await db.execute(
                select(RecalibrationHistory).where(RecalibrationHistory.batch_id == batch_id)
            )).scalars().all()
        assert history == []

    @pytest.mark.asyncio
    async def test_decay_day_outside_the_window_is_rejected(self):
        user_id = "user-decay-day"
        bad = CalibrationProposal(type=ProposalType.GAUGE_DECAY, label="HIGH day 9", from_value=0.0, to_value=4.0)
        batch_id = await _stored_batch(user_id, [bad])

        result = await apply_decisions(load_proposals(batch_id, [bad]), apply_batch)

        assert result.status == ReviewStatus.READY
        assert "HIGH day 9" in result.error
        async with async_session() as db:
            decay = await repository.load_decay(db, user_id)
        assert decay.row(Severity.HIGH) == DEFAULT_DECAY_TABLE.row(Severity.HIGH)
