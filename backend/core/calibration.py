"""Two-stage calibration pipeline: clinical pass, classification, statistical pass, merge.

IDLE -> CALL1_RUNNING -> CALL1_DONE -> CALL2_RUNNING -> DONE | FAILED

Any failure (network, missing key, timeout, unparseable reply) ends in FAILED and
the caller receives build_fallback_config(mapping) instead of an error.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
from typing import Iterable, Optional

from schemas import (
    DECAY_DAYS,
    Adjustment,
    AiConfig,
    AvailableItems,
    CalibrationMode,
    CalibrationOutcome,
    CalibrationProposal,
    Call1Result,
    Call2Result,
    DataContext,
    DataWarning,
    DecayTable,
    EventKind,
    FavoriteAdjustment,
    GaugePerformance,
    GaugeThresholds,
    MappingResult,
    PipelineState,
    ProdromeSetting,
    ProdromeStats,
    ProfileUpdate,
    ProposalType,
    Severity,
    TriggerBuckets,
    TriggerSetting,
    Zone,
)
from integrations import gemini_client
from core.guard import apply_adjustments, apply_favorites

logger = logging.getLogger("migrainegauge.calibration")

CALL_TIMEOUT_S = float(os.getenv("CALIBRATION_CALL_TIMEOUT_S", "45"))

DEFAULT_GAUGE_THRESHOLDS = GaugeThresholds(minimums={Zone.LOW: 3.0, Zone.MILD: 8.0, Zone.HIGH: 15.0})
DEFAULT_DECAY_TABLE = DecayTable(rows={
    Severity.HIGH: [10.0, 5.0, 2.5, 1.0, 0.0, 0.0, 0.0],
    Severity.MILD: [6.0, 3.0, 1.5, 0.5, 0.0, 0.0, 0.0],
    Severity.LOW: [3.0, 1.5, 0.0, 0.0, 0.0, 0.0, 0.0],
})

_SCORED = (Severity.HIGH, Severity.MILD, Severity.LOW)
_ZONES = (Zone.LOW, Zone.MILD, Zone.HIGH)

_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.IDLE: {PipelineState.CALL1_RUNNING, PipelineState.FAILED},
    PipelineState.CALL1_RUNNING: {PipelineState.CALL1_DONE, PipelineState.FAILED},
    PipelineState.CALL1_DONE: {PipelineState.CALL2_RUNNING, PipelineState.DONE, PipelineState.FAILED},
    PipelineState.CALL2_RUNNING: {PipelineState.DONE, PipelineState.FAILED},
    PipelineState.DONE: set(),
    PipelineState.FAILED: set(),
}


class CalibrationError(Exception):
    pass


# ── Classification ──

def classify(merged_triggers: dict[str, TriggerSetting], auto_labels: Iterable[str]) -> TriggerBuckets:
    """Split active triggers into auto/manual x HIGH/MILD/LOW buckets.
    Membership is a case-insensitive test against auto_labels; NONE is left out."""
    auto = {label.strip().lower() for label in auto_labels}
    buckets: dict[str, list[str]] = {
        "auto_high": [], "auto_mild": [], "auto_low": [],
        "manual_high": [], "manual_mild": [], "manual_low": [],
    }
    for label in sorted(merged_triggers, key=str.lower):
        sev = merged_triggers[label].severity
        if sev == Severity.NONE:
            continue
        source = "auto" if label.strip().lower() in auto else "manual"
        buckets[f"{source}_{sev.value.lower()}"].append(label)
    return TriggerBuckets(**buckets)


def prodrome_stats(prodromes: dict[str, TriggerSetting]) -> ProdromeStats:
    stats: dict[str, list[str]] = {"high": [], "mild": [], "low": []}
    for label in sorted(prodromes, key=str.lower):
        sev = prodromes[label].severity
        if sev != Severity.NONE:
            stats[sev.value.lower()].append(label)
    return ProdromeStats(**stats)


# ── Response parsing ──

def _strip_fences(raw: str) -> str:
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else cleaned[3:]
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


def _load_json(raw: str) -> dict:
    try:
        data = json.loads(_strip_fences(raw or ""))
    except json.JSONDecodeError as e:
        raise CalibrationError(f"Unparseable advisory response: {e}; raw: {(raw or '')[:200]}") from e
    if not isinstance(data, dict):
        raise CalibrationError(f"Advisory response is {type(data).__name__}, expected an object")
    return data


def _as_list(value) -> list:
    return value if isinstance(value, list) else []


def _as_str(value) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_float(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _as_kind(value, default: EventKind) -> EventKind:
    return EventKind.PRODROME if _as_str(value).strip().lower() == "prodrome" else default


def _parse_adjustment(item, default_kind: EventKind) -> Optional[Adjustment]:
    if not isinstance(item, dict):
        return None
    label = _as_str(item.get("label")).strip()
    to = Severity.coerce(item.get("to", item.get("to_severity")))
    if not label or to is None:
        logger.info("Skipping malformed adjustment: %s", item)
        return None
    return Adjustment(
        label=label,
        kind=_as_kind(item.get("type", item.get("kind")), default_kind),
        from_severity=Severity.parse(item.get("from", item.get("from_severity"))),
        to_severity=to,
        reasoning=_as_str(item.get("reasoning")),
    )


def parse_call1(raw: str) -> Call1Result:
    """Lenient Call 1 parse. Missing fields become empty; only non-JSON fails."""
    data = _load_json(raw)

    adjustments: list[Adjustment] = []
    for key, kind in (
        ("adjustments", EventKind.TRIGGER),
        ("trigger_adjustments", EventKind.TRIGGER),
        ("prodrome_adjustments", EventKind.PRODROME),
    ):
        for item in _as_list(data.get(key)):
            adj = _parse_adjustment(item, kind)
            if adj:
                adjustments.append(adj)

    favorites = [
        FavoriteAdjustment(
            label=_as_str(item.get("label")).strip(),
            kind=_as_kind(item.get("type"), EventKind.TRIGGER),
            favorite=bool(item.get("favorite", True)),
            reasoning=_as_str(item.get("reasoning")),
        )
        for item in _as_list(data.get("favorite_adjustments"))
        if isinstance(item, dict) and _as_str(item.get("label")).strip()
    ]

    profile_updates = [
        ProfileUpdate(
            field=_as_str(item.get("field")).strip(),
            from_value=_as_str(item.get("from")) or None,
            to_value=_as_str(item.get("to")) or None,
            reasoning=_as_str(item.get("reasoning")),
        )
        for item in _as_list(data.get("profile_updates"))
        if isinstance(item, dict) and _as_str(item.get("field")).strip()
    ]

    warnings: list[DataWarning] = []
    for item in _as_list(data.get("data_warnings")):
        if isinstance(item, str) and item.strip():
            warnings.append(DataWarning(message=item.strip()))
        elif isinstance(item, dict):
            warnings.append(DataWarning(
                type=_as_str(item.get("type")),
                message=_as_str(item.get("message")),
                metric=_as_str(item.get("metric")) or None,
            ))

    return Call1Result(
        clinical_assessment=_as_str(data.get("clinical_assessment")),
        summary=_as_str(data.get("summary")),
        adjustments=adjustments,
        favorite_adjustments=favorites,
        profile_updates=profile_updates,
        data_warnings=warnings,
    )


def parse_call2(raw: str) -> Call2Result:
    """Lenient Call 2 parse. Missing thresholds/rows stay None; missing day cells are 0."""
    data = _load_json(raw)

    thresholds = None
    threshold_reasoning = ""
    gt = data.get("gauge_thresholds")
    if isinstance(gt, dict):
        minimums: dict[Zone, float] = {}
        for zone in _ZONES:
            value = _as_float(gt.get(zone.value.lower(), gt.get(zone.value)))
            if value is not None and value >= 0:
                minimums[zone] = value
        if minimums:
            thresholds = GaugeThresholds(minimums=minimums)
        threshold_reasoning = _as_str(gt.get("reasoning"))

    rows: dict[Severity, list[float]] = {}
    reasoning: dict[Severity, str] = {}
    for item in _as_list(data.get("decay_weights")):
        if not isinstance(item, dict):
            continue
        sev = Severity.coerce(item.get("severity"))
        if sev is None or sev == Severity.NONE:
            continue
        if isinstance(item.get("weights"), list):
            cells = [_as_float(x) for x in item["weights"][:DECAY_DAYS]]
        else:
            cells = [_as_float(item.get(f"day{i}")) for i in range(DECAY_DAYS)]
        if all(c is None for c in cells):
            continue
        rows[sev] = [c if c is not None else 0.0 for c in cells]
        reasoning[sev] = _as_str(item.get("reasoning"))

    return Call2Result(
        thresholds=thresholds,
        threshold_reasoning=threshold_reasoning,
        decay_table=DecayTable(rows=rows) if rows else None,
        decay_reasoning=reasoning,
        calibration_notes=_as_str(data.get("calibration_notes")),
        summary=_as_str(data.get("summary")),
    )


# ── Prompt messages ──

def _ratings_block(settings: dict[str, TriggerSetting]) -> str:
    lines = [
        f"- {s.label}: {s.severity.value}" + (" (favorite)" if s.favorite else "")
        for s in sorted(settings.values(), key=lambda s: (-s.severity.rank, s.label.lower()))
        if s.severity != Severity.NONE
    ]
    return "\n".join(lines) or "- (none)"


def build_call1_message(
    mapping: MappingResult,
    available: AvailableItems,
    data_context: DataContext,
) -> str:
    profile = mapping.profile_context.model_dump(exclude_none=True)
    trigger_pool = ", ".join(
        f"{i.label}{' [auto]' if i.is_automatable else ''}" for i in available.triggers
    ) or "(defaults)"
    prodrome_pool = ", ".join(
        f"{i.label}{' [auto]' if i.is_automatable else ''}" for i in available.prodromes
    ) or "(defaults)"
    enabled = sorted(k for k, v in data_context.enabled_metrics.items() if v)

    return f"""Patient profile:
{json.dumps(profile, indent=2)}

LOCKED trigger ratings (floor, never lower):
{_ratings_block(mapping.triggers)}

LOCKED prodrome ratings (floor, never lower):
{_ratings_block(mapping.prodromes)}

Available trigger labels: {trigger_pool}
Available prodrome labels: {prodrome_pool}

Connected data:
- wearable connected: {data_context.wearable_connected}
- enabled metrics: {", ".join(enabled) or "none"}
- days of data: {data_context.days_of_data}
- migraines logged: {data_context.migraine_count}"""


def build_call2_message(
    buckets: TriggerBuckets,
    prodromes: ProdromeStats,
    call1: Call1Result,
    thresholds: GaugeThresholds,
    decay_table: DecayTable,
    performance: Optional[GaugePerformance] = None,
) -> str:
    bucket_lines = "\n".join(
        f"- {name}: {count} ({', '.join(getattr(buckets, name)) or '-'})"
        for name, count in buckets.counts().items()
    )
    decay_lines = "\n".join(
        f"- {sev.value}: {decay_table.row(sev)}" for sev in _SCORED
    )
    current = {z.value: thresholds.get(z) for z in _ZONES}
    perf = json.dumps(performance.model_dump()) if performance else "not available"

    return f"""Active trigger buckets:
{bucket_lines}

Prodrome counts: {json.dumps(prodromes.counts())}

Current gauge thresholds: {json.dumps(current)}
Current decay table:
{decay_lines}

Gauge performance (last 90 days): {perf}

Clinician assessment (context only):
{call1.clinical_assessment or "(none)"}"""


# ── Merge ──

def build_fallback_config(mapping: MappingResult) -> AiConfig:
    """Deterministic floor plus the built-in gauge defaults. Nothing to review."""
    return AiConfig(
        triggers=dict(mapping.triggers),
        prodromes=dict(mapping.prodromes),
        gauge_thresholds=DEFAULT_GAUGE_THRESHOLDS,
        decay_table=DEFAULT_DECAY_TABLE,
        summary="Calibrated from your answers with the standard gauge settings.",
        used_fallback=True,
    )


def elevate(
    mapping: MappingResult,
    call1: Call1Result,
    available: AvailableItems,
) -> tuple[dict[str, TriggerSetting], dict[str, TriggerSetting], list[FavoriteAdjustment], list[dict]]:
    trigger_adj = [a for a in call1.adjustments if a.kind == EventKind.TRIGGER]
    prodrome_adj = [a for a in call1.adjustments if a.kind == EventKind.PRODROME]

    triggers, trigger_decisions = apply_adjustments(
        mapping.triggers, trigger_adj, TriggerSetting, available.auto_trigger_labels(),
    )
    prodromes, prodrome_decisions = apply_adjustments(
        mapping.prodromes, prodrome_adj, ProdromeSetting, available.auto_prodrome_labels(),
    )
    for d in trigger_decisions:
        d["kind"] = EventKind.TRIGGER.value
    for d in prodrome_decisions:
        d["kind"] = EventKind.PRODROME.value

    triggers, fav_t = apply_favorites(
        triggers, [f for f in call1.favorite_adjustments if f.kind == EventKind.TRIGGER],
    )
    prodromes, fav_p = apply_favorites(
        prodromes, [f for f in call1.favorite_adjustments if f.kind == EventKind.PRODROME],
    )
    return triggers, prodromes, fav_t + fav_p, trigger_decisions + prodrome_decisions


def resolve_thresholds(call2: Call2Result, base: GaugeThresholds) -> GaugeThresholds:
    if call2.thresholds is None:
        return base
    candidate = GaugeThresholds(minimums={**base.minimums, **call2.thresholds.minimums})
    if not candidate.is_ordered():
        logger.warning("Rejected out-of-order gauge thresholds %s; keeping %s",
                       call2.thresholds.minimums, base.minimums)
        return base
    return candidate


def resolve_decay(call2: Call2Result, base: DecayTable) -> DecayTable:
    if call2.decay_table is None:
        return base
    rows = {sev: base.row(sev) for sev in _SCORED}
    rows.update(call2.decay_table.rows)
    table = DecayTable(rows=rows)
    if not table.is_decaying():
        logger.warning("Proposed decay table has increasing rows: %s", table.rows)
    return table


def build_proposals(
    decisions: list[dict],
    favorites: list[FavoriteAdjustment],
    call1: Call1Result,
    call2: Call2Result,
    base_thresholds: GaugeThresholds,
    thresholds: GaugeThresholds,
    base_decay: DecayTable,
    decay_table: DecayTable,
) -> list[CalibrationProposal]:
    """One reviewable proposal per individual change, all accepted by default."""
    proposals: list[CalibrationProposal] = []

    for d in decisions:
        if not d["approved"]:
            continue
        proposals.append(CalibrationProposal(
            type=ProposalType.PRODROME if d.get("kind") == EventKind.PRODROME.value else ProposalType.TRIGGER,
            label=d["label"],
            from_value=d["from"],
            to_value=d["to"],
            reasoning=d.get("reasoning", ""),
        ))

    for fav in favorites:
        proposals.append(CalibrationProposal(
            type=ProposalType.FAVORITE,
            label=fav.label,
            from_value="false" if fav.favorite else "true",
            to_value="true" if fav.favorite else "false",
            reasoning=fav.reasoning,
        ))

    for zone in _ZONES:
        old, new = base_thresholds.get(zone), thresholds.get(zone)
        if new is not None and new != old:
            proposals.append(CalibrationProposal(
                type=ProposalType.GAUGE_THRESHOLD,
                label=zone.value,
                from_value=old,
                to_value=new,
                reasoning=call2.threshold_reasoning,
            ))

    for sev in _SCORED:
        old_row, new_row = base_decay.row(sev), decay_table.row(sev)
        for day, (old, new) in enumerate(zip(old_row, new_row)):
            if abs(old - new) > 1e-9:
                proposals.append(CalibrationProposal(
                    type=ProposalType.GAUGE_DECAY,
                    label=f"{sev.value} day {day}",
                    from_value=old,
                    to_value=new,
                    reasoning=call2.decay_reasoning.get(sev, ""),
                ))

    if call1.clinical_assessment:
        proposals.append(CalibrationProposal(
            type=ProposalType.CLINICAL_ASSESSMENT,
            label="clinical_assessment",
            to_value=call1.clinical_assessment,
            reasoning=call1.summary,
        ))

    for warning in call1.data_warnings:
        proposals.append(CalibrationProposal(
            type=ProposalType.DATA_WARNING,
            label=warning.metric or warning.type or "data",
            to_value=warning.message,
        ))

    for update in call1.profile_updates:
        proposals.append(CalibrationProposal(
            type=ProposalType.PROFILE,
            label=update.field,
            from_value=update.from_value,
            to_value=update.to_value,
            reasoning=update.reasoning,
        ))

    return proposals


# ── Pipeline ──

class CalibrationPipeline:
    """One calibration run. Not reusable: create a new pipeline per run."""

    def __init__(
        self,
        mapping: MappingResult,
        available: AvailableItems | None = None,
        data_context: DataContext | None = None,
        advisor=gemini_client,
        mode: CalibrationMode = CalibrationMode.FULL,
        base_thresholds: GaugeThresholds | None = None,
        base_decay: DecayTable | None = None,
        performance: GaugePerformance | None = None,
        cancel: asyncio.Event | None = None,
        timeout_s: float = CALL_TIMEOUT_S,
    ):
        self.mapping = mapping
        self.available = available or AvailableItems()
        self.data_context = data_context or DataContext()
        self.advisor = advisor
        self.mode = mode
        self.base_thresholds = base_thresholds or DEFAULT_GAUGE_THRESHOLDS
        self.base_decay = base_decay or DEFAULT_DECAY_TABLE
        self.performance = performance
        self.cancel = cancel
        self.timeout_s = timeout_s
        self.state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]

    def _transition(self, new: PipelineState):
        if new not in _TRANSITIONS[self.state]:
            raise CalibrationError(f"Illegal transition {self.state.value} -> {new.value}")
        logger.info("Calibration %s -> %s", self.state.value, new.value)
        self.state = new
        self.history.append(new)

    def _check_cancelled(self):
        if self.cancel is not None and self.cancel.is_set():
            raise asyncio.CancelledError("calibration cancelled")

    async def _ask(self, call, message: str) -> str:
        """Run one advisory call under the timeout. With a cancel token, the call is
        raced against it and abandoned as soon as the token is set."""
        if self.cancel is None:
            return await asyncio.wait_for(call(message), timeout=self.timeout_s)

        task = asyncio.ensure_future(asyncio.wait_for(call(message), timeout=self.timeout_s))
        waiter = asyncio.ensure_future(self.cancel.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (task, waiter):
                if not fut.done():
                    fut.cancel()
        if task in done:
            return task.result()
        raise asyncio.CancelledError("calibration cancelled")

    def _auto_labels(self) -> set[str]:
        labels = self.available.auto_trigger_labels()
        labels.update(s.label for s in self.mapping.triggers.values() if s.is_automatable)
        return labels

    async def run(self) -> CalibrationOutcome:
        try:
            return await self._run()
        except asyncio.CancelledError:
            logger.info("Calibration cancelled in state %s", self.state.value)
            raise
        except Exception as e:
            logger.warning("Calibration failed in %s, using deterministic fallback: %s", self.state.value, e)
            if self.state != PipelineState.FAILED:
                self.state = PipelineState.FAILED
                self.history.append(PipelineState.FAILED)
            return CalibrationOutcome(
                config=build_fallback_config(self.mapping),
                state=PipelineState.FAILED,
                mode=self.mode,
                history=list(self.history),
                error=str(e) or type(e).__name__,
            )

    async def _run(self) -> CalibrationOutcome:
        self._check_cancelled()
        self._transition(PipelineState.CALL1_RUNNING)
        raw1 = await self._ask(
            self.advisor.clinical_pass,
            build_call1_message(self.mapping, self.available, self.data_context),
        )
        call1 = parse_call1(raw1)
        self._transition(PipelineState.CALL1_DONE)

        triggers, prodromes, favorites, decisions = elevate(self.mapping, call1, self.available)

        call2 = Call2Result()
        if self.mode == CalibrationMode.FULL:
            self._check_cancelled()
            buckets = classify(triggers, self._auto_labels())
            logger.info("Trigger buckets: %s", buckets.counts())
            self._transition(PipelineState.CALL2_RUNNING)
            raw2 = await self._ask(
                self.advisor.statistical_pass,
                build_call2_message(
                    buckets, prodrome_stats(prodromes), call1,
                    self.base_thresholds, self.base_decay, self.performance,
                ),
            )
            call2 = parse_call2(raw2)

        self._check_cancelled()
        thresholds = resolve_thresholds(call2, self.base_thresholds)
        decay_table = resolve_decay(call2, self.base_decay)
        proposals = build_proposals(
            decisions, favorites, call1, call2,
            self.base_thresholds, thresholds, self.base_decay, decay_table,
        )

        config = AiConfig(
            triggers=triggers,
            prodromes=prodromes,
            gauge_thresholds=thresholds,
            decay_table=decay_table,
            clinical_assessment=call1.clinical_assessment,
            calibration_notes=call2.calibration_notes,
            summary=call2.summary or call1.summary,
            data_warnings=call1.data_warnings,
            proposals=proposals,
        )
        self._transition(PipelineState.DONE)
        return CalibrationOutcome(
            config=config,
            state=PipelineState.DONE,
            mode=self.mode,
            history=list(self.history),
            decisions=decisions,
        )


async def run_calibration(mapping: MappingResult, **kwargs) -> CalibrationOutcome:
    return await CalibrationPipeline(mapping, **kwargs).run()
