from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

DECAY_DAYS = 7


# ── Enums ──

class Severity(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MILD = "MILD"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    @classmethod
    def coerce(cls, value) -> Optional["Severity"]:
        """Case-insensitive lookup. Returns None for values that are not a severity."""
        if isinstance(value, Severity):
            return value
        if value is None:
            return None
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None

    @classmethod
    def parse(cls, value) -> "Severity":
        return cls.coerce(value) or cls.NONE


class Zone(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MILD = "MILD"
    HIGH = "HIGH"


class Certainty(str, Enum):
    EVERY_TIME = "EVERY_TIME"
    OFTEN = "OFTEN"
    SOMETIMES = "SOMETIMES"
    RARELY = "RARELY"
    NO = "NO"


class EventKind(str, Enum):
    TRIGGER = "trigger"
    PRODROME = "prodrome"


class ProposalType(str, Enum):
    TRIGGER = "trigger"
    PRODROME = "prodrome"
    FAVORITE = "favorite"
    GAUGE_THRESHOLD = "gauge_threshold"
    GAUGE_DECAY = "gauge_decay"
    CLINICAL_ASSESSMENT = "clinical_assessment"
    DATA_WARNING = "data_warning"
    PROFILE = "profile"


class CalibrationMode(str, Enum):
    FULL = "full"
    PROFILE_ONLY = "profile_only"


class PipelineState(str, Enum):
    IDLE = "IDLE"
    CALL1_RUNNING = "CALL1_RUNNING"
    CALL1_DONE = "CALL1_DONE"
    CALL2_RUNNING = "CALL2_RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


class ReviewStatus(str, Enum):
    LOADING = "LOADING"
    READY = "READY"
    APPLYING = "APPLYING"
    APPLIED = "APPLIED"
    ERROR = "ERROR"


# ── Settings ──

class TriggerSetting(BaseModel):
    label: str
    severity: Severity = Severity.NONE
    favorite: bool = False
    is_automatable: bool = False
    is_automated: bool = False
    direction: Optional[str] = None
    default_threshold: Optional[float] = None
    user_threshold: Optional[float] = None
    unit: Optional[str] = None
    exposure_level: Optional[int] = None

    class Config:
        frozen = True
        from_attributes = True

    @property
    def threshold(self) -> Optional[float]:
        return self.user_threshold if self.user_threshold is not None else self.default_threshold


class ProdromeSetting(TriggerSetting):
    pass


# ── Events ──

class Event(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    label: str
    timestamp: datetime
    severity: Optional[Severity] = None
    kind: EventKind = EventKind.TRIGGER
    linked_migraine_id: Optional[str] = None
    source: str = "manual"
    active: bool = True

    class Config:
        frozen = True
        from_attributes = True

    @property
    def day(self) -> date:
        ts = self.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc).date()


# ── Gauge configuration ──

class DecayTable(BaseModel):
    rows: dict[Severity, list[float]] = Field(default_factory=dict)

    class Config:
        frozen = True

    @field_validator("rows")
    @classmethod
    def _normalize_rows(cls, v: dict[Severity, list[float]]) -> dict[Severity, list[float]]:
        normalized: dict[Severity, list[float]] = {}
        for sev, row in v.items():
            if sev == Severity.NONE:
                continue
            cells = [max(0.0, float(x)) for x in row[:DECAY_DAYS]]
            cells += [0.0] * (DECAY_DAYS - len(cells))
            normalized[sev] = cells
        return normalized

    def weight(self, severity: Severity, age_days: int) -> float:
        row = self.rows.get(severity)
        if row is None or age_days < 0 or age_days >= len(row):
            return 0.0
        return row[age_days]

    def row(self, severity: Severity) -> list[float]:
        return list(self.rows.get(severity, [0.0] * DECAY_DAYS))

    def is_decaying(self) -> bool:
        return all(
            all(a >= b for a, b in zip(row, row[1:]))
            for row in self.rows.values()
        )


class GaugeThresholds(BaseModel):
    minimums: dict[Zone, float] = Field(default_factory=dict)

    class Config:
        frozen = True

    def get(self, zone: Zone) -> Optional[float]:
        return self.minimums.get(zone)

    def is_ordered(self) -> bool:
        present = [self.minimums[z] for z in Zone if z in self.minimums]
        return all(a < b for a, b in zip(present, present[1:]))

    def gauge_max(self) -> float:
        high = self.minimums.get(Zone.HIGH)
        return high * 1.2 if high else 0.0


# ── Scores ──

class Contributor(BaseModel):
    label: str
    points: float = 0.0
    severity: Severity = Severity.NONE
    days_active: int = 0


class DailyScore(BaseModel):
    day: date
    score: float = 0.0
    contributors: list[Contributor] = Field(default_factory=list)


class DayRisk(BaseModel):
    day: date
    score: float = 0.0
    zone: Zone = Zone.NONE
    percent: int = 0
    top_triggers: list[Contributor] = Field(default_factory=list)


class GaugePerformance(BaseModel):
    true_positive: int = 0
    false_positive: int = 0
    false_negative: int = 0
    true_negative: int = 0
    sensitivity: Optional[float] = None
    specificity: Optional[float] = None


# ── Questionnaire ──

class QuestionnaireAnswers(BaseModel):
    # demographics & migraine profile
    gender: Optional[str] = None
    age_range: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    experience: Optional[str] = None
    trajectory: Optional[str] = None
    warning_signs_before: Optional[str] = None
    trigger_delay: Optional[str] = None
    daily_routine: Optional[str] = None
    seasonal_pattern: Optional[str] = None
    # sleep
    sleep_hours: Optional[str] = None
    sleep_quality: Optional[str] = None
    poor_sleep_quality_triggers: Certainty = Certainty.NO
    too_little_sleep_triggers: Certainty = Certainty.NO
    oversleep_triggers: Certainty = Certainty.NO
    sleep_issues: list[str] = Field(default_factory=list)
    # stress & screen
    stress_level: Optional[str] = None
    emotional_patterns: dict[str, Certainty] = Field(default_factory=dict)
    screen_time_daily: Optional[str] = None
    screen_time_triggers: Certainty = Certainty.NO
    late_screen_triggers: Certainty = Certainty.NO
    # diet
    caffeine_intake: Optional[str] = None
    caffeine_direction: Optional[str] = None
    caffeine_certainty: Certainty = Certainty.NO
    alcohol_triggers: Certainty = Certainty.NO
    specific_drinks: list[str] = Field(default_factory=list)
    tyramine_foods: dict[str, Certainty] = Field(default_factory=dict)
    gluten_triggers: Certainty = Certainty.NO
    eating_patterns: dict[str, Certainty] = Field(default_factory=dict)
    tracks_nutrition: Optional[str] = None
    # weather, environment, physical
    specific_weather: dict[str, Certainty] = Field(default_factory=dict)
    environment_sensitivities: dict[str, Certainty] = Field(default_factory=dict)
    physical_factors: dict[str, Certainty] = Field(default_factory=dict)
    # exercise & hormones
    exercise_frequency: Optional[str] = None
    exercise_triggers: Certainty = Certainty.NO
    exercise_pattern: list[str] = Field(default_factory=list)
    cycle_patterns: dict[str, Certainty] = Field(default_factory=dict)
    contraception_effect: Optional[str] = None
    # prodromes
    physical_prodromes: dict[str, Certainty] = Field(default_factory=dict)
    mood_prodromes: dict[str, Certainty] = Field(default_factory=dict)
    sensory_prodromes: dict[str, Certainty] = Field(default_factory=dict)
    # connected data
    enabled_metrics: dict[str, bool] = Field(default_factory=dict)
    baselines: dict[str, float] = Field(default_factory=dict)
    free_text: Optional[str] = None


class PoolItem(BaseModel):
    label: str
    is_automatable: bool = False
    direction: Optional[str] = None
    unit: Optional[str] = None


class AvailableItems(BaseModel):
    triggers: list[PoolItem] = Field(default_factory=list)
    prodromes: list[PoolItem] = Field(default_factory=list)

    def auto_trigger_labels(self) -> set[str]:
        return {i.label for i in self.triggers if i.is_automatable}

    def auto_prodrome_labels(self) -> set[str]:
        return {i.label for i in self.prodromes if i.is_automatable}


class ProfileContext(BaseModel):
    gender: Optional[str] = None
    age_range: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    experience: Optional[str] = None
    trajectory: Optional[str] = None
    warning_signs_before: Optional[str] = None
    trigger_delay: Optional[str] = None
    daily_routine: Optional[str] = None
    seasonal_pattern: Optional[str] = None
    free_text: Optional[str] = None

    class Config:
        frozen = True


class MappingResult(BaseModel):
    triggers: dict[str, TriggerSetting] = Field(default_factory=dict)
    prodromes: dict[str, ProdromeSetting] = Field(default_factory=dict)
    profile_context: ProfileContext = Field(default_factory=ProfileContext)

    class Config:
        frozen = True

    def favorite_labels(self) -> list[str]:
        return [s.label for s in (*self.triggers.values(), *self.prodromes.values()) if s.favorite]


class DataContext(BaseModel):
    wearable_connected: bool = False
    enabled_metrics: dict[str, bool] = Field(default_factory=dict)
    days_of_data: int = 0
    migraine_count: int = 0


# ── Calibration ──

class Adjustment(BaseModel):
    label: str
    kind: EventKind = EventKind.TRIGGER
    from_severity: Severity = Severity.NONE
    to_severity: Severity
    reasoning: str = ""


class FavoriteAdjustment(BaseModel):
    label: str
    kind: EventKind = EventKind.TRIGGER
    favorite: bool = True
    reasoning: str = ""


class ProfileUpdate(BaseModel):
    field: str
    from_value: Optional[str] = None
    to_value: Optional[str] = None
    reasoning: str = ""


class DataWarning(BaseModel):
    type: str = ""
    message: str = ""
    metric: Optional[str] = None


class Call1Result(BaseModel):
    clinical_assessment: str = ""
    summary: str = ""
    adjustments: list[Adjustment] = Field(default_factory=list)
    favorite_adjustments: list[FavoriteAdjustment] = Field(default_factory=list)
    profile_updates: list[ProfileUpdate] = Field(default_factory=list)
    data_warnings: list[DataWarning] = Field(default_factory=list)


class Call2Result(BaseModel):
    thresholds: Optional[GaugeThresholds] = None
    threshold_reasoning: str = ""
    decay_table: Optional[DecayTable] = None
    decay_reasoning: dict[Severity, str] = Field(default_factory=dict)
    calibration_notes: str = ""
    summary: str = ""


class TriggerBuckets(BaseModel):
    auto_high: list[str] = Field(default_factory=list)
    auto_mild: list[str] = Field(default_factory=list)
    auto_low: list[str] = Field(default_factory=list)
    manual_high: list[str] = Field(default_factory=list)
    manual_mild: list[str] = Field(default_factory=list)
    manual_low: list[str] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {name: len(labels) for name, labels in self.model_dump().items()}


class ProdromeStats(BaseModel):
    high: list[str] = Field(default_factory=list)
    mild: list[str] = Field(default_factory=list)
    low: list[str] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {"high": len(self.high), "mild": len(self.mild), "low": len(self.low)}


class CalibrationProposal(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: ProposalType
    label: str = ""
    from_value: Optional[str | float] = None
    to_value: Optional[str | float] = None
    reasoning: str = ""
    accepted: bool = True

    class Config:
        frozen = True
        from_attributes = True


class AiConfig(BaseModel):
    triggers: dict[str, TriggerSetting] = Field(default_factory=dict)
    prodromes: dict[str, ProdromeSetting] = Field(default_factory=dict)
    gauge_thresholds: GaugeThresholds = Field(default_factory=GaugeThresholds)
    decay_table: DecayTable = Field(default_factory=DecayTable)
    clinical_assessment: str = ""
    calibration_notes: str = ""
    summary: str = ""
    data_warnings: list[DataWarning] = Field(default_factory=list)
    proposals: list[CalibrationProposal] = Field(default_factory=list)
    used_fallback: bool = False


class CalibrationOutcome(BaseModel):
    config: AiConfig
    state: PipelineState
    mode: CalibrationMode = CalibrationMode.FULL
    history: list[PipelineState] = Field(default_factory=list)
    decisions: list[dict] = Field(default_factory=list)
    error: Optional[str] = None


# ── Review ──

class ReviewState(BaseModel):
    status: ReviewStatus = ReviewStatus.LOADING
    batch_id: Optional[str] = None
    proposals: list[CalibrationProposal] = Field(default_factory=list)
    clinical_assessment: str = ""
    calibration_notes: str = ""
    error: Optional[str] = None

    class Config:
        frozen = True

    @property
    def accepted(self) -> list[CalibrationProposal]:
        return [p for p in self.proposals if p.accepted]


# ── API requests / responses ──

class EventCreate(BaseModel):
    label: str
    timestamp: Optional[datetime] = None
    severity: Optional[Severity] = None
    kind: EventKind = EventKind.TRIGGER
    linked_migraine_id: Optional[str] = None
    source: str = "manual"


class MigraineCreate(BaseModel):
    start_at: Optional[datetime] = None
    pain_level: Optional[int] = Field(default=None, ge=0, le=10)
    notes: str = ""


class EventUpdate(BaseModel):
    active: Optional[bool] = None
    linked_migraine_id: Optional[str] = None
    unlink: bool = False


class ScoreRequest(BaseModel):
    today: date
    events: list[Event] = Field(default_factory=list)
    decay_table: Optional[DecayTable] = None
    thresholds: Optional[GaugeThresholds] = None
    triggers: list[TriggerSetting] = Field(default_factory=list)
    prodromes: list[ProdromeSetting] = Field(default_factory=list)
    days: int = Field(default=DECAY_DAYS, ge=1, le=14)
    lookback_days: int = Field(default=DECAY_DAYS - 1, ge=0, le=DECAY_DAYS - 1)


class RiskResponse(BaseModel):
    user_id: Optional[str] = None
    score: float = 0.0
    zone: Zone = Zone.NONE
    percent: int = 0
    top_triggers: list[Contributor] = Field(default_factory=list)
    forecast: list[DayRisk] = Field(default_factory=list)
    computed_at: Optional[datetime] = None


class OnboardingRequest(BaseModel):
    answers: QuestionnaireAnswers = Field(default_factory=QuestionnaireAnswers)
    available: AvailableItems = Field(default_factory=AvailableItems)
    data_context: DataContext = Field(default_factory=DataContext)


class RecalibrationRunRequest(BaseModel):
    mode: CalibrationMode = CalibrationMode.FULL
    force: bool = False


class CalibrationResponse(BaseModel):
    user_id: str
    batch_id: str
    state: PipelineState
    used_fallback: bool = False
    clinical_assessment: str = ""
    calibration_notes: str = ""
    summary: str = ""
    proposals: list[CalibrationProposal] = Field(default_factory=list)
