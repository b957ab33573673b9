"""Deterministic questionnaire mapper.

Turns onboarding answers into floor severities and personalized thresholds
for trigger/prodrome labels. No network, no DB: the same answers always give
the same MappingResult.

Thresholds are band based. Every paired metric ("Pressure high" / "Pressure
low") has a centre and a half-width taken from the template defaults.
Demographics and reported habits move the centre, and the certainty of an
answer scales the half-width:

    high threshold = centre + delta * multiplier
    low threshold  = centre - delta * multiplier

so the low threshold always stays below the high one.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from schemas import (
    AvailableItems,
    Certainty,
    MappingResult,
    ProdromeSetting,
    ProfileContext,
    QuestionnaireAnswers,
    Severity,
    TriggerSetting,
)
from core.severity import (
    certainty_rank,
    certainty_to_severity,
    downgrade,
    exposure_threshold,
    max_certainty,
    parse_certainty,
    sensitivity_multiplier,
)

logger = logging.getLogger("migrainegauge.mapper")


# ── Template band endpoints ──

TEMPLATE_DEFAULTS: dict[str, float] = {
    # body
    "Blood glucose high": 180.0, "Blood glucose low": 70.0,
    "Blood pressure high": 140.0, "Blood pressure low": 90.0,
    "Body fat high": 35.0, "Body fat low": 8.0,
    "High HR zones high": 120.0, "High HR zones low": 5.0,
    "Recovery high": 85.0, "Recovery low": 33.0,
    "Steps high": 25000.0, "Steps low": 3000.0,
    "Stress high": 75.0, "Stress low": 10.0,
    "Weight high": 120.0, "Weight low": 45.0,
    # cognitive
    "Late screen time high": 2.0, "Late screen time low": 0.0,
    "Noise high": 75.0, "Noise low": 30.0,
    "Screen time high": 8.0, "Screen time low": 0.5,
    # diet
    "Caffeine high": 400.0, "Caffeine low": 50.0,
    "Calcium high": 1500.0, "Calcium low": 300.0,
    "Calories high": 3000.0, "Calories low": 1200.0,
    "Carbs high": 400.0, "Carbs low": 100.0,
    "Fat high": 120.0, "Fat low": 30.0,
    "Folate high": 600.0, "Folate low": 100.0,
    "Iron high": 25.0, "Iron low": 5.0,
    "Magnesium high": 500.0, "Magnesium low": 100.0,
    "Protein high": 150.0, "Protein low": 30.0,
    "Riboflavin high": 3.0, "Riboflavin low": 0.3,
    "Saturated fat high": 25.0, "Saturated fat low": 5.0,
    "Sodium high": 3000.0, "Sodium low": 500.0,
    "Sugar high": 80.0, "Sugar low": 10.0,
    "Vitamin D high": 50.0, "Vitamin D low": 5.0,
    # environment
    "Altitude change high": 500.0, "Altitude change low": 0.0,
    "Altitude high": 2500.0, "Altitude low": 0.0,
    "Humidity high": 80.0, "Humidity low": 20.0,
    "Pressure high": 1030.0, "Pressure low": 990.0,
    "Temperature high": 35.0, "Temperature low": 5.0,
    "UV index high": 8.0, "UV index low": 1.0,
    "Wind speed high": 15.0, "Wind speed low": 1.0,
    # sleep
    "Bedtime early": 21.0, "Bedtime late": 1.0,
    "Deep sleep high": 3.0, "Deep sleep low": 0.5,
    "Light sleep high": 5.0, "Light sleep low": 1.0,
    "REM sleep high": 3.5, "REM sleep low": 0.5,
    "Sleep disturbances high": 5.0, "Sleep disturbances low": 1.0,
    "Sleep duration high": 10.0, "Sleep duration low": 6.0,
    "Sleep efficiency high": 98.0, "Sleep efficiency low": 80.0,
    "Sleep score high": 95.0, "Sleep score low": 60.0,
    "Wake time early": 5.0, "Wake time late": 10.0,
}

PRODROME_DEFAULTS: dict[str, float] = {
    "HRV high": 150.0, "HRV low": 20.0,
    "Resting HR high": 100.0, "Resting HR low": 40.0,
    "Resp rate high": 22.0, "Resp rate low": 10.0,
    "Skin temp high": 38.0, "Skin temp low": 35.0,
    "SpO2 high": 100.0, "SpO2 low": 95.0,
    "Brightness high": 80.0, "Brightness low": 20.0,
    "Dark mode high": 14.0, "Dark mode low": 2.0,
    "Phone unlocks high": 150.0, "Phone unlocks low": 10.0,
    "Volume high": 80.0, "Volume low": 20.0,
}

NUTRITION_LABELS = [
    "Protein high", "Protein low", "Carbs high", "Carbs low", "Fat high", "Fat low",
    "Saturated fat high", "Saturated fat low", "Calcium high", "Calcium low",
    "Sodium low", "Sugar low", "Folate high", "Folate low", "Iron high",
    "Magnesium high", "Riboflavin high", "Vitamin D high",
]

CONNECTED_TRIGGER_METRICS: dict[str, tuple[str, ...]] = {
    "recovery_score_daily": ("Recovery high", "Recovery low"),
    "stress_index_daily": ("Stress high", "Stress low"),
    "steps_daily": ("Steps high", "Steps low"),
    "time_in_high_hr_zones_daily": ("High HR zones high", "High HR zones low"),
    "blood_pressure_daily": ("Blood pressure high", "Blood pressure low"),
    "blood_glucose_daily": ("Blood glucose high", "Blood glucose low"),
    "body_fat_daily": ("Body fat high", "Body fat low"),
    "weight_daily": ("Weight high", "Weight low"),
}

CONNECTED_PRODROME_METRICS: dict[str, tuple[str, ...]] = {
    "hrv_daily": ("HRV high", "HRV low"),
    "resting_hr_daily": ("Resting HR high", "Resting HR low"),
    "spo2_daily": ("SpO2 high", "SpO2 low"),
    "skin_temp_daily": ("Skin temp high", "Skin temp low"),
    "respiratory_rate_daily": ("Resp rate high", "Resp rate low"),
    "phone_brightness_daily": ("Brightness high", "Brightness low"),
    "phone_dark_mode_daily": ("Dark mode high", "Dark mode low"),
    "phone_volume_daily": ("Volume high", "Volume low"),
    "phone_unlock_daily": ("Phone unlocks high", "Phone unlocks low"),
}

# label -> (answers field, {answer: severity})
DIRECT_ANSWER_RULES: dict[str, tuple[str, dict[str, Severity]]] = {
    "Sleep duration low": ("sleep_hours", {"< 5h": Severity.HIGH, "5-6h": Severity.HIGH}),
    "Sleep duration high": ("sleep_hours", {"9+h": Severity.LOW}),
    "Stress high": ("stress_level", {"Very high": Severity.MILD, "High": Severity.LOW}),
    "Caffeine high": ("caffeine_intake", {"5+ cups": Severity.MILD, "3-4 cups": Severity.LOW}),
    "Screen time high": ("screen_time_daily", {"12h+": Severity.MILD, "8-12h": Severity.LOW}),
    "Steps low": ("exercise_frequency", {"Never": Severity.MILD, "Rarely": Severity.LOW}),
    "Contraceptive": ("contraception_effect", {
        "Made them worse — every time": Severity.HIGH,
        "Made them worse — sometimes": Severity.MILD,
    }),
}

_SLEEP_CENTERS = {"< 5h": 4.5, "5-6h": 5.5, "6-7h": 6.5, "7-8h": 7.5, "8-9h": 8.5, "9+h": 9.5}
_CAFFEINE_CENTERS = {"None": 30.0, "1-2 cups": 175.0, "3-4 cups": 350.0, "5+ cups": 500.0}
_SCREEN_CENTERS = {"< 2h": 1.5, "2-4h": 3.0, "4-8h": 6.0, "8-12h": 10.0, "12h+": 13.0}
_STRESS_CENTERS = {"Low": 25.0, "Moderate": 50.0, "High": 70.0, "Very high": 85.0}
_STEPS_CENTERS = {"Daily": 12000.0, "Few times/week": 8000.0, "Weekly": 6000.0, "Rarely": 4000.0, "Never": 2000.0}


# ── Direct and numeric rating rules ──

def rating_from_direct_answer(label: str, answer_value) -> Severity:
    """Severity for a label from one discrete answer.
    Uses the label's lookup table when there is one, otherwise reads the
    answer as a certainty word ("Every time", "Often", ...)."""
    if answer_value is None:
        return Severity.NONE
    answer = str(answer_value).strip()
    for rule_label, (_, table) in DIRECT_ANSWER_RULES.items():
        if rule_label.lower() == label.strip().lower():
            if answer in table:
                return table[answer]
            break
    certainty = parse_certainty(answer)
    if certainty is not None:
        return certainty_to_severity(certainty)
    return Severity.NONE


def rating_from_numeric_threshold(
    label: str,
    value: Optional[float],
    direction: Optional[str],
    default_threshold: Optional[float],
) -> Severity:
    """Severity for an auto-detectable metric from a reported baseline.
    NONE unless the baseline is past the threshold in the given direction;
    otherwise graded by the relative margin (>=25% HIGH, >=10% MILD, else LOW)."""
    if value is None or default_threshold is None or direction not in ("high", "low"):
        return Severity.NONE

    crossed = value >= default_threshold if direction == "high" else value <= default_threshold
    if not crossed:
        return Severity.NONE

    margin = abs(value - default_threshold) / max(abs(default_threshold), 1e-9)
    if margin >= 0.25:
        return Severity.HIGH
    if margin >= 0.10:
        return Severity.MILD
    logger.debug("Numeric rule for %s: %.2f just past %.2f", label, value, default_threshold)
    return Severity.LOW


# ── Band helpers ──

def direction_for(label: str) -> Optional[str]:
    lowered = label.lower()
    if lowered.endswith(" high") or lowered.endswith(" late"):
        return "high"
    if lowered.endswith(" low") or lowered.endswith(" early"):
        return "low"
    return None


def _band(base: str, defaults: dict[str, float]) -> Optional[tuple[float, float]]:
    hi = defaults.get(f"{base} high")
    lo = defaults.get(f"{base} low")
    if hi is None or lo is None:
        return None
    return (hi + lo) / 2.0, max((hi - lo) / 2.0, 0.01)


def band_threshold(label: str, defaults: dict[str, float], certainty: Certainty) -> Optional[float]:
    """Personalized threshold for a "<metric> high" / "<metric> low" label.
    Labels without a pair fall back to the raw default."""
    direction = direction_for(label)
    if direction is None or not label.lower().endswith((" high", " low")):
        return defaults.get(label)

    base = label.rsplit(" ", 1)[0]
    band = _band(base, defaults)
    if band is None:
        return defaults.get(label)
    center, delta = band
    mult = sensitivity_multiplier(certainty)
    return round(center + delta * mult if direction == "high" else center - delta * mult, 4)


def _shift_center(defaults: dict[str, float], base: str, center: float, half_range: Optional[float] = None):
    hi = defaults.get(f"{base} high")
    lo = defaults.get(f"{base} low")
    if hi is None or lo is None:
        return
    if half_range is None:
        half_range = (hi - lo) / 2.0
    defaults[f"{base} high"] = center + half_range
    defaults[f"{base} low"] = center - half_range


def _scale(defaults: dict[str, float], base: str, high: float | None = None, low: float | None = None):
    if high is not None:
        defaults[f"{base} high"] *= high
    if low is not None:
        defaults[f"{base} low"] *= low


def personalize_defaults(gender: Optional[str], age_range: Optional[str]) -> dict[str, float]:
    d = dict(TEMPLATE_DEFAULTS)

    if gender == "Female":
        d.update({
            "Calories high": 2200.0, "Calories low": 1400.0,
            "Protein high": 110.0, "Fat high": 90.0, "Saturated fat high": 20.0,
            "Carbs high": 320.0, "Sodium high": 2300.0,
            "Weight high": 90.0, "Weight low": 48.0, "Body fat low": 18.0,
            "Blood pressure high": 130.0, "Steps high": 20000.0, "High HR zones high": 100.0,
            "Iron low": 8.0, "Folate low": 150.0, "Calcium low": 400.0,
            "Caffeine high": 300.0,
        })
    elif gender == "Male":
        d.update({"Body fat high": 28.0, "Iron high": 20.0})

    if age_range == "18-25":
        _scale(d, "Calories", high=1.10, low=1.05)
        _scale(d, "Steps", high=1.10)
        _scale(d, "Protein", high=1.05)
        _scale(d, "Blood pressure", high=0.93, low=0.95)
        _scale(d, "Caffeine", high=0.90)
        d.update({"Sleep duration low": 6.5, "Bedtime late": 2.0, "Wake time late": 11.0})
    elif age_range == "26-35":
        _scale(d, "Calories", high=1.03)
        _scale(d, "Steps", high=1.05)
    elif age_range == "46-55":
        _scale(d, "Calories", high=0.93)
        _scale(d, "Steps", high=0.85)
        _scale(d, "Blood pressure", high=1.04)
        _scale(d, "Caffeine", high=0.85)
        d.update({"Recovery low": 30.0, "Sleep duration low": 5.5, "Bedtime late": 0.5})
        if gender == "Female":
            d.update({"Iron low": 5.0, "Folate low": 100.0})
    elif age_range == "56+":
        _scale(d, "Calories", high=0.85, low=0.95)
        _scale(d, "Steps", high=0.70)
        _scale(d, "Blood pressure", high=1.07)
        _scale(d, "Caffeine", high=0.75)
        _scale(d, "High HR zones", high=0.75)
        d.update({
            "Recovery low": 28.0, "Sleep duration low": 5.5, "Sleep duration high": 9.0,
            "Bedtime late": 0.0, "Bedtime early": 20.0, "Wake time early": 4.5,
        })
        if gender == "Female":
            d.update({"Iron low": 5.0, "Folate low": 100.0, "Calcium low": 500.0, "Vitamin D low": 10.0})

    return d


def personalize_prodrome_defaults(gender: Optional[str], age_range: Optional[str]) -> dict[str, float]:
    pd = dict(PRODROME_DEFAULTS)

    if gender == "Female":
        pd.update({"HRV low": 22.0, "Resting HR high": 95.0})
    elif gender == "Male":
        pd.update({"HRV low": 18.0, "Resting HR low": 38.0})

    if age_range == "18-25":
        pd.update({"HRV high": 180.0, "HRV low": pd["HRV low"] * 1.20, "Resting HR high": 95.0, "Resting HR low": 45.0})
    elif age_range == "26-35":
        pd.update({"HRV high": 160.0, "HRV low": pd["HRV low"] * 1.10})
    elif age_range == "46-55":
        pd.update({"HRV high": 120.0, "HRV low": pd["HRV low"] * 0.85, "Resting HR high": 95.0, "SpO2 low": 94.0})
    elif age_range == "56+":
        pd.update({
            "HRV high": 100.0, "HRV low": pd["HRV low"] * 0.75, "Resting HR high": 90.0,
            "SpO2 low": 93.0, "Resp rate high": 20.0,
        })

    return pd


def _apply_answer_centers(answers: QuestionnaireAnswers, d: dict[str, float]):
    if answers.sleep_hours in _SLEEP_CENTERS:
        _shift_center(d, "Sleep duration", _SLEEP_CENTERS[answers.sleep_hours])
    if answers.caffeine_intake in _CAFFEINE_CENTERS:
        center = _CAFFEINE_CENTERS[answers.caffeine_intake]
        _shift_center(d, "Caffeine", center, center * 0.30)
    if answers.screen_time_daily in _SCREEN_CENTERS:
        _shift_center(d, "Screen time", _SCREEN_CENTERS[answers.screen_time_daily], 2.0)
    if answers.stress_level in _STRESS_CENTERS:
        _shift_center(d, "Stress", _STRESS_CENTERS[answers.stress_level], 20.0)
    if answers.exercise_frequency in _STEPS_CENTERS:
        center = _STEPS_CENTERS[answers.exercise_frequency]
        _shift_center(d, "Steps", center, center * 0.40)


# ── Setting builders ──

class _Pool:
    """Mutable working set for one mapping run; frozen into the MappingResult."""

    def __init__(self, factory: type[TriggerSetting], defaults: dict[str, float]):
        self.factory = factory
        self.defaults = defaults
        self.items: dict[str, TriggerSetting] = {}

    def auto(self, label: str, certainty: Certainty, severity: Severity | None = None, favorite: bool = False):
        sev = severity if severity is not None else certainty_to_severity(certainty)
        self.items[label] = self.factory(
            label=label,
            severity=sev,
            favorite=favorite,
            is_automatable=True,
            direction=direction_for(label),
            default_threshold=band_threshold(label, self.defaults, certainty),
        )

    def manual(self, label: str, severity: Severity, favorite: bool = False, exposure_level: int | None = None):
        self.items[label] = self.factory(
            label=label, severity=severity, favorite=favorite, exposure_level=exposure_level,
        )

    def floor(self, label: str, severity: Severity = Severity.LOW):
        """Add label at severity only if it is not already mapped."""
        if label not in self.items:
            self.items[label] = self.factory(
                label=label,
                severity=severity,
                is_automatable=label in self.defaults,
                direction=direction_for(label),
                default_threshold=self.defaults.get(label),
            )

    def raise_to(self, label: str, severity: Severity, build: Callable[[], None]):
        existing = self.items.get(label)
        if existing is None:
            if severity != Severity.NONE:
                build()
        elif severity.rank > existing.severity.rank:
            self.items[label] = existing.model_copy(update={"severity": severity})


# ── Rule families ──

def _map_sleep(a: QuestionnaireAnswers, t: _Pool):
    quality = a.poor_sleep_quality_triggers
    if quality != Certainty.NO:
        t.auto("Sleep score low", quality, favorite=True)
        for label in ("Sleep efficiency low", "Sleep disturbances high", "Deep sleep low",
                      "REM sleep low", "Light sleep high"):
            t.auto(label, quality)

    little = a.too_little_sleep_triggers
    if little != Certainty.NO:
        t.auto("Sleep duration low", little, favorite=True)

    over = a.oversleep_triggers
    if over != Certainty.NO:
        t.auto("Sleep duration high", over, favorite=True)
        for label in ("Sleep score high", "Sleep efficiency high", "Sleep disturbances low",
                      "Deep sleep high", "REM sleep high"):
            t.auto(label, over)

    best = max_certainty(quality, little)
    if best != Certainty.NO:
        irregular = best if a.sleep_quality == "Varies a lot" else downgrade(best)
        if "Irregular schedule" in a.sleep_issues:
            irregular = best
        if irregular != Certainty.NO:
            for label in ("Bedtime late", "Bedtime early", "Wake time late", "Wake time early"):
                t.auto(label, irregular)
        if "Sleep apnea" in a.sleep_issues:
            t.manual("Sleep apnea", certainty_to_severity(best))
    if "Jet lag" in a.sleep_issues:
        t.manual("Jet lag", Severity.LOW)


def _map_stress_and_screen(a: QuestionnaireAnswers, t: _Pool):
    for pattern, cert in a.emotional_patterns.items():
        if cert == Certainty.NO:
            continue
        sev = certainty_to_severity(cert)
        if pattern == "Spike in stress":
            t.manual("Stress", sev)
            t.auto("Stress high", cert)
        elif pattern == "Anxiety":
            t.manual("Anxiety", sev)
        elif pattern == "Anger":
            t.manual("Anger", sev)
        elif pattern == "Let-down":
            t.manual("Let-down", sev)
            t.auto("Stress low", cert)
        elif pattern == "Feeling low":
            t.manual("Depression", sev)

    if a.screen_time_triggers != Certainty.NO:
        t.auto("Screen time high", a.screen_time_triggers)
        t.manual("Computer/screen", certainty_to_severity(a.screen_time_triggers))
    if a.late_screen_triggers != Certainty.NO:
        t.auto("Late screen time high", a.late_screen_triggers)


def _map_diet(a: QuestionnaireAnswers, t: _Pool):
    cc = a.caffeine_certainty
    if cc != Certainty.NO and a.caffeine_direction != "No":
        if a.caffeine_direction in ("Too much", "Both"):
            t.auto("Caffeine high", cc, favorite=True)
        if a.caffeine_direction in ("Missing", "Both"):
            t.auto("Caffeine low", cc, favorite=True)
        if a.caffeine_direction == "Not sure":
            t.auto("Caffeine high", Certainty.SOMETIMES, severity=Severity.LOW)
            t.auto("Caffeine low", Certainty.SOMETIMES, severity=Severity.LOW)

    if a.alcohol_triggers != Certainty.NO:
        t.manual("Alcohol exposure high", certainty_to_severity(a.alcohol_triggers),
                 favorite=True, exposure_level=exposure_threshold(a.alcohol_triggers))

    tyramine = max_certainty(*a.tyramine_foods.values()) if a.tyramine_foods else Certainty.NO
    red_wine = "Red wine" in a.specific_drinks
    if tyramine != Certainty.NO:
        if red_wine and certainty_rank(tyramine) < certainty_rank(Certainty.SOMETIMES):
            tyramine = Certainty.SOMETIMES
        t.manual("Tyramine exposure high", certainty_to_severity(tyramine),
                 favorite=True, exposure_level=exposure_threshold(tyramine))
    elif red_wine:
        t.manual("Tyramine exposure high", Severity.LOW, exposure_level=2)

    if a.gluten_triggers != Certainty.NO:
        t.manual("Gluten exposure high", certainty_to_severity(a.gluten_triggers),
                 favorite=True, exposure_level=exposure_threshold(a.gluten_triggers))

    for pattern, cert in a.eating_patterns.items():
        if cert == Certainty.NO:
            continue
        sev = certainty_to_severity(cert)
        if pattern == "Skipping meals":
            t.manual("Skipped meals", sev, favorite=True)
            t.auto("Calories low", cert)
        elif pattern == "Sugar":
            t.auto("Sugar high", cert)
        elif pattern == "Salty food":
            t.auto("Sodium high", cert)
        elif pattern == "Overeating":
            t.auto("Calories high", cert)
        elif pattern == "Dehydration":
            t.manual("Dehydration", sev, favorite=True)

    if a.tracks_nutrition == "Yes, regularly":
        for label in ("Magnesium low", "Riboflavin low", "Vitamin D low", "Iron low"):
            t.floor(label, Severity.MILD)
        for label in NUTRITION_LABELS:
            t.floor(label, Severity.LOW)
    elif a.tracks_nutrition == "Sometimes":
        for label in ("Magnesium low", "Riboflavin low", "Vitamin D low", "Iron low"):
            t.floor(label, Severity.LOW)


_WEATHER_RULES: dict[str, tuple[tuple[str, bool], ...]] = {
    "Pressure changes": (("Pressure high", True), ("Pressure low", True)),
    "Hot weather": (("Temperature high", False),),
    "Cold weather": (("Temperature low", False),),
    "Humidity": (("Humidity high", False),),
    "Dry air": (("Humidity low", False),),
    "Wind": (("Wind speed high", False),),
    "Sunshine": (("UV index high", False),),
    "Thunderstorms": (("Pressure low", True), ("Humidity high", False)),
}

_UNSURE_WEATHER = (
    "Pressure high", "Pressure low", "Temperature high", "Temperature low",
    "Humidity high", "Humidity low", "Wind speed high", "UV index high",
)


def _map_environment(a: QuestionnaireAnswers, t: _Pool):
    if "Not sure which" in a.specific_weather:
        for label in _UNSURE_WEATHER:
            t.auto(label, Certainty.SOMETIMES, severity=Severity.LOW)
    else:
        for weather, cert in a.specific_weather.items():
            if cert == Certainty.NO:
                continue
            for label, favorite in _WEATHER_RULES.get(weather, ()):
                t.auto(label, cert, favorite=favorite)

    for env, cert in a.environment_sensitivities.items():
        if cert == Certainty.NO:
            continue
        sev = certainty_to_severity(cert)
        if env == "Fluorescent lights":
            t.manual("Fluorescent light", sev, favorite=True)
        elif env == "Strong smells":
            t.manual("Strong smell", sev)
        elif env == "Loud noise":
            t.auto("Noise high", cert)
        elif env == "Smoke":
            t.manual("Smoke", sev)
        elif env == "Altitude":
            t.auto("Altitude high", cert)
            t.auto("Altitude change high", cert)
            t.floor("Altitude low")
            t.floor("Altitude change low")


_PHYSICAL_RULES = {
    "Allergies": ("Allergies",),
    "Being ill": ("Illness",),
    "Low blood sugar": ("Low blood sugar",),
    "Medication change": ("Medication change",),
    "Motion sickness": ("Motion sickness", "Travel"),
    "Tobacco": ("Tobacco",),
    "Sexual activity": ("Sexual activity",),
}


def _map_physical(a: QuestionnaireAnswers, t: _Pool):
    for factor, cert in a.physical_factors.items():
        if cert == Certainty.NO:
            continue
        for label in _PHYSICAL_RULES.get(factor, ()):
            t.manual(label, certainty_to_severity(cert))


def _map_exercise(a: QuestionnaireAnswers, t: _Pool):
    cert = a.exercise_triggers
    if cert == Certainty.NO:
        return
    if "Intense exercise" in a.exercise_pattern:
        t.auto("High HR zones high", cert, favorite=True)
        t.auto("Steps high", cert)
    if "When inactive" in a.exercise_pattern:
        t.auto("Steps low", cert)


def _map_hormones(a: QuestionnaireAnswers, t: _Pool):
    for pattern, cert in a.cycle_patterns.items():
        if cert == Certainty.NO:
            continue
        if pattern == "Around my period":
            t.manual("Menstruation", certainty_to_severity(cert), favorite=True)
        elif pattern == "Around ovulation":
            t.manual("Ovulation", certainty_to_severity(cert))


def _map_connected_metrics(enabled: dict[str, bool], t: _Pool, p: _Pool):
    for metric, labels in CONNECTED_TRIGGER_METRICS.items():
        if enabled.get(metric):
            for label in labels:
                t.floor(label)
    for metric, labels in CONNECTED_PRODROME_METRICS.items():
        if enabled.get(metric):
            for label in labels:
                p.floor(label)


_PHYSICAL_PRODROMES = {
    "Neck stiffness": ("Muscle tension", True),
    "Muscle tension": ("Muscle tension", True),
    "Yawning": ("Yawning", True),
    "Urination": ("Frequent urination", False),
    "Stuffy nose": ("Nasal congestion", False),
    "Watery eyes": ("Tearing", False),
}

_MOOD_PRODROMES = {
    "Concentrating": ("Difficulty focusing", False),
    "Words": ("Word-finding trouble", False),
    "Irritability": ("Irritability", True),
    "Mood swings": ("Mood change", False),
    "Feeling low": ("Depression", False),
    "Unusually happy": ("Euphoria", False),
    "Food cravings": ("Food cravings", False),
    "Loss of appetite": ("Loss of appetite", False),
}

_SENSORY_PRODROMES = {
    "Light": ("Sensitivity to light", True),
    "Sound": ("Sensitivity to sound", True),
    "Smell": ("Sensitivity to smell", False),
    "Tingling": ("Tingling", False),
    "Numbness": ("Numbness", False),
}


def _map_prodromes(a: QuestionnaireAnswers, p: _Pool):
    for table, answers in ((_PHYSICAL_PRODROMES, a.physical_prodromes), (_MOOD_PRODROMES, a.mood_prodromes)):
        for symptom, cert in answers.items():
            if cert == Certainty.NO or symptom not in table:
                continue
            label, favorite = table[symptom]
            sev = certainty_to_severity(cert)
            p.raise_to(label, sev, lambda: p.manual(label, sev, favorite=favorite))

    for symptom, cert in a.sensory_prodromes.items():
        if cert == Certainty.NO or symptom not in _SENSORY_PRODROMES:
            continue
        label, favorite = _SENSORY_PRODROMES[symptom]
        p.manual(label, certainty_to_severity(cert), favorite=favorite)
        if symptom == "Light":
            weaker = downgrade(cert)
            if weaker != Certainty.NO:
                if "Brightness low" not in p.items:
                    p.auto("Brightness low", weaker)
                if "Dark mode high" not in p.items:
                    p.auto("Dark mode high", weaker)


def _apply_direct_answers(a: QuestionnaireAnswers, t: _Pool):
    for label, (field, _) in DIRECT_ANSWER_RULES.items():
        sev = rating_from_direct_answer(label, getattr(a, field))
        if sev == Severity.NONE:
            continue
        if direction_for(label):
            t.raise_to(label, sev, lambda: t.auto(label, Certainty.SOMETIMES, severity=sev))
        else:
            t.raise_to(label, sev, lambda: t.manual(label, sev))


def _apply_baselines(a: QuestionnaireAnswers, t: _Pool, p: _Pool):
    for label, value in a.baselines.items():
        pool = p if label in PRODROME_DEFAULTS or label in p.items else t
        existing = pool.items.get(label)
        direction = existing.direction if existing and existing.direction else direction_for(label)
        threshold = existing.threshold if existing and existing.threshold is not None else pool.defaults.get(label)
        sev = rating_from_numeric_threshold(label, value, direction, threshold)
        if sev != Severity.NONE:
            pool.raise_to(label, sev, lambda: pool.auto(label, Certainty.SOMETIMES, severity=sev))


def _restrict_to_pool(
    items: dict[str, TriggerSetting],
    pool: list,
    kind: str,
) -> dict[str, TriggerSetting]:
    if not pool:
        return items
    by_label = {i.label.strip().lower(): i for i in pool}
    kept: dict[str, TriggerSetting] = {}
    dropped: list[str] = []
    for label, setting in items.items():
        item = by_label.get(label.lower())
        if item is None:
            dropped.append(label)
            continue
        update = {"label": item.label, "is_automatable": item.is_automatable or setting.is_automatable}
        if item.direction:
            update["direction"] = item.direction
        if item.unit:
            update["unit"] = item.unit
        kept[item.label] = setting.model_copy(update=update)
    if dropped:
        logger.info("Mapper dropped %d %s labels not in the user's pool: %s", len(dropped), kind, dropped)
    return kept


# ── Entry point ──

def map_questionnaire(answers: QuestionnaireAnswers, available_labels: AvailableItems | None = None) -> MappingResult:
    """Rule-based floor ratings for every trigger/prodrome the answers touch.
    Labels no rule touches are absent, i.e. NONE."""
    available = available_labels or AvailableItems()

    d = personalize_defaults(answers.gender, answers.age_range)
    pd = personalize_prodrome_defaults(answers.gender, answers.age_range)
    _apply_answer_centers(answers, d)

    triggers = _Pool(TriggerSetting, d)
    prodromes = _Pool(ProdromeSetting, pd)

    _map_sleep(answers, triggers)
    _map_stress_and_screen(answers, triggers)
    _map_diet(answers, triggers)
    _map_environment(answers, triggers)
    _map_physical(answers, triggers)
    _map_exercise(answers, triggers)
    _map_hormones(answers, triggers)
    _map_connected_metrics(answers.enabled_metrics, triggers, prodromes)
    _map_prodromes(answers, prodromes)
    _apply_direct_answers(answers, triggers)
    _apply_baselines(answers, triggers, prodromes)

    trigger_items = {k: v for k, v in triggers.items.items() if v.severity != Severity.NONE}
    prodrome_items = {k: v for k, v in prodromes.items.items() if v.severity != Severity.NONE}

    trigger_items = _restrict_to_pool(trigger_items, available.triggers, "trigger")
    prodrome_items = _restrict_to_pool(prodrome_items, available.prodromes, "prodrome")

    logger.info("Mapped questionnaire: %d triggers, %d prodromes", len(trigger_items), len(prodrome_items))

    return MappingResult(
        triggers=trigger_items,
        prodromes=prodrome_items,
        profile_context=ProfileContext(
            gender=answers.gender,
            age_range=answers.age_range,
            frequency=answers.frequency,
            duration=answers.duration,
            experience=answers.experience,
            trajectory=answers.trajectory,
            warning_signs_before=answers.warning_signs_before,
            trigger_delay=answers.trigger_delay,
            daily_routine=answers.daily_routine,
            seasonal_pattern=answers.seasonal_pattern,
            free_text=answers.free_text,
        ),
    )
