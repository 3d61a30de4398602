"""
Eligibility & Gap Evaluator for QOF indicators.

Provides deterministic evaluation of (patient, indicator) pairs.
Each threshold rule kind has a handler registered in RULE_HANDLERS, so a
new rule kind is added by registering a handler, not by touching the
evaluation flow.

Missing clinical data never raises: it is folded into a "not recorded"
gap reason, which is the normal outcome this engine exists to surface.
"""

from collections import defaultdict
from datetime import date
from typing import Callable, NamedTuple

from qof_engine.config.logging_config import get_logger
from qof_engine.models.quality_models import (
    CompositeRule,
    GapFinding,
    IndicatorDefinition,
    NumericThresholdRule,
    Observation,
    PairEvaluation,
    PatientRecord,
    PresenceRule,
    RecencyRule,
    RuleOutcome,
    ScoreAtLeastRule,
    SubstringAnyRule,
    UnmeasuredRule,
    labels_match,
)
from qof_engine.services.cohort_selector import is_eligible
from qof_engine.services.indicator_catalog import IndicatorCatalog

logger = get_logger(__name__)


# ============================================================================
# Observation Resolution
# ============================================================================

class ObservationIndex:
    """
    Observations grouped per patient, most recent first.

    Built once per pass from the snapshot; ties on collected_at keep
    snapshot order.
    """

    def __init__(self, observations: list[Observation] | tuple[Observation, ...]):
        grouped: dict[str, list[Observation]] = defaultdict(list)
        for observation in observations:
            grouped[observation.patient_id].append(observation)
        self._by_patient: dict[str, tuple[Observation, ...]] = {
            patient_id: tuple(sorted(items, key=lambda o: o.collected_at, reverse=True))
            for patient_id, items in grouped.items()
        }

    def for_patient(self, patient_id: str) -> tuple[Observation, ...]:
        return self._by_patient.get(patient_id, ())

    def __contains__(self, patient_id: object) -> bool:
        return patient_id in self._by_patient


class BloodPressure(NamedTuple):
    systolic: float
    diastolic: float


def latest_blood_pressure(observations: tuple[Observation, ...]) -> BloodPressure | None:
    """Latest reading with both components present (observations newest first)."""
    for observation in observations:
        if observation.has_blood_pressure:
            return BloodPressure(observation.blood_pressure_systolic, observation.blood_pressure_diastolic)
    return None


def latest_smoking_status(observations: tuple[Observation, ...]) -> str | None:
    """Latest recorded smoking status (observations newest first)."""
    for observation in observations:
        if observation.smoking_status:
            return observation.smoking_status
    return None


def months_between(earlier: date, later: date) -> int:
    """Whole calendar months elapsed from earlier to later (0 if later is earlier)."""
    months = (later.year - earlier.year) * 12 + (later.month - earlier.month)
    if later.day < earlier.day:
        months -= 1
    return max(months, 0)


def format_value(value: float, decimals: int | None = None) -> str:
    """
    Render a measurement without ever rounding it.

    With `decimals`, values that fit are padded to that many places
    (2 -> "2.0"); values with more precision keep it (2.04 -> "2.04").
    """
    if decimals is not None:
        fixed = f"{value:.{decimals}f}"
        if float(fixed) == value:
            return fixed
    if float(value).is_integer():
        return str(int(value))
    return str(float(value))


# ============================================================================
# Rule Handlers
# ============================================================================

class RuleContext(NamedTuple):
    """Everything a rule handler may read."""
    patient: PatientRecord
    observations: tuple[Observation, ...]
    as_of: date


RuleHandler = Callable[..., RuleOutcome]

RULE_HANDLERS: dict[str, RuleHandler] = {}


def register_rule_kind(kind: str) -> Callable[[RuleHandler], RuleHandler]:
    """Register the handler for a threshold rule kind."""
    def decorator(handler: RuleHandler) -> RuleHandler:
        RULE_HANDLERS[kind] = handler
        return handler
    return decorator


def evaluate_rule(rule, ctx: RuleContext) -> RuleOutcome:
    """
    Apply a threshold rule to a patient context.

    Raises:
        KeyError: If no handler is registered for the rule kind.
    """
    handler = RULE_HANDLERS[rule.kind]
    return handler(rule, ctx)


@register_rule_kind("substring-any")
def _check_substring_any(rule: SubstringAnyRule, ctx: RuleContext) -> RuleOutcome:
    labels = ctx.patient.conditions if rule.field == "conditions" else ctx.patient.medications
    matched = labels_match(labels, rule.terms)
    return RuleOutcome(met=matched != rule.negate)


def _measure_components(rule: NumericThresholdRule, ctx: RuleContext) -> dict[str, float | None]:
    if rule.measure == "blood_pressure":
        bp = latest_blood_pressure(ctx.observations)
        if bp is None:
            return {"systolic": None, "diastolic": None}
        return {"systolic": bp.systolic, "diastolic": bp.diastolic}
    if rule.measure == "hba1c":
        return {"value": ctx.patient.hba1c_mmol_mol}
    if rule.measure == "ldl_cholesterol":
        return {"value": ctx.patient.cholesterol_ldl}
    return {}


@register_rule_kind("numeric-threshold")
def _check_numeric_threshold(rule: NumericThresholdRule, ctx: RuleContext) -> RuleOutcome:
    components = _measure_components(rule, ctx)
    values = [components.get(bound.component) for bound in rule.bounds]

    if any(value is None for value in values):
        return RuleOutcome(met=False, reason=rule.missing_reason or f"{rule.label} not recorded")

    met = all(value <= bound.maximum for value, bound in zip(values, rule.bounds))
    escalate = any(
        bound.alert_above is not None and value > bound.alert_above
        for value, bound in zip(values, rule.bounds)
    )

    observed = "/".join(format_value(value, rule.decimals) for value in values)
    target = "/".join(format_value(bound.maximum, rule.decimals) for bound in rule.bounds)
    reason = f"{rule.label} {observed} {rule.unit} ({rule.target_label} ≤{target})"
    return RuleOutcome(met=met, reason=None if met else reason, escalate=escalate and not met)


@register_rule_kind("score-at-least")
def _check_score_at_least(rule: ScoreAtLeastRule, ctx: RuleContext) -> RuleOutcome:
    score = getattr(ctx.patient, rule.field)
    return RuleOutcome(met=score is not None and score >= rule.minimum)


@register_rule_kind("presence")
def _check_presence(rule: PresenceRule, ctx: RuleContext) -> RuleOutcome:
    if rule.field == "smoking_status":
        value = latest_smoking_status(ctx.observations)
    else:
        value = getattr(ctx.patient, rule.field)
    if value is None:
        return RuleOutcome(met=False, reason=rule.missing_reason)
    return RuleOutcome(met=True)


@register_rule_kind("recency")
def _check_recency(rule: RecencyRule, ctx: RuleContext) -> RuleOutcome:
    recorded = getattr(ctx.patient, rule.field)
    if recorded is None:
        return RuleOutcome(met=False, reason=rule.missing_reason)
    elapsed = months_between(recorded, ctx.as_of)
    if elapsed < rule.within_months:
        return RuleOutcome(met=True)
    return RuleOutcome(met=False, reason=rule.stale_reason or f"Last review {elapsed} months ago")


@register_rule_kind("composite")
def _check_composite(rule: CompositeRule, ctx: RuleContext) -> RuleOutcome:
    outcomes = [evaluate_rule(child, ctx) for child in rule.children]
    if rule.operator == "and":
        combined = all(outcome.met for outcome in outcomes)
    else:
        combined = any(outcome.met for outcome in outcomes)
    return RuleOutcome(met=combined != rule.negate)


@register_rule_kind("unmeasured")
def _check_unmeasured(rule: UnmeasuredRule, ctx: RuleContext) -> RuleOutcome:
    return RuleOutcome(met=False, measurable=False, reason=f"No {rule.required_data} data source")


# ============================================================================
# Pair Evaluation
# ============================================================================

class GapEvaluator:
    """
    Deterministic gap evaluation engine.

    Evaluates patients against catalog indicators. Output is a pure
    function of (patient, indicator, observations, as_of); nothing is
    cached between calls.
    """

    def __init__(self, catalog: IndicatorCatalog):
        self.catalog = catalog

    def evaluate_pair(
        self,
        patient: PatientRecord,
        indicator: IndicatorDefinition,
        observations: tuple[Observation, ...],
        as_of: date,
    ) -> PairEvaluation:
        """
        Evaluate one patient against one indicator.

        Args:
            patient: Patient record.
            indicator: Indicator to evaluate.
            observations: The patient's observations, newest first.
            as_of: Date ages and recency are measured against.

        Returns:
            PairEvaluation with a GapFinding when the target is unmet.
        """
        if not is_eligible(patient, indicator, as_of):
            return PairEvaluation(
                patient_id=patient.id,
                indicator_code=indicator.code,
                in_cohort=False,
            )

        outcome = evaluate_rule(indicator.threshold, RuleContext(patient, observations, as_of))

        if not outcome.measurable:
            return PairEvaluation(
                patient_id=patient.id,
                indicator_code=indicator.code,
                in_cohort=True,
                insufficient_data=True,
            )

        if outcome.met:
            return PairEvaluation(
                patient_id=patient.id,
                indicator_code=indicator.code,
                in_cohort=True,
                met=True,
            )

        finding = GapFinding(
            patient_id=patient.id,
            patient_display_name=patient.name,
            nhs_number=patient.nhs_number,
            phone_number=patient.phone_number,
            indicator_code=indicator.code,
            indicator_name=indicator.name,
            category_id=indicator.category_id,
            category=self.catalog.category_name(indicator),
            reason=outcome.reason or indicator.gap_reason or f"{indicator.name} target not met",
            priority="high" if outcome.escalate else indicator.priority,
            action_required=indicator.action_required,
        )
        return PairEvaluation(
            patient_id=patient.id,
            indicator_code=indicator.code,
            in_cohort=True,
            met=False,
            finding=finding,
        )

    def evaluate_patient(
        self,
        patient: PatientRecord,
        observations: tuple[Observation, ...],
        as_of: date,
        indicators: list[IndicatorDefinition] | None = None,
    ) -> list[PairEvaluation]:
        """
        Evaluate one patient against every indicator, in catalog order.

        A failure on one pair is logged and recorded on that pair only.
        """
        results = []
        for indicator in indicators if indicators is not None else self.catalog.list_all():
            try:
                results.append(self.evaluate_pair(patient, indicator, observations, as_of))
            except Exception as e:
                logger.exception(
                    "Pair evaluation failed",
                    patient_id=patient.id,
                    indicator=indicator.code,
                )
                results.append(PairEvaluation(
                    patient_id=patient.id,
                    indicator_code=indicator.code,
                    in_cohort=False,
                    error=f"{type(e).__name__}: {e}",
                ))
        return results
