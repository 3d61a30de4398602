"""Tests for rule handlers and pair evaluation."""

from datetime import date, datetime, timedelta, timezone

import pytest

from qof_engine.models.quality_models import CompositeRule
from qof_engine.services.gap_evaluator import (
    RULE_HANDLERS,
    ObservationIndex,
    RuleContext,
    evaluate_rule,
    format_value,
    latest_blood_pressure,
    months_between,
)

from .conftest import AS_OF, make_observation, make_patient


# ============================================================================
# Blood pressure
# ============================================================================

def test_elderly_hypertensive_above_target(evaluate):
    patient = make_patient(conditions=["Hypertension"], date_of_birth="1943-01-15")
    obs = make_observation(patient.id, systolic=160, diastolic=95)

    assert not evaluate(patient, "HYP008", [obs]).in_cohort

    result = evaluate(patient, "HYP009", [obs])
    assert result.in_cohort and not result.met
    assert "160/95 mmHg (target ≤150/90)" in result.finding.reason
    assert result.finding.reason == "BP 160/95 mmHg (target ≤150/90)"
    assert result.finding.priority == "medium"


def test_bp_above_alert_level_escalates(evaluate):
    patient = make_patient(conditions=["Hypertension"], date_of_birth="1943-01-15")
    obs = make_observation(patient.id, systolic=160, diastolic=101)

    result = evaluate(patient, "HYP009", [obs])
    assert result.finding.priority == "high"


def test_bp_at_target_is_met(evaluate):
    patient = make_patient(conditions=["Hypertension"])
    obs = make_observation(patient.id, systolic=140, diastolic=90)

    result = evaluate(patient, "HYP008", [obs])
    assert result.met
    assert result.finding is None


def test_latest_complete_bp_reading_is_used(evaluate):
    patient = make_patient(conditions=["Hypertension"])
    observations = [
        make_observation(patient.id, "2025-05-01T09:00:00", systolic=150, diastolic=95),
        make_observation(patient.id, "2025-01-01T09:00:00", systolic=130, diastolic=80),
        # newest, but only one component recorded
        make_observation(patient.id, "2025-05-20T09:00:00", systolic=120),
    ]

    result = evaluate(patient, "HYP008", observations)
    assert result.finding.reason == "BP 150/95 mmHg (target ≤140/90)"
    assert result.finding.priority == "medium"


def test_missing_bp_is_a_gap_not_an_error(evaluate):
    patient = make_patient(conditions=["Hypertension"])
    result = evaluate(patient, "HYP008", [make_observation(patient.id, smoking_status="Never")])

    assert result.error is None
    assert result.finding.reason == "BP not recorded"
    assert result.finding.priority == "medium"


def test_chd_gap_is_always_high_priority(evaluate):
    patient = make_patient(conditions=["CHD"])
    obs = make_observation(patient.id, systolic=142, diastolic=85)

    result = evaluate(patient, "CHD015", [obs])
    assert result.finding.reason == "BP 142/85 mmHg (CHD target ≤140/90)"
    assert result.finding.priority == "high"


def test_mixed_timezone_timestamps_order_correctly():
    aware = make_observation("p", datetime(2025, 5, 1, 12, 0, tzinfo=timezone(timedelta(hours=2))),
                             systolic=150, diastolic=95)
    naive = make_observation("p", datetime(2025, 5, 1, 11, 0), systolic=130, diastolic=80)

    index = ObservationIndex([aware, naive])
    # 12:00+02:00 is 10:00 UTC, earlier than the naive 11:00 reading
    assert latest_blood_pressure(index.for_patient("p")) == (130, 80)


# ============================================================================
# Lab values
# ============================================================================

def test_ldl_reason_uses_one_decimal(evaluate):
    patient = make_patient(conditions=["Coronary Heart Disease"], cholesterol_ldl=2.3)

    result = evaluate(patient, "CHOL004")
    assert result.finding.reason == "LDL cholesterol 2.3 mmol/L (target ≤2.0)"
    assert result.finding.priority == "medium"


def test_ldl_reason_never_rounds_the_observed_value(evaluate):
    patient = make_patient(conditions=["CHD"], cholesterol_ldl=2.04)

    result = evaluate(patient, "CHOL004")
    assert not result.met
    assert result.finding.reason == "LDL cholesterol 2.04 mmol/L (target ≤2.0)"


def test_ldl_far_above_target_escalates(evaluate):
    patient = make_patient(conditions=["Coronary Heart Disease"], cholesterol_ldl="2.8")
    assert evaluate(patient, "CHOL004").finding.priority == "high"


def test_ldl_not_recorded(evaluate):
    patient = make_patient(conditions=["PAD"])
    assert evaluate(patient, "CHOL004").finding.reason == "LDL cholesterol not recorded"


def test_hba1c_thresholds(evaluate):
    high = make_patient(conditions=["Diabetes"], hba1c_mmol_mol=80)
    result = evaluate(high, "DM006")
    assert result.finding.reason == "HbA1c 80 mmol/mol (target ≤58)"
    assert result.finding.priority == "high"

    frail = make_patient(conditions=["Diabetes"], hba1c_mmol_mol=70, frailty_status="moderate")
    assert not evaluate(frail, "DM006").in_cohort
    assert evaluate(frail, "DM012").met


# ============================================================================
# Medication and composite rules
# ============================================================================

def test_af_with_elevated_score_and_no_anticoagulant(evaluate):
    patient = make_patient(conditions=["Atrial Fibrillation"], cha2ds2_vasc_score=3)

    result = evaluate(patient, "AF007")
    assert result.in_cohort and not result.met
    assert result.finding.reason == "qualifying AF with elevated risk score, not on anticoagulation"
    assert result.finding.priority == "high"


@pytest.mark.parametrize(
    "overrides",
    [
        {"cha2ds2_vasc_score": 3, "medications": ["Apixaban 5mg"]},
        {"cha2ds2_vasc_score": 1},
        {"cha2ds2_vasc_score": None},
    ],
)
def test_af_without_gap(evaluate, overrides):
    patient = make_patient(conditions=["AF"], **overrides)
    result = evaluate(patient, "AF007")
    assert result.in_cohort
    assert result.met


def test_statin_gap_uses_indicator_reason(evaluate):
    patient = make_patient(conditions=["Stroke"])
    result = evaluate(patient, "CHOL003")
    assert result.finding.reason == "CVD patient not on statin therapy"

    treated = make_patient(conditions=["Stroke"], medications=["Atorvastatin 20mg"])
    assert evaluate(treated, "CHOL003").met


def test_composite_or_and_negation():
    rule = CompositeRule.model_validate({
        "kind": "composite",
        "operator": "or",
        "children": [
            {"kind": "substring-any", "field": "conditions", "terms": ["Asthma"]},
            {"kind": "score-at-least", "field": "cha2ds2_vasc_score", "minimum": 2},
        ],
    })
    asthmatic = RuleContext(make_patient(conditions=["Asthma"]), (), AS_OF)
    neither = RuleContext(make_patient(), (), AS_OF)

    assert evaluate_rule(rule, asthmatic).met
    assert not evaluate_rule(rule, neither).met

    negated = rule.model_copy(update={"negate": True})
    assert not evaluate_rule(negated, asthmatic).met


# ============================================================================
# Presence and recency
# ============================================================================

def test_smoking_status_gap_is_low_priority(evaluate):
    patient = make_patient(conditions=["Asthma"])

    result = evaluate(patient, "SMOK002")
    assert result.finding.reason == "Long-term condition patient - smoking status not recorded"
    assert result.finding.priority == "low"

    recorded = make_observation(patient.id, smoking_status="Ex-smoker")
    assert evaluate(patient, "SMOK002", [recorded]).met


def test_blank_smoking_status_is_not_recorded(evaluate):
    patient = make_patient(conditions=["COPD"])
    blank = make_observation(patient.id, smoking_status="   ")
    assert not evaluate(patient, "SMOK002", [blank]).met


def test_care_plan_presence(evaluate):
    patient = make_patient(conditions=["Bipolar disorder"])
    result = evaluate(patient, "MH002")
    assert result.finding.reason == "No comprehensive care plan recorded"
    assert result.finding.priority == "high"


def test_review_recency(evaluate):
    stale = make_patient(conditions=["Asthma"], last_review_date="2024-01-10")
    assert evaluate(stale, "AST007").finding.reason == "Last review 16 months ago"

    recent = make_patient(conditions=["Asthma"], last_review_date="2025-01-01")
    assert evaluate(recent, "AST007").met

    never = make_patient(conditions=["Asthma"])
    assert evaluate(never, "AST007").finding.reason == "No asthma review recorded"


def test_review_exactly_twelve_months_ago_is_due(evaluate):
    patient = make_patient(conditions=["COPD"], last_review_date="2024-06-01")
    assert evaluate(patient, "COPD010").finding.reason == "FEV1 not recorded in past 12 months"


@pytest.mark.parametrize(
    "earlier, later, expected",
    [
        (date(2024, 6, 1), date(2025, 6, 1), 12),
        (date(2024, 1, 10), date(2025, 6, 1), 16),
        (date(2025, 5, 31), date(2025, 6, 1), 0),
        (date(2025, 7, 1), date(2025, 6, 1), 0),
    ],
)
def test_months_between(earlier, later, expected):
    assert months_between(earlier, later) == expected


def test_format_value():
    assert format_value(160.0) == "160"
    assert format_value(2.35) == "2.35"
    assert format_value(2.0, decimals=1) == "2.0"
    assert format_value(2.04, decimals=1) == "2.04"
    assert format_value(3, decimals=1) == "3.0"


# ============================================================================
# Unmeasured indicators and whole-patient evaluation
# ============================================================================

def test_unmeasured_indicator_reports_insufficient_data(evaluate):
    result = evaluate(make_patient(), "OB002")
    assert result.in_cohort
    assert result.insufficient_data
    assert not result.met
    assert result.finding is None


def test_evaluate_patient_covers_catalog_in_order(catalog, evaluator):
    patient = make_patient(conditions=["Hypertension"])
    results = evaluator.evaluate_patient(patient, (), AS_OF)

    assert [r.indicator_code for r in results] == [i.code for i in catalog.list_all()]
    gaps = [r.indicator_code for r in results if r.finding is not None]
    assert gaps == ["HYP008", "SMOK002"]


def test_evaluation_is_deterministic(evaluator):
    patient = make_patient(
        conditions=["Hypertension", "Diabetes", "AF"],
        hba1c_mmol_mol=64,
        cha2ds2_vasc_score=4,
    )
    observations = ObservationIndex([
        make_observation(patient.id, systolic=150, diastolic=85),
    ]).for_patient(patient.id)

    first = evaluator.evaluate_patient(patient, observations, AS_OF)
    second = evaluator.evaluate_patient(patient, observations, AS_OF)
    assert first == second


def test_failing_rule_is_isolated_to_its_pair(evaluator, monkeypatch):
    def boom(rule, ctx):
        raise RuntimeError("handler exploded")

    monkeypatch.setitem(RULE_HANDLERS, "presence", boom)
    patient = make_patient(conditions=["Asthma"])

    results = {r.indicator_code: r for r in evaluator.evaluate_patient(patient, (), AS_OF)}

    assert results["SMOK002"].error == "RuntimeError: handler exploded"
    assert results["SMOK002"].finding is None
    assert results["AST007"].finding.reason == "No asthma review recorded"
    assert [code for code, r in results.items() if r.error] == ["SMOK002"]
