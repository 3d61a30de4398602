"""Tests for cohort selection."""

import pytest
from structlog.testing import capture_logs

from qof_engine.models.quality_models import AgeGroup
from qof_engine.services.cohort_selector import age_in_group, is_eligible, select_cohort

from .conftest import AS_OF, make_patient


@pytest.mark.parametrize(
    "age, group, expected",
    [
        (79, AgeGroup.UNDER_80, True),
        (80, AgeGroup.UNDER_80, False),
        (80, AgeGroup.OVER_80, True),
        (79, AgeGroup.OVER_80, False),
        (40, AgeGroup.FORTY_PLUS, True),
        (39, AgeGroup.FORTY_PLUS, False),
        (5, AgeGroup.ALL, True),
        (None, AgeGroup.ALL, True),
        (None, AgeGroup.UNDER_80, False),
        (None, AgeGroup.OVER_80, False),
        (None, AgeGroup.FORTY_PLUS, False),
    ],
)
def test_age_in_group(age, group, expected):
    assert age_in_group(age, group) is expected


def test_age_band_boundary_uses_birthday(catalog):
    # Turns 80 on 2025-06-02, the day after AS_OF
    patient = make_patient(conditions=["Hypertension"], date_of_birth="1945-06-02")
    assert patient.age_on(AS_OF) == 79
    assert is_eligible(patient, catalog.get("HYP008"), AS_OF)
    assert not is_eligible(patient, catalog.get("HYP009"), AS_OF)


def test_missing_birth_date_only_excludes_age_gated(catalog):
    patient = make_patient(
        conditions=["Hypertension", "Atrial Fibrillation"], date_of_birth=None
    )
    assert not is_eligible(patient, catalog.get("HYP008"), AS_OF)
    assert not is_eligible(patient, catalog.get("HYP009"), AS_OF)
    assert is_eligible(patient, catalog.get("AF007"), AS_OF)


def test_birth_date_after_as_of_is_treated_as_unknown(catalog):
    patient = make_patient(conditions=["Hypertension"], date_of_birth="2030-01-01")
    assert patient.age_on(AS_OF) is None
    assert not is_eligible(patient, catalog.get("HYP008"), AS_OF)
    assert not is_eligible(patient, catalog.get("HYP009"), AS_OF)

    newborn = make_patient(date_of_birth="2025-05-31")
    assert newborn.age_on(AS_OF) == 0


def test_unparseable_birth_date_is_flagged_and_treated_as_unknown(catalog):
    patient = make_patient(conditions=["Hypertension"], date_of_birth="31/31/1950")
    assert patient.date_of_birth is None
    assert patient.date_of_birth_invalid
    assert not is_eligible(patient, catalog.get("HYP008"), AS_OF)


def test_condition_synonyms_are_case_insensitive_substrings(catalog):
    patient = make_patient(conditions=["history of coronary heart disease"])
    assert is_eligible(patient, catalog.get("CHD015"), AS_OF)
    assert is_eligible(patient, catalog.get("CHOL003"), AS_OF)
    assert not is_eligible(patient, catalog.get("HYP008"), AS_OF)


def test_dementia_is_not_a_stroke_cohort_member(catalog):
    patient = make_patient(conditions=["Dementia"])
    assert not is_eligible(patient, catalog.get("STIA014"), AS_OF)
    assert is_eligible(patient, catalog.get("DEM004"), AS_OF)


def test_condition_exclusion(catalog):
    primary = make_patient(conditions=["Type 2 Diabetes"], date_of_birth="1980-01-01")
    secondary = make_patient(conditions=["Type 2 Diabetes", "CHD"], date_of_birth="1980-01-01")
    young = make_patient(conditions=["Type 2 Diabetes"], date_of_birth="1990-01-01")

    dm034 = catalog.get("DM034")
    assert is_eligible(primary, dm034, AS_OF)
    assert not is_eligible(secondary, dm034, AS_OF)
    assert not is_eligible(young, dm034, AS_OF)
    assert is_eligible(secondary, catalog.get("DM035"), AS_OF)


def test_frailty_gates_diabetes_indicators(catalog):
    unrecorded = make_patient(conditions=["Diabetes"])
    mild = make_patient(conditions=["Diabetes"], frailty_status="Mild")
    severe = make_patient(conditions=["Diabetes"], frailty_status="SEVERE")

    dm006, dm012 = catalog.get("DM006"), catalog.get("DM012")
    assert is_eligible(unrecorded, dm006, AS_OF)
    assert is_eligible(mild, dm006, AS_OF)
    assert not is_eligible(severe, dm006, AS_OF)
    assert is_eligible(severe, dm012, AS_OF)
    assert not is_eligible(unrecorded, dm012, AS_OF)


def test_unknown_frailty_value_reads_as_not_recorded():
    patient = make_patient(frailty_status="very wobbly")
    assert patient.frailty_status is None
    assert patient.effective_frailty == "none"


def test_smoking_cohort_requires_any_condition(catalog):
    smok002 = catalog.get("SMOK002")
    assert is_eligible(make_patient(conditions=["Asthma"]), smok002, AS_OF)
    assert not is_eligible(make_patient(conditions=[]), smok002, AS_OF)


def test_unmeasured_indicators_cover_everyone(catalog):
    assert is_eligible(make_patient(date_of_birth=None), catalog.get("OB002"), AS_OF)


def test_select_cohort_keeps_roster_order(catalog):
    a = make_patient(conditions=["Hypertension"])
    b = make_patient(conditions=["Asthma"])
    c = make_patient(conditions=["hypertension"])
    cohort = select_cohort(catalog.get("HYP008"), [a, b, c], AS_OF)
    assert [p.id for p in cohort] == [a.id, c.id]


def test_unknown_age_count_only_includes_otherwise_eligible_patients(catalog):
    patients = [
        make_patient(conditions=["Diabetes"], date_of_birth=None),
        make_patient(conditions=["Diabetes"], date_of_birth=None, frailty_status="severe"),
        make_patient(conditions=["Asthma"], date_of_birth=None),
        make_patient(conditions=["Diabetes"]),
    ]
    with capture_logs() as logs:
        cohort = select_cohort(catalog.get("DM036"), patients, AS_OF)

    assert [p.id for p in cohort] == [patients[3].id]
    entry = next(e for e in logs if e["event"] == "Cohort selected")
    assert entry["excluded_unknown_age"] == 1
    assert entry["cohort_size"] == 1
