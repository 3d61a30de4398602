"""
Cohort Selector for QOF indicators.

Provides deterministic eligibility checks of patient records against an
indicator's condition, medication, age and frailty predicates.
"""

from datetime import date

from qof_engine.config.logging_config import get_logger
from qof_engine.models.quality_models import AgeGroup, IndicatorDefinition, PatientRecord

logger = get_logger(__name__)


def age_in_group(age: int | None, age_group: AgeGroup) -> bool:
    """
    Check if an age falls in an indicator's age band.

    An unknown age only satisfies the unrestricted band.
    """
    if age_group == AgeGroup.ALL:
        return True
    if age is None:
        return False
    if age_group == AgeGroup.UNDER_80:
        return age <= 79
    if age_group == AgeGroup.OVER_80:
        return age >= 80
    if age_group == AgeGroup.FORTY_PLUS:
        return age >= 40
    return False


def matches_clinical_predicates(patient: PatientRecord, indicator: IndicatorDefinition) -> bool:
    """Condition, medication and frailty predicates (everything except age)."""
    if not indicator.conditions.matches(patient):
        return False

    if indicator.medications is not None and not indicator.medications.matches(patient):
        return False

    if indicator.allowed_frailty is not None and patient.effective_frailty not in indicator.allowed_frailty:
        return False

    return True


def is_eligible(patient: PatientRecord, indicator: IndicatorDefinition, as_of: date) -> bool:
    """
    Check whether a patient belongs to an indicator's cohort.

    Args:
        patient: Patient record from the snapshot.
        indicator: Indicator whose predicates apply.
        as_of: Date ages are derived against.

    Returns:
        True when every predicate on the indicator matches.
    """
    if not matches_clinical_predicates(patient, indicator):
        return False

    if indicator.is_age_gated:
        # Missing or unparseable birth dates fall out of age-gated cohorts only
        return age_in_group(patient.age_on(as_of), indicator.age_group)

    return True


def select_cohort(
    indicator: IndicatorDefinition,
    patients: list[PatientRecord] | tuple[PatientRecord, ...],
    as_of: date,
) -> list[PatientRecord]:
    """
    Select the patients eligible for an indicator, in roster order.

    Args:
        indicator: Indicator to select for.
        patients: Patient roster.
        as_of: Date ages are derived against.

    Returns:
        Eligible patients.
    """
    cohort = [patient for patient in patients if is_eligible(patient, indicator, as_of)]

    excluded_for_age = 0
    if indicator.is_age_gated:
        excluded_for_age = sum(
            1 for patient in patients
            if patient.age_on(as_of) is None and matches_clinical_predicates(patient, indicator)
        )

    logger.debug(
        "Cohort selected",
        indicator=indicator.code,
        cohort_size=len(cohort),
        roster_size=len(patients),
        excluded_unknown_age=excluded_for_age,
    )
    return cohort
