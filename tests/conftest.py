"""
Shared fixtures for the care-gap engine tests.

Every test evaluates against a fixed AS_OF date so ages and review
recency never depend on the clock.
"""

import itertools
from datetime import date, datetime

import pytest

from qof_engine.models.quality_models import GapFinding, Observation, PatientRecord
from qof_engine.services.gap_evaluator import GapEvaluator, ObservationIndex
from qof_engine.services.indicator_catalog import IndicatorCatalog

AS_OF = date(2025, 6, 1)

_ids = itertools.count(1)


def make_patient(**overrides) -> PatientRecord:
    """Patient aged 60 on AS_OF with no conditions unless overridden."""
    data = {
        "id": f"p{next(_ids)}",
        "name": "Test Patient",
        "date_of_birth": "1965-01-01",
        "conditions": [],
        "medications": [],
    }
    data.update(overrides)
    return PatientRecord.model_validate(data)


def make_observation(patient_id: str, collected_at: datetime | str = "2025-05-01T10:00:00",
                     systolic=None, diastolic=None, smoking_status=None) -> Observation:
    return Observation.model_validate({
        "id": f"o{next(_ids)}",
        "patient_id": patient_id,
        "blood_pressure_systolic": systolic,
        "blood_pressure_diastolic": diastolic,
        "smoking_status": smoking_status,
        "collected_at": collected_at,
    })


def make_finding(patient_id: str, code: str = "HYP008", priority: str = "medium", **overrides) -> GapFinding:
    data = {
        "patient_id": patient_id,
        "patient_display_name": f"Patient {patient_id}",
        "nhs_number": None,
        "phone_number": None,
        "indicator_code": code,
        "indicator_name": f"Indicator {code}",
        "category_id": "hypertension",
        "category": "Hypertension",
        "reason": "BP not recorded",
        "priority": priority,
        "action_required": "BP check and medication review",
    }
    data.update(overrides)
    return GapFinding(**data)


@pytest.fixture(scope="session")
def catalog() -> IndicatorCatalog:
    return IndicatorCatalog()


@pytest.fixture
def evaluator(catalog) -> GapEvaluator:
    return GapEvaluator(catalog)


@pytest.fixture
def evaluate(catalog, evaluator):
    """Evaluate one patient against one indicator code with the given observations."""
    def _evaluate(patient: PatientRecord, code: str, observations=(), as_of: date = AS_OF):
        index = ObservationIndex(list(observations))
        return evaluator.evaluate_pair(patient, catalog.get(code), index.for_patient(patient.id), as_of)
    return _evaluate
