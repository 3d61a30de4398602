"""
Snapshot Loader - the engine's single input boundary.

Turns raw roster rows (dicts from the hosting application, or a JSON
file) into a validated, immutable PopulationSnapshot. Rows that cannot be
validated are logged and skipped; the rest of the roster is kept.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from qof_engine.config.logging_config import get_logger
from qof_engine.exceptions import SnapshotError
from qof_engine.models.quality_models import Observation, PatientRecord, PopulationSnapshot

logger = get_logger(__name__)


class SnapshotLoader:
    """Validates roster rows into a PopulationSnapshot."""

    def __init__(self):
        self.skipped_patients: list[str] = []
        self.skipped_observations: list[str] = []

    def _patients(self, rows: Iterable[Any]) -> list[PatientRecord]:
        patients: list[PatientRecord] = []
        seen: set[str] = set()
        for position, row in enumerate(rows):
            ref = str(row.get("id", f"#{position}")) if isinstance(row, dict) else f"#{position}"
            try:
                patient = PatientRecord.model_validate(row)
            except ValidationError as e:
                self.skipped_patients.append(ref)
                logger.warning("Skipping invalid patient record", ref=ref, errors=e.error_count())
                continue
            if patient.id in seen:
                self.skipped_patients.append(ref)
                logger.warning("Skipping duplicate patient record", ref=ref)
                continue
            if patient.date_of_birth_invalid:
                logger.info("Unparseable date of birth; excluded from age-gated indicators", ref=ref)
            seen.add(patient.id)
            patients.append(patient)
        return patients

    def _observations(self, rows: Iterable[Any]) -> list[Observation]:
        observations: list[Observation] = []
        for position, row in enumerate(rows):
            ref = str(row.get("id", f"#{position}")) if isinstance(row, dict) else f"#{position}"
            try:
                observations.append(Observation.model_validate(row))
            except ValidationError as e:
                self.skipped_observations.append(ref)
                logger.warning("Skipping invalid observation", ref=ref, errors=e.error_count())
        return observations

    def from_records(
        self,
        patients: Iterable[Any],
        observations: Iterable[Any] = (),
        fetched_at: datetime | None = None,
    ) -> PopulationSnapshot:
        """
        Build a snapshot from raw rows.

        Args:
            patients: Patient roster rows.
            observations: Observation rows.
            fetched_at: When the rows were fetched (defaults to now).

        Returns:
            Immutable PopulationSnapshot.
        """
        snapshot = PopulationSnapshot(
            patients=tuple(self._patients(patients)),
            observations=tuple(self._observations(observations)),
            fetched_at=fetched_at or datetime.now(),
        )
        logger.info(
            "Snapshot loaded",
            patients=len(snapshot.patients),
            observations=len(snapshot.observations),
            skipped_patients=len(self.skipped_patients),
            skipped_observations=len(self.skipped_observations),
        )
        return snapshot


def load_snapshot(path: str | Path) -> PopulationSnapshot:
    """
    Load a snapshot from a JSON file with "patients" and "observations" arrays.

    Raises:
        SnapshotError: If the file is missing, unreadable or not a snapshot.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except FileNotFoundError as e:
        raise SnapshotError(f"Snapshot file not found: {path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise SnapshotError(f"Cannot read snapshot {path}: {e}") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("patients"), list):
        raise SnapshotError(f"Snapshot {path} must be an object with a 'patients' array")

    observations = payload.get("observations") or []
    if not isinstance(observations, list):
        raise SnapshotError(f"Snapshot {path} 'observations' must be an array")

    return SnapshotLoader().from_records(payload["patients"], observations)
