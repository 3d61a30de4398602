"""
Export Formatter for findings, progress rollups, per-patient measurements
and summary metrics.

Produces header-labelled delimited text. Fields containing the delimiter,
the quote character or a line break are quoted, with embedded quotes
doubled. Identical input and field selection give identical content; only
the file name carries a date stamp.
"""

import csv
import io
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict

from qof_engine.config.config import get_settings
from qof_engine.config.logging_config import get_logger
from qof_engine.exceptions import ExportError
from qof_engine.models.quality_models import DataCompleteness, GapFinding, IndicatorProgress, PatientRecord
from qof_engine.services.gap_evaluator import (
    ObservationIndex,
    format_value,
    latest_blood_pressure,
    latest_smoking_status,
)

logger = get_logger(__name__)


FINDING_FIELDS: dict[str, str] = {
    "patient_display_name": "Patient_Name",
    "patient_id": "Patient_ID",
    "nhs_number": "NHS_Number",
    "phone_number": "Phone",
    "indicator_code": "Indicator_Code",
    "indicator_name": "Indicator_Name",
    "category": "Category",
    "reason": "Reason",
    "action_required": "Action_Required",
    "priority": "Priority",
}

DEFAULT_FINDING_FIELDS: list[str] = [
    "patient_display_name", "nhs_number", "phone_number", "indicator_code",
    "indicator_name", "category", "reason", "action_required", "priority",
]

PROGRESS_FIELDS: dict[str, str] = {
    "code": "Code",
    "name": "Name",
    "category": "Category",
    "target": "Target",
    "achieved": "Achieved",
    "total": "Total",
    "percent": "Percent",
    "gap": "Gap",
    "status": "Status",
}

PATIENT_METRIC_HEADERS: list[str] = [
    "NHS_Number", "Patient_Name", "BP_Read_Code", "BP_Value",
    "Smoking_Read_Code", "Smoking_Status", "Last_Check_Date",
]

# Read codes stamped on rows where the measurement is on record
BP_READ_CODE = "246."
SMOKING_READ_CODE = "1375."


class ExportResult(BaseModel):
    """A rendered export, not yet written anywhere."""

    model_config = ConfigDict(frozen=True)

    filename: str
    content: str
    row_count: int
    encoding: str = "utf-8"

    def to_bytes(self) -> bytes:
        """
        Encode the content.

        Raises:
            ExportError: If the content cannot be represented in the encoding.
        """
        try:
            return self.content.encode(self.encoding)
        except (UnicodeEncodeError, LookupError) as e:
            raise ExportError(f"Cannot encode {self.filename} as {self.encoding}: {e}") from e

    def write_to(self, directory: str | Path) -> Path:
        """Write the export into a directory and return the file path."""
        path = Path(directory) / self.filename
        data = self.to_bytes()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise ExportError(f"Cannot write {path}: {e}") from e
        logger.info("Export written", path=str(path), rows=self.row_count, bytes=len(data))
        return path


def format_cell(value: Any) -> str:
    """Render one value as export text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def export_filename(prefix: str, timestamp: datetime | None = None) -> str:
    """File name with the export date embedded."""
    stamp = (timestamp or datetime.now()).strftime("%Y-%m-%d")
    return f"{prefix}_{stamp}.csv"


class ExportFormatter:
    """Renders tabular exports with a fixed delimiter and encoding."""

    def __init__(self, delimiter: str | None = None, encoding: str | None = None):
        settings = get_settings()
        self.delimiter = delimiter or settings.export_delimiter
        self.encoding = encoding or settings.export_encoding
        if not isinstance(self.delimiter, str) or len(self.delimiter) != 1:
            raise ExportError(f"Export delimiter must be a single character, got {self.delimiter!r}")

    def render(self, headers: list[str], rows: Iterable[list[Any]]) -> tuple[str, int]:
        """
        Render a header row plus data rows.

        Returns:
            (content, data_row_count)
        """
        buffer = io.StringIO()
        try:
            writer = csv.writer(
                buffer,
                delimiter=self.delimiter,
                quotechar='"',
                doublequote=True,
                quoting=csv.QUOTE_MINIMAL,
                lineterminator="\n",
            )
            writer.writerow(headers)
            count = 0
            for row in rows:
                writer.writerow([format_cell(value) for value in row])
                count += 1
        except (csv.Error, TypeError) as e:
            raise ExportError(f"Cannot render export: {e}") from e
        return buffer.getvalue(), count

    def _result(self, prefix: str, headers: list[str], rows: Iterable[list[Any]],
                timestamp: datetime | None) -> ExportResult:
        content, count = self.render(headers, rows)
        result = ExportResult(
            filename=export_filename(prefix, timestamp),
            content=content,
            row_count=count,
            encoding=self.encoding,
        )
        logger.info("Export rendered", filename=result.filename, rows=count)
        return result

    def export_findings(
        self,
        findings: Iterable[GapFinding],
        fields: list[str] | None = None,
        timestamp: datetime | None = None,
        prefix: str = "qof_actions",
    ) -> ExportResult:
        """
        Export findings, one row each, in the order given.

        Args:
            findings: Findings to export (typically a filtered or selected set).
            fields: Finding fields to include, in column order.
            timestamp: Date stamped into the file name.
            prefix: File name prefix.

        Raises:
            ExportError: On an unknown field name.
        """
        fields = list(fields or DEFAULT_FINDING_FIELDS)
        unknown = [f for f in fields if f not in FINDING_FIELDS]
        if unknown:
            raise ExportError(f"Unknown finding field(s): {', '.join(unknown)}")

        headers = [FINDING_FIELDS[f] for f in fields]
        rows = ([getattr(finding, f) for f in fields] for finding in findings)
        return self._result(prefix, headers, rows, timestamp)

    def export_progress(
        self,
        progress: Iterable[IndicatorProgress],
        timestamp: datetime | None = None,
        prefix: str = "qof_progress_full",
    ) -> ExportResult:
        """Export indicator progress rollups, one row per indicator."""
        headers = list(PROGRESS_FIELDS.values())

        def row(item: IndicatorProgress) -> list[Any]:
            if item.percent is None:
                percent, gap = "Insufficient data", ""
            else:
                percent = f"{item.percent}%"
                gap = f"{item.gap}%" if item.gap else "Met"
            return [
                item.code, item.name, item.category, f"{item.target_percent}%",
                item.achieved, item.total, percent, gap, item.status,
            ]

        return self._result(prefix, headers, (row(item) for item in progress), timestamp)

    def export_patient_metrics(
        self,
        patients: Iterable[PatientRecord],
        index: ObservationIndex,
        timestamp: datetime | None = None,
        prefix: str = "qof_report",
    ) -> ExportResult:
        """
        Export one row per patient with their latest recorded measurements.

        BP and smoking columns carry the read code only when a value is on
        record; the last check date is that of the patient's newest
        observation.
        """
        def row(patient: PatientRecord) -> list[Any]:
            observations = index.for_patient(patient.id)
            bp = latest_blood_pressure(observations)
            smoking = latest_smoking_status(observations)
            return [
                patient.nhs_number,
                patient.name,
                BP_READ_CODE if bp else "",
                f"{format_value(bp.systolic)}/{format_value(bp.diastolic)}" if bp else "",
                SMOKING_READ_CODE if smoking else "",
                smoking,
                observations[0].collected_at.date() if observations else None,
            ]

        return self._result(prefix, PATIENT_METRIC_HEADERS, (row(p) for p in patients), timestamp)

    def export_summary(
        self,
        metrics: Iterable[tuple[str, Any]],
        timestamp: datetime | None = None,
        prefix: str = "analytics_summary",
    ) -> ExportResult:
        """Export (metric, value) pairs, one row per metric."""
        return self._result(prefix, ["Metric", "Value"], ([m, v] for m, v in metrics), timestamp)


def summary_metrics(
    completeness: DataCompleteness,
    findings: list[GapFinding],
    overall_score: int | None = None,
) -> list[tuple[str, Any]]:
    """Summary metric rows for a pass."""
    high = sum(1 for f in findings if f.priority == "high")
    return [
        ("Total Patients", completeness.total_patients),
        ("Patients With Data", completeness.patients_with_data),
        ("Data Completeness", f"{completeness.completeness_percent}%"),
        ("Missing BP Records", completeness.missing_blood_pressure),
        ("Missing Smoking Status", completeness.missing_smoking_status),
        ("No Observation Data", completeness.no_observations),
        ("Care Gaps", len(findings)),
        ("High Priority Care Gaps", high),
        ("Overall QOF Score", "" if overall_score is None else f"{overall_score}%"),
    ]
