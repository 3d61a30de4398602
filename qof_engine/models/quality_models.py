"""
Pydantic models for the QOF care-gap engine.

This module defines the structured representation of patient snapshots,
indicator definitions and their tagged threshold rules, gap findings,
progress rollups, and action-list views.
"""

import math
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, NamedTuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


Priority = Literal["high", "medium", "low"]

PRIORITY_ORDER: dict[str, int] = {"high": 0, "medium": 1, "low": 2}

FrailtyStatus = Literal["none", "mild", "moderate", "severe"]

FRAILTY_STATUSES: tuple[str, ...] = ("none", "mild", "moderate", "severe")


class AgeGroup(str, Enum):
    """Age bands an indicator may be restricted to."""
    ALL = "all"
    UNDER_80 = "under80"
    OVER_80 = "over80"
    FORTY_PLUS = "40plus"


class ProgressStatus(str, Enum):
    """Achievement status of an indicator against its target."""
    GOOD = "good"
    WARNING = "warning"
    POOR = "poor"
    INSUFFICIENT_DATA = "insufficient_data"


def _parse_date(value: Any) -> date | None:
    """Parse a date or ISO date/datetime string; None when unparseable."""
    if value is None or isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text).date()
        except ValueError:
            return None
    return None


def _parse_number(value: Any) -> float | None:
    """Coerce a lab/score value to a finite float; None when absent or unparseable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


# ============================================================================
# Population Snapshot
# ============================================================================

class PatientRecord(BaseModel):
    """A single patient's clinical record as supplied by the roster."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Patient identifier")
    name: str = Field(default="", description="Display name")
    nhs_number: str | None = Field(default=None, description="NHS number")
    phone_number: str | None = Field(default=None, description="Contact number")
    date_of_birth: date | None = Field(default=None, description="Date of birth")
    date_of_birth_invalid: bool = Field(
        default=False,
        description="True when a birth date was supplied but could not be parsed"
    )
    conditions: list[str] = Field(default_factory=list, description="Condition labels")
    medications: list[str] = Field(default_factory=list, description="Medication labels")
    hba1c_mmol_mol: float | None = Field(default=None, description="Latest HbA1c (mmol/mol)")
    hba1c_date: date | None = Field(default=None, description="HbA1c collection date")
    cholesterol_ldl: float | None = Field(default=None, description="Latest LDL (mmol/L)")
    cholesterol_hdl: float | None = Field(default=None, description="Latest HDL (mmol/L)")
    cholesterol_date: date | None = Field(default=None, description="Cholesterol collection date")
    frailty_status: FrailtyStatus | None = Field(default=None, description="Frailty status")
    cha2ds2_vasc_score: float | None = Field(default=None, description="Stroke-risk score")
    last_review_date: date | None = Field(default=None, description="Last condition review")

    @model_validator(mode="before")
    @classmethod
    def parse_birth_date(cls, data: Any) -> Any:
        """Fold an unparseable birth date into None plus an invalid marker."""
        if not isinstance(data, dict) or "date_of_birth" not in data:
            return data
        raw = data["date_of_birth"]
        parsed = _parse_date(raw)
        data = dict(data)
        data["date_of_birth"] = parsed
        if parsed is None and raw not in (None, ""):
            data["date_of_birth_invalid"] = True
        return data

    @field_validator("conditions", "medications", mode="before")
    @classmethod
    def clean_labels(cls, v: Any) -> list[str]:
        """Accept None and drop blank labels."""
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(item).strip() for item in v if item is not None and str(item).strip()]

    @field_validator("hba1c_mmol_mol", "cholesterol_ldl", "cholesterol_hdl", "cha2ds2_vasc_score", mode="before")
    @classmethod
    def lenient_number(cls, v: Any) -> float | None:
        return _parse_number(v)

    @field_validator("hba1c_date", "cholesterol_date", "last_review_date", mode="before")
    @classmethod
    def lenient_date(cls, v: Any) -> date | None:
        return _parse_date(v)

    @field_validator("frailty_status", mode="before")
    @classmethod
    def normalize_frailty(cls, v: Any) -> str | None:
        """Lower-case known statuses; anything else is treated as not recorded."""
        if v is None:
            return None
        text = str(v).strip().lower()
        return text if text in FRAILTY_STATUSES else None

    @property
    def effective_frailty(self) -> str:
        """Frailty status with a missing value read as 'none'."""
        return self.frailty_status or "none"

    def age_on(self, as_of: date) -> int | None:
        """Whole years between date of birth and as_of; None if unknown or born after as_of."""
        if self.date_of_birth is None:
            return None
        dob = self.date_of_birth
        years = as_of.year - dob.year
        if (as_of.month, as_of.day) < (dob.month, dob.day):
            years -= 1
        return years if years >= 0 else None


class Observation(BaseModel):
    """A collected observation set (e.g. from a patient call)."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Observation identifier")
    patient_id: str = Field(..., min_length=1, description="Patient reference")
    blood_pressure_systolic: float | None = Field(default=None, description="Systolic BP (mmHg)")
    blood_pressure_diastolic: float | None = Field(default=None, description="Diastolic BP (mmHg)")
    smoking_status: str | None = Field(default=None, description="Recorded smoking status")
    collected_at: datetime = Field(..., description="Collection timestamp")

    @field_validator("blood_pressure_systolic", "blood_pressure_diastolic", mode="before")
    @classmethod
    def lenient_number(cls, v: Any) -> float | None:
        return _parse_number(v)

    @field_validator("smoking_status", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> str | None:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("collected_at")
    @classmethod
    def naive_utc(cls, v: datetime) -> datetime:
        """Store timestamps as naive UTC so recency ordering never mixes kinds."""
        if v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @property
    def has_blood_pressure(self) -> bool:
        return self.blood_pressure_systolic is not None and self.blood_pressure_diastolic is not None


class PopulationSnapshot(BaseModel):
    """Immutable input for one evaluation pass."""

    model_config = ConfigDict(frozen=True)

    patients: tuple[PatientRecord, ...] = Field(default=(), description="Patient roster")
    observations: tuple[Observation, ...] = Field(default=(), description="Observation roster")
    fetched_at: datetime | None = Field(default=None, description="When the snapshot was fetched")


# ============================================================================
# Threshold Rules (tagged on `kind`)
# ============================================================================

class SubstringAnyRule(BaseModel):
    """Met when any patient label contains any of the terms (case-insensitive)."""
    kind: Literal["substring-any"] = "substring-any"
    field: Literal["conditions", "medications"] = Field(..., description="Label list to search")
    terms: list[str] = Field(..., min_length=1, description="Synonym terms")
    negate: bool = Field(default=False, description="Met when nothing matches instead")


class Bound(BaseModel):
    """Upper target for one component of a measured value."""
    component: str = Field(..., description="Component name (e.g. 'systolic')")
    maximum: float = Field(..., description="Highest value that still meets the target")
    alert_above: float | None = Field(
        default=None, description="Safety threshold that escalates priority to high"
    )


class NumericThresholdRule(BaseModel):
    """Met when the latest measured value is within every bound."""
    kind: Literal["numeric-threshold"] = "numeric-threshold"
    measure: Literal["blood_pressure", "hba1c", "ldl_cholesterol"] = Field(
        ..., description="Which measurement to resolve"
    )
    bounds: list[Bound] = Field(..., min_length=1, description="Per-component bounds")
    label: str = Field(..., description="Short label used in reasons (e.g. 'BP')")
    unit: str = Field(..., description="Unit used in reasons (e.g. 'mmHg')")
    target_label: str = Field(default="target", description="Target wording in reasons")
    decimals: int | None = Field(
        default=None, ge=0, le=3, description="Minimum decimals when rendering values"
    )
    missing_reason: str | None = Field(default=None, description="Reason when not recorded")


class ScoreAtLeastRule(BaseModel):
    """Met when a patient score is recorded and at least `minimum`."""
    kind: Literal["score-at-least"] = "score-at-least"
    field: Literal["cha2ds2_vasc_score"] = Field(..., description="Score field")
    minimum: float = Field(..., description="Minimum score")


class PresenceRule(BaseModel):
    """Met when the field has been recorded at all."""
    kind: Literal["presence"] = "presence"
    field: Literal["smoking_status", "last_review_date"] = Field(..., description="Field to check")
    missing_reason: str = Field(..., description="Reason when absent")


class RecencyRule(BaseModel):
    """Met when a dated field falls within the last `within_months`."""
    kind: Literal["recency"] = "recency"
    field: Literal["last_review_date"] = Field(..., description="Dated field")
    within_months: int = Field(..., ge=1, description="Maximum age of the record")
    missing_reason: str = Field(..., description="Reason when never recorded")
    stale_reason: str | None = Field(
        default=None, description="Reason when out of date; defaults to 'Last review N months ago'"
    )


class CompositeRule(BaseModel):
    """Logic node - combines child rules with AND/OR."""
    kind: Literal["composite"] = "composite"
    operator: Literal["and", "or"] = Field(..., description="Logical operator")
    children: list["ThresholdRule"] = Field(..., min_length=1, description="Child rules")
    negate: bool = Field(default=False, description="Invert the combined result")


class UnmeasuredRule(BaseModel):
    """The engine receives no data source for this indicator."""
    kind: Literal["unmeasured"] = "unmeasured"
    required_data: str = Field(..., description="What data would be needed")


ThresholdRule = Annotated[
    Union[
        SubstringAnyRule,
        NumericThresholdRule,
        ScoreAtLeastRule,
        PresenceRule,
        RecencyRule,
        CompositeRule,
        UnmeasuredRule,
    ],
    Field(discriminator="kind"),
]

CompositeRule.model_rebuild()


# ============================================================================
# Eligibility Predicates
# ============================================================================

def labels_match(labels: list[str], terms: list[str]) -> bool:
    """Case-insensitive substring containment, OR-combined across terms."""
    lowered = [label.lower() for label in labels]
    return any(term.lower() in label for term in terms for label in lowered)


class ConditionPredicate(BaseModel):
    """Condition-based eligibility: every group must match, no exclusion may."""
    all_of: list[list[str]] = Field(
        default_factory=list, description="Synonym groups, each OR-combined"
    )
    exclude: list[str] = Field(default_factory=list, description="Disqualifying synonyms")
    any_recorded: bool = Field(
        default=False, description="Require at least one recorded condition"
    )

    def matches(self, patient: PatientRecord) -> bool:
        if self.any_recorded and not patient.conditions:
            return False
        if not all(labels_match(patient.conditions, group) for group in self.all_of):
            return False
        return not (self.exclude and labels_match(patient.conditions, self.exclude))


class MedicationPredicate(BaseModel):
    """Medication-based eligibility."""
    any_of: list[str] = Field(default_factory=list, description="Required medication synonyms")
    exclude: list[str] = Field(default_factory=list, description="Disqualifying synonyms")

    def matches(self, patient: PatientRecord) -> bool:
        if self.any_of and not labels_match(patient.medications, self.any_of):
            return False
        return not (self.exclude and labels_match(patient.medications, self.exclude))


# ============================================================================
# Indicator Catalog
# ============================================================================

class IndicatorCategory(BaseModel):
    """A reporting category grouping indicators."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Category identifier")
    name: str = Field(..., min_length=1, description="Display name")


class IndicatorDefinition(BaseModel):
    """Structured representation of a single quality indicator."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., min_length=1, description="Indicator code (e.g. 'HYP008')")
    name: str = Field(..., min_length=1, description="Indicator name")
    category_id: str = Field(..., min_length=1, description="Owning category")
    description: str = Field(..., description="Human description")
    target_percent: int = Field(..., ge=0, le=100, description="Achievement target")
    age_group: AgeGroup = Field(default=AgeGroup.ALL, description="Age band")
    conditions: ConditionPredicate = Field(..., description="Condition eligibility")
    medications: MedicationPredicate | None = Field(
        default=None, description="Optional medication eligibility"
    )
    allowed_frailty: list[FrailtyStatus] | None = Field(
        default=None, description="Frailty statuses in the cohort (missing reads as 'none')"
    )
    threshold: ThresholdRule = Field(..., description="Achievement rule")
    priority: Priority = Field(default="medium", description="Base priority of a gap")
    gap_reason: str | None = Field(
        default=None, description="Reason text for rules without a measured value"
    )
    action_required: str = Field(..., description="Remediation text")

    @property
    def is_age_gated(self) -> bool:
        return self.age_group != AgeGroup.ALL

    @property
    def is_measurable(self) -> bool:
        return self.threshold.kind != "unmeasured"


# ============================================================================
# Evaluation Results
# ============================================================================

class FindingKey(NamedTuple):
    """Stable composite key of a finding."""
    patient_id: str
    indicator_code: str


class GapFinding(BaseModel):
    """A per-patient, per-indicator unmet target."""

    model_config = ConfigDict(frozen=True)

    patient_id: str
    patient_display_name: str
    nhs_number: str | None = None
    phone_number: str | None = None
    indicator_code: str
    indicator_name: str
    category_id: str
    category: str
    reason: str
    priority: Priority
    action_required: str

    @property
    def key(self) -> FindingKey:
        return FindingKey(self.patient_id, self.indicator_code)


class RuleOutcome(BaseModel):
    """Result of applying one threshold rule."""
    met: bool
    reason: str | None = None
    escalate: bool = False
    measurable: bool = True


class PairEvaluation(BaseModel):
    """Outcome for one (patient, indicator) pair."""

    model_config = ConfigDict(frozen=True)

    patient_id: str
    indicator_code: str
    in_cohort: bool
    met: bool = False
    insufficient_data: bool = False
    finding: GapFinding | None = None
    error: str | None = None


class IndicatorProgress(BaseModel):
    """Achievement rollup for one indicator."""

    model_config = ConfigDict(frozen=True)

    code: str
    name: str
    category_id: str
    category: str
    target_percent: int = Field(..., ge=0, le=100)
    achieved: int = Field(..., ge=0)
    total: int = Field(..., ge=0)
    percent: int | None = Field(default=None, ge=0, le=100)
    gap: int | None = Field(default=None, ge=0, le=100)
    status: ProgressStatus
    points_earned: int | None = Field(default=None, ge=0, le=100)


class CategoryScore(BaseModel):
    """Unweighted mean of member indicator percentages."""

    model_config = ConfigDict(frozen=True)

    category_id: str
    name: str
    score: int | None = Field(default=None, ge=0, le=100)
    indicator_count: int = Field(..., ge=0)
    measured_count: int = Field(..., ge=0)


class DataCompleteness(BaseModel):
    """Roster-level data capture summary."""

    model_config = ConfigDict(frozen=True)

    total_patients: int = 0
    patients_with_data: int = 0
    completeness_percent: int = Field(default=0, ge=0, le=100)
    missing_blood_pressure: int = 0
    missing_smoking_status: int = 0
    no_observations: int = 0


# ============================================================================
# Action List
# ============================================================================

class FilterSpec(BaseModel):
    """Explicit filter over the finding list ('None' means no restriction)."""

    model_config = ConfigDict(frozen=True)

    indicator_code: str | None = Field(default=None, description="Exact indicator code")
    category_id: str | None = Field(default=None, description="Category identifier")
    priority: Priority | None = Field(default=None, description="Priority tier")
    search: str | None = Field(
        default=None, description="Free text matched against name, id and NHS number"
    )

    @field_validator("indicator_code", "category_id", "priority", "search", mode="before")
    @classmethod
    def all_means_none(cls, v: Any) -> Any:
        """Treat blank values and the 'all' sentinel as no restriction."""
        if isinstance(v, str) and (not v.strip() or v.strip().lower() == "all"):
            return None
        return v


class FilteredView(BaseModel):
    """The findings visible under a filter, in priority order."""

    model_config = ConfigDict(frozen=True)

    spec: FilterSpec
    items: tuple[GapFinding, ...] = ()
    total_count: int = Field(default=0, ge=0, description="Findings before filtering")

    @property
    def keys(self) -> frozenset[FindingKey]:
        return frozenset(item.key for item in self.items)

    def __len__(self) -> int:
        return len(self.items)


class IndicatorGapSummary(BaseModel):
    """Finding counts for one indicator in the top-gaps rollup."""

    model_config = ConfigDict(frozen=True)

    indicator_code: str
    indicator_name: str
    category: str
    count: int
    high_priority: int


# ============================================================================
# Evaluation Pass
# ============================================================================

class EvaluationPass(BaseModel):
    """Everything one pass over a snapshot produced."""

    model_config = ConfigDict(frozen=True)

    pass_id: str = Field(..., description="Unique pass identifier")
    as_of: date = Field(..., description="Date ages and recency were measured against")
    evaluations: tuple[PairEvaluation, ...] = Field(default=(), description="Full evaluation grid")
    findings: tuple[GapFinding, ...] = Field(default=(), description="Findings in discovery order")
    progress: tuple[IndicatorProgress, ...] = Field(default=(), description="Per-indicator rollups")
    category_scores: tuple[CategoryScore, ...] = Field(default=(), description="Per-category scores")
    overall_score: int | None = Field(default=None, ge=0, le=100, description="Mean points earned")
    completeness: DataCompleteness = Field(
        default_factory=DataCompleteness, description="Roster data capture summary"
    )
    error_count: int = Field(default=0, ge=0, description="Pairs that failed to evaluate")
