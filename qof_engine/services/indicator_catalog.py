"""
Indicator Catalog for the QOF care-gap engine.

Provides:
- Reporting categories, each indicator linked to exactly one by id
- Indicator definitions as pure data (eligibility predicates + tagged rule)
- Lookup by code, listing by category, listing all

Adding an indicator only requires a new entry in RAW_INDICATORS.
"""

from collections import defaultdict
from typing import Any

from pydantic import ValidationError

from qof_engine.config.logging_config import get_logger
from qof_engine.exceptions import CatalogError
from qof_engine.models.quality_models import IndicatorCategory, IndicatorDefinition

logger = get_logger(__name__)


# ============================================================================
# Synonym Lists
# ============================================================================

CVD_TERMS = ["CHD", "Coronary Heart Disease", "PAD", "Peripheral Arterial Disease", "Stroke", "CVA"]
CVD_WITH_CKD_TERMS = CVD_TERMS + ["CKD", "Chronic Kidney Disease"]
CHD_TERMS = ["CHD", "Coronary Heart Disease", "Ischaemic Heart Disease", "Angina", "Myocardial Infarction"]
# "TIA" is left out: as a substring it also matches "Dementia".
STROKE_TERMS = ["Stroke", "Transient Ischaemic Attack", "Transient Ischemic Attack", "CVA"]
AF_TERMS = ["AF", "Atrial Fibrillation"]
DIABETES_TERMS = ["Diabetes", "T2DM", "T1DM"]
HF_TERMS = ["Heart Failure", "HF", "LVSD"]
SMI_TERMS = ["Schizophrenia", "Bipolar", "Psychosis", "SMI"]

STATIN_TERMS = ["Statin", "Lipid"]
ANTICOAGULANT_TERMS = [
    "Anticoagulant", "DOAC", "Warfarin", "Apixaban", "Rivaroxaban", "Edoxaban", "Dabigatran",
]
DOAC_OR_VKA_TERMS = ["DOAC", "Apixaban", "Rivaroxaban", "Edoxaban", "Dabigatran", "Warfarin"]
ACE_ARB_TERMS = [
    "ACE", "ARB", "Ramipril", "Lisinopril", "Enalapril", "Perindopril",
    "Losartan", "Candesartan", "Valsartan", "Irbesartan",
]
BETA_BLOCKER_TERMS = ["Beta-blocker", "Beta blocker", "Bisoprolol", "Carvedilol", "Nebivolol", "Metoprolol"]

NOT_FRAIL = ["none", "mild"]
FRAIL = ["moderate", "severe"]


def _bp_rule(systolic: int, diastolic: int, target_label: str = "target",
             alert_systolic: int | None = None, alert_diastolic: int | None = None) -> dict[str, Any]:
    return {
        "kind": "numeric-threshold",
        "measure": "blood_pressure",
        "label": "BP",
        "unit": "mmHg",
        "target_label": target_label,
        "bounds": [
            {"component": "systolic", "maximum": systolic, "alert_above": alert_systolic},
            {"component": "diastolic", "maximum": diastolic, "alert_above": alert_diastolic},
        ],
    }


def _on_medication(terms: list[str]) -> dict[str, Any]:
    return {"kind": "substring-any", "field": "medications", "terms": terms}


def _anticoagulation_gap(condition_terms: list[str], medication_terms: list[str]) -> dict[str, Any]:
    # Met unless: qualifying condition AND not anticoagulated AND risk score >= 2
    return {
        "kind": "composite",
        "operator": "and",
        "negate": True,
        "children": [
            {"kind": "substring-any", "field": "conditions", "terms": condition_terms},
            {"kind": "substring-any", "field": "medications", "terms": medication_terms, "negate": True},
            {"kind": "score-at-least", "field": "cha2ds2_vasc_score", "minimum": 2},
        ],
    }


# ============================================================================
# Catalog Data
# ============================================================================

RAW_CATEGORIES: list[dict[str, Any]] = [
    {"id": "cardiovascular", "name": "Cardiovascular"},
    {"id": "hypertension", "name": "Hypertension"},
    {"id": "atrial-fibrillation", "name": "Atrial Fibrillation"},
    {"id": "heart-failure", "name": "Heart Failure"},
    {"id": "diabetes", "name": "Diabetes"},
    {"id": "respiratory", "name": "Respiratory"},
    {"id": "mental-health", "name": "Mental Health"},
    {"id": "smoking", "name": "Smoking"},
    {"id": "lifestyle", "name": "Lifestyle"},
]

RAW_INDICATORS: list[dict[str, Any]] = [
    # Cardiovascular - cholesterol
    {
        "code": "CHOL003",
        "name": "CVD Statin Therapy",
        "category_id": "cardiovascular",
        "description": "Patients with CHD, PAD, stroke/TIA or CKD currently treated with a statin",
        "target_percent": 95,
        "conditions": {"all_of": [CVD_WITH_CKD_TERMS]},
        "threshold": _on_medication(STATIN_TERMS),
        "priority": "high",
        "gap_reason": "CVD patient not on statin therapy",
        "action_required": "Review for statin prescription",
    },
    {
        "code": "CHOL004",
        "name": "CVD LDL Cholesterol Control",
        "category_id": "cardiovascular",
        "description": "Patients with CHD, PAD or stroke/TIA whose latest LDL cholesterol is 2.0 mmol/L or less",
        "target_percent": 80,
        "conditions": {"all_of": [CVD_TERMS]},
        "threshold": {
            "kind": "numeric-threshold",
            "measure": "ldl_cholesterol",
            "label": "LDL cholesterol",
            "unit": "mmol/L",
            "decimals": 1,
            "bounds": [{"component": "value", "maximum": 2.0, "alert_above": 2.5}],
        },
        "priority": "medium",
        "action_required": "Check cholesterol and review treatment",
    },
    # Hypertension
    {
        "code": "HYP008",
        "name": "Hypertension BP Control (under 80)",
        "category_id": "hypertension",
        "description": "Patients with hypertension aged 79 or under whose last BP is 140/90 mmHg or less",
        "target_percent": 77,
        "age_group": "under80",
        "conditions": {"all_of": [["Hypertension"]]},
        "threshold": _bp_rule(140, 90, alert_systolic=160, alert_diastolic=100),
        "priority": "medium",
        "action_required": "BP check and medication review",
    },
    {
        "code": "HYP009",
        "name": "Hypertension BP Control (80 and over)",
        "category_id": "hypertension",
        "description": "Patients with hypertension aged 80 or over whose last BP is 150/90 mmHg or less",
        "target_percent": 80,
        "age_group": "over80",
        "conditions": {"all_of": [["Hypertension"]]},
        "threshold": _bp_rule(150, 90, alert_systolic=170, alert_diastolic=100),
        "priority": "medium",
        "action_required": "BP check and medication review",
    },
    # CHD
    {
        "code": "CHD015",
        "name": "CHD BP Control (under 80)",
        "category_id": "cardiovascular",
        "description": "Patients with CHD aged 79 or under whose last BP is 140/90 mmHg or less",
        "target_percent": 77,
        "age_group": "under80",
        "conditions": {"all_of": [CHD_TERMS]},
        "threshold": _bp_rule(140, 90, target_label="CHD target"),
        "priority": "high",
        "action_required": "BP check - CHD patient",
    },
    {
        "code": "CHD016",
        "name": "CHD BP Control (80 and over)",
        "category_id": "cardiovascular",
        "description": "Patients with CHD aged 80 or over whose last BP is 150/90 mmHg or less",
        "target_percent": 80,
        "age_group": "over80",
        "conditions": {"all_of": [CHD_TERMS]},
        "threshold": _bp_rule(150, 90, target_label="CHD target"),
        "priority": "high",
        "action_required": "BP check - elderly CHD patient",
    },
    # Stroke / TIA
    {
        "code": "STIA014",
        "name": "Stroke/TIA BP Control (under 80)",
        "category_id": "cardiovascular",
        "description": "Patients with stroke or TIA aged 79 or under whose last BP is 140/90 mmHg or less",
        "target_percent": 77,
        "age_group": "under80",
        "conditions": {"all_of": [STROKE_TERMS]},
        "threshold": _bp_rule(140, 90, target_label="Stroke target"),
        "priority": "high",
        "action_required": "BP check - Stroke/TIA patient",
    },
    {
        "code": "STIA015",
        "name": "Stroke/TIA BP Control (80 and over)",
        "category_id": "cardiovascular",
        "description": "Patients with stroke or TIA aged 80 or over whose last BP is 150/90 mmHg or less",
        "target_percent": 80,
        "age_group": "over80",
        "conditions": {"all_of": [STROKE_TERMS]},
        "threshold": _bp_rule(150, 90, target_label="Stroke target"),
        "priority": "high",
        "action_required": "BP check - elderly Stroke/TIA patient",
    },
    # Atrial fibrillation
    {
        "code": "AF007",
        "name": "AF Anticoagulation",
        "category_id": "atrial-fibrillation",
        "description": "Patients with AF and a CHA2DS2-VASc score of 2 or more treated with anticoagulation",
        "target_percent": 95,
        "conditions": {"all_of": [AF_TERMS]},
        "threshold": _anticoagulation_gap(AF_TERMS, ANTICOAGULANT_TERMS),
        "priority": "high",
        "gap_reason": "qualifying AF with elevated risk score, not on anticoagulation",
        "action_required": "Review for anticoagulation therapy",
    },
    {
        "code": "AF008",
        "name": "AF DOAC or Vitamin K Antagonist",
        "category_id": "atrial-fibrillation",
        "description": "Patients with AF and a CHA2DS2-VASc score of 2 or more on a DOAC or vitamin K antagonist",
        "target_percent": 95,
        "conditions": {"all_of": [AF_TERMS]},
        "threshold": _anticoagulation_gap(AF_TERMS, DOAC_OR_VKA_TERMS),
        "priority": "high",
        "gap_reason": "AF patient not on DOAC/Warfarin",
        "action_required": "Prescribe DOAC or Vitamin K antagonist",
    },
    # Diabetes
    {
        "code": "DM006",
        "name": "Diabetes HbA1c Control",
        "category_id": "diabetes",
        "description": "Patients with diabetes without moderate or severe frailty whose last HbA1c is 58 mmol/mol or less",
        "target_percent": 75,
        "conditions": {"all_of": [DIABETES_TERMS]},
        "allowed_frailty": NOT_FRAIL,
        "threshold": {
            "kind": "numeric-threshold",
            "measure": "hba1c",
            "label": "HbA1c",
            "unit": "mmol/mol",
            "bounds": [{"component": "value", "maximum": 58, "alert_above": 75}],
        },
        "priority": "medium",
        "action_required": "HbA1c check and diabetes review",
    },
    {
        "code": "DM012",
        "name": "Diabetes HbA1c Control (frail)",
        "category_id": "diabetes",
        "description": "Patients with diabetes and moderate or severe frailty whose last HbA1c is 75 mmol/mol or less",
        "target_percent": 75,
        "conditions": {"all_of": [DIABETES_TERMS]},
        "allowed_frailty": FRAIL,
        "threshold": {
            "kind": "numeric-threshold",
            "measure": "hba1c",
            "label": "HbA1c",
            "unit": "mmol/mol",
            "target_label": "frail target",
            "bounds": [{"component": "value", "maximum": 75}],
        },
        "priority": "medium",
        "action_required": "HbA1c check - frail diabetes patient",
    },
    {
        "code": "DM034",
        "name": "Diabetes Primary Prevention Statin",
        "category_id": "diabetes",
        "description": "Patients with diabetes aged 40 or over, without CVD, treated with a statin",
        "target_percent": 80,
        "age_group": "40plus",
        "conditions": {"all_of": [DIABETES_TERMS], "exclude": CVD_TERMS + ["CVD"]},
        "threshold": _on_medication(["Statin"]),
        "priority": "medium",
        "gap_reason": "Diabetes patient 40+ not on statin (no CVD history)",
        "action_required": "Review for statin prescription",
    },
    {
        "code": "DM035",
        "name": "Diabetes Secondary Prevention Statin",
        "category_id": "diabetes",
        "description": "Patients with diabetes and CVD treated with a statin",
        "target_percent": 90,
        "conditions": {"all_of": [DIABETES_TERMS, CVD_TERMS + ["CVD"]]},
        "threshold": _on_medication(["Statin"]),
        "priority": "high",
        "gap_reason": "Diabetes + CVD patient not on statin",
        "action_required": "Review for statin prescription",
    },
    {
        "code": "DM036",
        "name": "Diabetes BP Control",
        "category_id": "diabetes",
        "description": "Patients with diabetes aged 79 or under, without moderate or severe frailty, whose last BP is 140/90 mmHg or less",
        "target_percent": 70,
        "age_group": "under80",
        "conditions": {"all_of": [DIABETES_TERMS]},
        "allowed_frailty": NOT_FRAIL,
        "threshold": _bp_rule(140, 90, target_label="DM target"),
        "priority": "high",
        "action_required": "BP check - diabetes patient",
    },
    # Respiratory
    {
        "code": "AST007",
        "name": "Asthma Annual Review",
        "category_id": "respiratory",
        "description": "Patients with asthma reviewed in the preceding 12 months",
        "target_percent": 70,
        "conditions": {"all_of": [["Asthma"]]},
        "threshold": {
            "kind": "recency",
            "field": "last_review_date",
            "within_months": 12,
            "missing_reason": "No asthma review recorded",
        },
        "priority": "medium",
        "action_required": "Book asthma review",
    },
    {
        "code": "COPD010",
        "name": "COPD FEV1 Recording",
        "category_id": "respiratory",
        "description": "Patients with COPD with an FEV1 recorded in the preceding 12 months",
        "target_percent": 70,
        "conditions": {"all_of": [["COPD", "Chronic Obstructive"]]},
        "threshold": {
            "kind": "recency",
            "field": "last_review_date",
            "within_months": 12,
            "missing_reason": "FEV1 not recorded in past 12 months",
            "stale_reason": "FEV1 not recorded in past 12 months",
        },
        "priority": "medium",
        "action_required": "Book COPD review with spirometry",
    },
    # Mental health
    {
        "code": "MH002",
        "name": "SMI Care Plan",
        "category_id": "mental-health",
        "description": "Patients with schizophrenia, bipolar disorder or other psychoses with a comprehensive care plan",
        "target_percent": 90,
        "conditions": {"all_of": [SMI_TERMS]},
        "threshold": {
            "kind": "presence",
            "field": "last_review_date",
            "missing_reason": "No comprehensive care plan recorded",
        },
        "priority": "high",
        "action_required": "Create SMI care plan",
    },
    {
        "code": "DEM004",
        "name": "Dementia Annual Review",
        "category_id": "mental-health",
        "description": "Patients with dementia whose care plan has been reviewed in the preceding 12 months",
        "target_percent": 70,
        "conditions": {"all_of": [["Dementia", "Alzheimer"]]},
        "threshold": {
            "kind": "recency",
            "field": "last_review_date",
            "within_months": 12,
            "missing_reason": "No dementia review recorded",
        },
        "priority": "medium",
        "action_required": "Book dementia review (include carer support)",
    },
    # Heart failure
    {
        "code": "HF003",
        "name": "Heart Failure ACE-I/ARB",
        "category_id": "heart-failure",
        "description": "Patients with heart failure due to LVSD treated with an ACE-I or ARB",
        "target_percent": 80,
        "conditions": {"all_of": [HF_TERMS]},
        "threshold": _on_medication(ACE_ARB_TERMS),
        "priority": "high",
        "gap_reason": "Heart failure patient not on ACE-I or ARB",
        "action_required": "Review for ACE-I/ARB prescription",
    },
    {
        "code": "HF006",
        "name": "Heart Failure Beta-blocker",
        "category_id": "heart-failure",
        "description": "Patients with heart failure due to LVSD treated with a beta-blocker",
        "target_percent": 80,
        "conditions": {"all_of": [HF_TERMS]},
        "threshold": _on_medication(BETA_BLOCKER_TERMS),
        "priority": "high",
        "gap_reason": "Heart failure patient not on beta-blocker",
        "action_required": "Review for beta-blocker prescription",
    },
    # Smoking
    {
        "code": "SMOK002",
        "name": "Smoking Status Recording",
        "category_id": "smoking",
        "description": "Patients with a long-term condition whose smoking status has been recorded",
        "target_percent": 90,
        "conditions": {"any_recorded": True},
        "threshold": {
            "kind": "presence",
            "field": "smoking_status",
            "missing_reason": "Long-term condition patient - smoking status not recorded",
        },
        "priority": "low",
        "action_required": "Record smoking status",
    },
    # Lifestyle (no data source supplied to the engine)
    {
        "code": "OB002",
        "name": "BMI Recording",
        "category_id": "lifestyle",
        "description": "Adult patients with BMI recorded in the last 12 months",
        "target_percent": 75,
        "conditions": {},
        "threshold": {"kind": "unmeasured", "required_data": "BMI"},
        "priority": "low",
        "action_required": "Record BMI",
    },
    {
        "code": "ALC001",
        "name": "Alcohol Screening",
        "category_id": "lifestyle",
        "description": "Patients screened for alcohol consumption",
        "target_percent": 70,
        "conditions": {},
        "threshold": {"kind": "unmeasured", "required_data": "alcohol consumption"},
        "priority": "low",
        "action_required": "Complete alcohol screening",
    },
]


class IndicatorCatalog:
    """
    Validated, read-only view of the indicator corpus.

    Malformed entries are skipped at load (and logged); the rest of the
    catalog remains usable.
    """

    def __init__(
        self,
        raw_indicators: list[dict[str, Any]] | None = None,
        raw_categories: list[dict[str, Any]] | None = None,
    ):
        """
        Initialize the catalog.

        Args:
            raw_indicators: Indicator entries. If None, uses RAW_INDICATORS.
            raw_categories: Category entries. If None, uses RAW_CATEGORIES.
        """
        self._categories: dict[str, IndicatorCategory] = {}
        self._indicators: dict[str, IndicatorDefinition] = {}
        self.skipped: list[str] = []

        for raw in RAW_CATEGORIES if raw_categories is None else raw_categories:
            try:
                category = IndicatorCategory.model_validate(raw)
            except ValidationError as e:
                logger.warning("Skipping malformed category", entry=str(raw)[:100], error=str(e))
                continue
            self._categories[category.id] = category

        for raw in RAW_INDICATORS if raw_indicators is None else raw_indicators:
            try:
                indicator = self._load_indicator(raw)
            except CatalogError as e:
                self.skipped.append(str(raw.get("code", "?")) if isinstance(raw, dict) else "?")
                logger.warning("Skipping malformed indicator", error=str(e))
                continue
            self._indicators[indicator.code.upper()] = indicator

        self._by_category: dict[str, list[IndicatorDefinition]] = defaultdict(list)
        for indicator in self._indicators.values():
            self._by_category[indicator.category_id].append(indicator)

        logger.info(
            "Indicator catalog loaded",
            indicator_count=len(self._indicators),
            category_count=len(self._categories),
            skipped=len(self.skipped),
        )

    def _load_indicator(self, raw: Any) -> IndicatorDefinition:
        """Validate one raw entry against the model and the loaded catalog."""
        if not isinstance(raw, dict):
            raise CatalogError(f"Indicator entry must be a mapping, got {type(raw).__name__}")
        try:
            indicator = IndicatorDefinition.model_validate(raw)
        except ValidationError as e:
            raise CatalogError(
                f"Invalid indicator {raw.get('code', '?')}: {e.error_count()} validation error(s)"
            ) from e
        if indicator.code.upper() in self._indicators:
            raise CatalogError(f"Duplicate indicator code {indicator.code}")
        if indicator.category_id not in self._categories:
            raise CatalogError(
                f"Indicator {indicator.code} references unknown category {indicator.category_id}"
            )
        return indicator

    def get(self, code: str) -> IndicatorDefinition | None:
        """Get an indicator by code (case-insensitive)."""
        return self._indicators.get(code.upper())

    def list_all(self) -> list[IndicatorDefinition]:
        """All indicators in catalog order."""
        return list(self._indicators.values())

    def list_by_category(self, category_id: str) -> list[IndicatorDefinition]:
        """All indicators linked to a category, in catalog order."""
        return list(self._by_category.get(category_id, []))

    def categories(self) -> list[IndicatorCategory]:
        """All categories in catalog order."""
        return list(self._categories.values())

    def get_category(self, category_id: str) -> IndicatorCategory | None:
        return self._categories.get(category_id)

    def category_name(self, indicator: IndicatorDefinition) -> str:
        """Display name of the indicator's category."""
        return self._categories[indicator.category_id].name

    def __len__(self) -> int:
        return len(self._indicators)

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and code.upper() in self._indicators


# Singleton instance
_catalog_instance: IndicatorCatalog | None = None


def get_indicator_catalog() -> IndicatorCatalog:
    """Get the singleton indicator catalog instance."""
    global _catalog_instance
    if _catalog_instance is None:
        _catalog_instance = IndicatorCatalog()
    return _catalog_instance
