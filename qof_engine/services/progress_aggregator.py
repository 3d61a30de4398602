"""
Progress Aggregator for QOF indicators.

Rolls per-pair evaluations up into indicator progress, category scores,
an overall score, and a roster data-completeness summary.

Category scores are the unweighted arithmetic mean of member indicator
percentages, so an indicator with a cohort of 3 counts as much as one
with a cohort of 300.
"""

from collections import defaultdict

from qof_engine.config.logging_config import get_logger
from qof_engine.models.quality_models import (
    CategoryScore,
    DataCompleteness,
    IndicatorDefinition,
    IndicatorProgress,
    PairEvaluation,
    PatientRecord,
    ProgressStatus,
)
from qof_engine.services.gap_evaluator import ObservationIndex, latest_blood_pressure, latest_smoking_status
from qof_engine.services.indicator_catalog import IndicatorCatalog

logger = get_logger(__name__)

DEFAULT_WARNING_BAND = 20


def round_half_up(numerator: int, denominator: int) -> int:
    """Round numerator/denominator to the nearest integer, halves rounding up."""
    return (2 * numerator + denominator) // (2 * denominator)


def calculate_progress(
    achieved: int,
    total: int,
    target_percent: int,
    warning_band: int = DEFAULT_WARNING_BAND,
) -> tuple[int, int, ProgressStatus, int]:
    """
    Compute achievement figures for one indicator.

    An empty cohort divides by 1 and reports 0%.

    Returns:
        (percent, gap, status, points_earned)
    """
    divisor = total if total > 0 else 1
    percent = round_half_up(achieved * 100, divisor) if total > 0 else 0
    percent = min(max(percent, 0), 100)
    gap = max(0, target_percent - percent)

    if percent >= target_percent:
        status = ProgressStatus.GOOD
    elif percent >= target_percent - warning_band:
        status = ProgressStatus.WARNING
    else:
        status = ProgressStatus.POOR

    return percent, gap, status, min(percent, target_percent)


class ProgressAggregator:
    """Rollups over one pass's evaluation grid."""

    def __init__(self, catalog: IndicatorCatalog, warning_band: int = DEFAULT_WARNING_BAND):
        self.catalog = catalog
        self.warning_band = warning_band

    def indicator_progress(
        self,
        indicator: IndicatorDefinition,
        evaluations: list[PairEvaluation],
    ) -> IndicatorProgress:
        """
        Roll up one indicator.

        Args:
            indicator: The indicator.
            evaluations: Pair evaluations for this indicator (any patients).

        Returns:
            IndicatorProgress; insufficient_data when the indicator has no data source.
        """
        cohort = [e for e in evaluations if e.in_cohort and e.indicator_code == indicator.code]
        total = len(cohort)
        category = self.catalog.category_name(indicator)

        if not indicator.is_measurable:
            return IndicatorProgress(
                code=indicator.code,
                name=indicator.name,
                category_id=indicator.category_id,
                category=category,
                target_percent=indicator.target_percent,
                achieved=0,
                total=total,
                status=ProgressStatus.INSUFFICIENT_DATA,
            )

        achieved = sum(1 for e in cohort if e.met)
        percent, gap, status, points = calculate_progress(
            achieved, total, indicator.target_percent, self.warning_band
        )
        return IndicatorProgress(
            code=indicator.code,
            name=indicator.name,
            category_id=indicator.category_id,
            category=category,
            target_percent=indicator.target_percent,
            achieved=achieved,
            total=total,
            percent=percent,
            gap=gap,
            status=status,
            points_earned=points,
        )

    def all_progress(self, evaluations: list[PairEvaluation]) -> list[IndicatorProgress]:
        """Progress for every catalog indicator, in catalog order."""
        by_code: dict[str, list[PairEvaluation]] = defaultdict(list)
        for evaluation in evaluations:
            by_code[evaluation.indicator_code].append(evaluation)
        return [
            self.indicator_progress(indicator, by_code.get(indicator.code, []))
            for indicator in self.catalog.list_all()
        ]

    def category_scores(self, progress: list[IndicatorProgress]) -> list[CategoryScore]:
        """
        Unweighted mean percentage per category.

        Indicators with insufficient data are left out of the mean; a
        category with no measured indicator scores None.
        """
        by_category: dict[str, list[IndicatorProgress]] = defaultdict(list)
        for item in progress:
            by_category[item.category_id].append(item)

        scores = []
        for category in self.catalog.categories():
            members = by_category.get(category.id, [])
            if not members:
                continue
            measured = [m.percent for m in members if m.percent is not None]
            score = round_half_up(sum(measured), len(measured)) if measured else None
            scores.append(CategoryScore(
                category_id=category.id,
                name=category.name,
                score=score,
                indicator_count=len(members),
                measured_count=len(measured),
            ))
        return scores

    @staticmethod
    def overall_score(progress: list[IndicatorProgress]) -> int | None:
        """Mean points earned (percent capped at target) across measured indicators."""
        points = [p.points_earned for p in progress if p.points_earned is not None]
        if not points:
            return None
        return round_half_up(sum(points), len(points))

    @staticmethod
    def data_completeness(
        patients: list[PatientRecord] | tuple[PatientRecord, ...],
        index: ObservationIndex,
    ) -> DataCompleteness:
        """Roster coverage of observations, blood pressure and smoking status."""
        total = len(patients)
        with_data = missing_bp = missing_smoking = 0
        for patient in patients:
            observations = index.for_patient(patient.id)
            if observations:
                with_data += 1
            if latest_blood_pressure(observations) is None:
                missing_bp += 1
            if latest_smoking_status(observations) is None:
                missing_smoking += 1

        summary = DataCompleteness(
            total_patients=total,
            patients_with_data=with_data,
            completeness_percent=round_half_up(with_data * 100, total) if total else 0,
            missing_blood_pressure=missing_bp,
            missing_smoking_status=missing_smoking,
            no_observations=total - with_data,
        )
        logger.debug("Data completeness computed", **summary.model_dump())
        return summary
