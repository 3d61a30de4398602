"""
Quality Engine for QOF care-gap evaluation.

Main orchestrator for one evaluation pass:
1. Takes a single immutable PopulationSnapshot (fetched once, up front)
2. Evaluates every (patient, indicator) pair, optionally across threads
3. Rolls the grid up into findings, progress, scores and completeness

All decisions are deterministic. Nothing is cached between passes and
nothing is written until the caller exports.
"""

import contextvars
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from uuid import uuid4

from qof_engine.config.config import Settings, get_settings
from qof_engine.config.logging_config import bind_pass_context, clear_pass_context, get_logger
from qof_engine.models.quality_models import EvaluationPass, PairEvaluation, PopulationSnapshot
from qof_engine.services.action_list import ActionList
from qof_engine.services.gap_evaluator import GapEvaluator, ObservationIndex
from qof_engine.services.indicator_catalog import IndicatorCatalog, get_indicator_catalog
from qof_engine.services.progress_aggregator import ProgressAggregator

logger = get_logger(__name__)


class QualityEngine:
    """
    Evaluates population snapshots against the indicator catalog.

    The catalog and snapshot are read-only during a pass, so the patient
    grid can be spread across worker threads without shared mutable state.
    """

    def __init__(
        self,
        catalog: IndicatorCatalog | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the engine.

        Args:
            catalog: Indicator catalog. If None, uses the singleton.
            settings: Engine settings. If None, uses cached settings.
        """
        self.settings = settings or get_settings()
        self.catalog = catalog or get_indicator_catalog()
        self.evaluator = GapEvaluator(self.catalog)
        self.aggregator = ProgressAggregator(self.catalog, self.settings.status_warning_band)

        logger.info(
            "Quality engine initialized",
            app=self.settings.app_name,
            version=self.settings.app_version,
            environment=self.settings.environment,
            config=self.settings.get_safe_config_dict(),
        )

    def _evaluate_grid(
        self,
        snapshot: PopulationSnapshot,
        index: ObservationIndex,
        as_of: date,
    ) -> list[PairEvaluation]:
        """Evaluate every patient against every indicator, roster-major order."""
        indicators = self.catalog.list_all()

        def evaluate(patient):
            return self.evaluator.evaluate_patient(patient, index.for_patient(patient.id), as_of, indicators)

        workers = self.settings.evaluation_workers
        if workers > 1 and len(snapshot.patients) > 1:
            # Each task runs in a copy of the caller's context, pass_id and as_of included
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="qof-eval") as executor:
                futures = [
                    executor.submit(contextvars.copy_context().run, evaluate, patient)
                    for patient in snapshot.patients
                ]
                per_patient = [future.result() for future in futures]
        else:
            per_patient = [evaluate(patient) for patient in snapshot.patients]

        return [evaluation for results in per_patient for evaluation in results]

    def run_pass(self, snapshot: PopulationSnapshot, as_of: date | None = None) -> EvaluationPass:
        """
        Run one evaluation pass.

        Args:
            snapshot: Immutable population snapshot.
            as_of: Date ages and recency are measured against (defaults to today).

        Returns:
            EvaluationPass with findings, progress, scores and completeness.
        """
        as_of = as_of or date.today()
        pass_id = str(uuid4())
        start_time = time.perf_counter()

        bind_pass_context(pass_id=pass_id, as_of=as_of.isoformat())
        try:
            logger.info(
                "Evaluation pass starting",
                patients=len(snapshot.patients),
                observations=len(snapshot.observations),
                indicators=len(self.catalog),
                workers=self.settings.evaluation_workers,
            )

            index = ObservationIndex(snapshot.observations)
            evaluations = self._evaluate_grid(snapshot, index, as_of)
            findings = [e.finding for e in evaluations if e.finding is not None]

            progress = self.aggregator.all_progress(evaluations)
            result = EvaluationPass(
                pass_id=pass_id,
                as_of=as_of,
                evaluations=tuple(evaluations),
                findings=tuple(findings),
                progress=tuple(progress),
                category_scores=tuple(self.aggregator.category_scores(progress)),
                overall_score=self.aggregator.overall_score(progress),
                completeness=self.aggregator.data_completeness(snapshot.patients, index),
                error_count=sum(1 for e in evaluations if e.error is not None),
            )

            logger.info(
                "Evaluation pass complete",
                pairs=len(evaluations),
                findings=len(findings),
                high_priority=sum(1 for f in findings if f.priority == "high"),
                errors=result.error_count,
                processing_time_ms=int((time.perf_counter() - start_time) * 1000),
            )
            return result
        finally:
            clear_pass_context()

    @staticmethod
    def action_list(result: EvaluationPass) -> ActionList:
        """Action list over a pass's findings."""
        return ActionList(result.findings)


# Singleton instance
_engine_instance: QualityEngine | None = None


def get_quality_engine() -> QualityEngine:
    """Get the singleton quality engine instance."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = QualityEngine()
    return _engine_instance
