#!/usr/bin/env python3
"""
CLI script to run one evaluation pass over a snapshot file and write exports.

Usage:
    python -m qof_engine.scripts.run_pass data/snapshot.json --out exports/
"""

import argparse
import sys
from datetime import date, datetime
from pathlib import Path

from qof_engine.config.logging_config import configure_logging
from qof_engine.exceptions import QualityEngineError
from qof_engine.models.quality_models import FilterSpec
from qof_engine.services.engine import QualityEngine
from qof_engine.services.export_formatter import ExportFormatter, summary_metrics
from qof_engine.services.gap_evaluator import ObservationIndex
from qof_engine.services.snapshot_loader import load_snapshot


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a QOF care-gap evaluation pass")
    parser.add_argument("snapshot", type=Path, help="JSON snapshot with patients and observations")
    parser.add_argument("--out", type=Path, default=Path("exports"), help="Output directory")
    parser.add_argument("--as-of", type=date.fromisoformat, default=None,
                        help="Evaluation date (YYYY-MM-DD), defaults to today")
    parser.add_argument("--indicator", default=None, help="Only export findings for this indicator code")
    parser.add_argument("--category", default=None, help="Only export findings for this category id")
    parser.add_argument("--priority", choices=["high", "medium", "low"], default=None)
    parser.add_argument("--search", default=None, help="Free-text patient filter")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Load the snapshot, evaluate it and write the four exports."""
    args = parse_args(argv)
    configure_logging()

    print(f"📄 Snapshot: {args.snapshot}")
    print(f"📁 Output:   {args.out}")
    print()

    try:
        snapshot = load_snapshot(args.snapshot)
        engine = QualityEngine()
        result = engine.run_pass(snapshot, as_of=args.as_of)

        view = engine.action_list(result).view(FilterSpec(
            indicator_code=args.indicator,
            category_id=args.category,
            priority=args.priority,
            search=args.search,
        ))

        formatter = ExportFormatter()
        stamp = datetime.now()
        paths = [
            formatter.export_findings(view.items, timestamp=stamp).write_to(args.out),
            formatter.export_progress(result.progress, timestamp=stamp).write_to(args.out),
            formatter.export_patient_metrics(
                snapshot.patients, ObservationIndex(snapshot.observations), timestamp=stamp
            ).write_to(args.out),
            formatter.export_summary(
                summary_metrics(result.completeness, list(result.findings), result.overall_score),
                timestamp=stamp,
            ).write_to(args.out),
        ]
    except QualityEngineError as e:
        print(f"❌ Error: {e}")
        return 1

    print("✅ Pass complete!")
    print()
    print("📊 Statistics:")
    print(f"   Patients:          {result.completeness.total_patients}")
    print(f"   Care gaps:         {len(result.findings)} ({len(view)} exported)")
    print(f"   Overall score:     {result.overall_score if result.overall_score is not None else 'n/a'}")
    print(f"   Evaluation errors: {result.error_count}")
    print()
    top_gaps = engine.action_list(result).top_gaps(limit=engine.settings.top_gaps_limit)
    if top_gaps:
        print("🔝 Top gaps:")
        for gap in top_gaps:
            print(f"   {gap.indicator_code:<8} {gap.count:>4} gaps ({gap.high_priority} high)  {gap.indicator_name}")
        print()
    for path in paths:
        print(f"💾 Saved: {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
