"""
Action List Builder for care-gap findings.

Filtering and selection are explicit values rather than shared state:
a FilterSpec turns the full finding list into a FilteredView, and a
Selection (frozenset of finding keys) is passed in and returned.
"""

from collections import Counter
from typing import Iterable

from qof_engine.config.logging_config import get_logger
from qof_engine.models.quality_models import (
    PRIORITY_ORDER,
    FilteredView,
    FilterSpec,
    FindingKey,
    GapFinding,
    IndicatorGapSummary,
)

logger = get_logger(__name__)

Selection = frozenset[FindingKey]

EMPTY_SELECTION: Selection = frozenset()


def sort_by_priority(findings: Iterable[GapFinding]) -> list[GapFinding]:
    """Stable sort: high, medium, low; discovery order within a tier."""
    return sorted(findings, key=lambda f: PRIORITY_ORDER[f.priority])


def _normalize(text: str) -> str:
    return text.lower().replace(" ", "")


def matches_filter(finding: GapFinding, spec: FilterSpec) -> bool:
    """Check a finding against every restriction in the filter."""
    if spec.indicator_code and finding.indicator_code.upper() != spec.indicator_code.upper():
        return False
    if spec.category_id and finding.category_id != spec.category_id:
        return False
    if spec.priority and finding.priority != spec.priority:
        return False
    if spec.search:
        query = spec.search.strip().lower()
        haystacks = [finding.patient_display_name.lower(), finding.patient_id.lower()]
        if finding.nhs_number:
            haystacks.append(finding.nhs_number.lower())
            # NHS numbers are often written with spaces
            if _normalize(query) in _normalize(finding.nhs_number):
                return True
        if not any(query in haystack for haystack in haystacks):
            return False
    return True


def apply_filter(findings: Iterable[GapFinding], spec: FilterSpec | None = None) -> FilteredView:
    """
    Filter findings and order them by priority.

    Args:
        findings: All findings, in discovery order.
        spec: Filter to apply; None shows everything.

    Returns:
        FilteredView of the visible findings.
    """
    spec = spec or FilterSpec()
    all_findings = list(findings)
    visible = [f for f in all_findings if matches_filter(f, spec)]
    logger.debug(
        "Action list filtered",
        visible=len(visible),
        total=len(all_findings),
        filter=spec.model_dump(exclude_none=True),
    )
    return FilteredView(
        spec=spec,
        items=tuple(sort_by_priority(visible)),
        total_count=len(all_findings),
    )


# ============================================================================
# Selection
# ============================================================================

def toggle(selection: Selection, key: FindingKey) -> Selection:
    """Add the key if absent, remove it if present."""
    if key in selection:
        return selection - {key}
    return selection | {key}


def select_all_visible(selection: Selection, view: FilteredView) -> Selection:
    """
    Select every visible finding, or deselect them if all are already selected.

    Keys outside the view are never added or removed.
    """
    visible = view.keys
    if visible and visible <= selection:
        return selection - visible
    return selection | visible


def clear_visible(selection: Selection, view: FilteredView) -> Selection:
    """Deselect the visible findings only."""
    return selection - view.keys


def selected_findings(findings: Iterable[GapFinding], selection: Selection) -> list[GapFinding]:
    """Findings whose key is selected, in the order given."""
    return [f for f in findings if f.key in selection]


# ============================================================================
# Rollups
# ============================================================================

def top_gaps_by_indicator(findings: Iterable[GapFinding], limit: int | None = 5) -> list[IndicatorGapSummary]:
    """
    Group findings by indicator and rank the groups.

    Ordered by high-priority count, then total count (both descending);
    ties keep first-seen order. Truncated to `limit` when given.
    """
    groups: dict[str, dict] = {}
    for finding in findings:
        group = groups.get(finding.indicator_code)
        if group is None:
            group = groups[finding.indicator_code] = {
                "indicator_code": finding.indicator_code,
                "indicator_name": finding.indicator_name,
                "category": finding.category,
                "count": 0,
                "high_priority": 0,
            }
        group["count"] += 1
        if finding.priority == "high":
            group["high_priority"] += 1

    ranked = sorted(groups.values(), key=lambda g: (-g["high_priority"], -g["count"]))
    if limit is not None:
        ranked = ranked[:limit]
    return [IndicatorGapSummary(**group) for group in ranked]


class ActionList:
    """The findings of one pass, in discovery order."""

    def __init__(self, findings: Iterable[GapFinding]):
        self.findings: tuple[GapFinding, ...] = tuple(findings)

    def view(self, spec: FilterSpec | None = None) -> FilteredView:
        return apply_filter(self.findings, spec)

    def top_gaps(self, limit: int | None = 5, spec: FilterSpec | None = None) -> list[IndicatorGapSummary]:
        """Top-gaps rollup over the (optionally filtered) list."""
        items = self.view(spec).items if spec is not None else self.findings
        return top_gaps_by_indicator(items, limit)

    def priority_counts(self) -> dict[str, int]:
        counts = Counter(f.priority for f in self.findings)
        return {priority: counts.get(priority, 0) for priority in PRIORITY_ORDER}

    def selected(self, selection: Selection) -> list[GapFinding]:
        """Selected findings in priority order."""
        return sort_by_priority(selected_findings(self.findings, selection))

    def __len__(self) -> int:
        return len(self.findings)
