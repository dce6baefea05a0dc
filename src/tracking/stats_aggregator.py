# src/tracking/stats_aggregator.py - v1
"""Metrics summary for bottleneck analysis.

Records are grouped by run; a run's total duration is the sum of its
phases. A run counts as chunked when any phase is not "single".
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime

from chunkzip.tracking.models import (
    ArchiveMetric,
    DurationStats,
    GroupStats,
    MetricsSummary,
    SuccessBreakdown,
)


def percentile(sorted_values: list[int], p: float) -> int:
    """Nearest-rank percentile over an ascending list (0 for empty)."""
    if not sorted_values:
        return 0
    idx = math.ceil((p / 100) * len(sorted_values)) - 1
    return sorted_values[max(0, idx)]


def files_bucket(files_count: int) -> str:
    if files_count < 100:
        return "<100"
    if files_count < 500:
        return "100-500"
    return "500+"


def _group(values: dict[str, list[int]]) -> dict[str, GroupStats]:
    return {
        key: GroupStats(count=len(v), avg_ms=round(sum(v) / len(v)))
        for key, v in values.items()
        if v
    }


def summarize_metrics(
    records: Iterable[ArchiveMetric],
    since: datetime | None = None,
    until: datetime | None = None,
) -> MetricsSummary:
    """Aggregate metric records into a MetricsSummary.

    Args:
        records: Metric records (any order).
        since: Ignore records older than this.
        until: Ignore records newer than this.

    Returns:
        MetricsSummary over the selected window.
    """
    by_run: dict[str, list[ArchiveMetric]] = defaultdict(list)
    for record in records:
        if since is not None and record.timestamp < since:
            continue
        if until is not None and record.timestamp > until:
            continue
        by_run[record.run_id or "unknown"].append(record)

    totals: list[int] = []
    breakdown = SuccessBreakdown()
    bottlenecks: dict[str, int] = defaultdict(int)
    by_workers: dict[str, list[int]] = defaultdict(list)
    by_files: dict[str, list[int]] = defaultdict(list)

    for phases in by_run.values():
        totals.append(sum(p.duration_ms for p in phases))
        any_success = any(p.success for p in phases)
        any_chunked = any(p.phase != "single" for p in phases)
        if any_success:
            if any_chunked:
                breakdown.chunked += 1
            else:
                breakdown.single += 1
        else:
            breakdown.fail += 1

        for p in phases:
            bottlenecks[p.bottleneck or "none"] += 1
            if p.worker_count is not None:
                by_workers[str(p.worker_count)].append(p.duration_ms)
            by_files[files_bucket(p.files_count)].append(p.duration_ms)

    totals.sort()
    run_count = len(by_run)
    return MetricsSummary(
        total_runs=run_count,
        duration=DurationStats(
            avg_ms=round(sum(totals) / len(totals)) if totals else 0,
            p50_ms=percentile(totals, 50),
            p95_ms=percentile(totals, 95),
            p99_ms=percentile(totals, 99),
        ),
        success_rate=(
            round(100 * (breakdown.single + breakdown.chunked) / run_count)
            if run_count else 100
        ),
        success_breakdown=breakdown,
        bottleneck_distribution=dict(bottlenecks),
        by_worker_count=_group(by_workers),
        by_files_bucket=_group(by_files),
    )
