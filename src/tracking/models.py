# src/tracking/models.py - v1
"""Tracking domain models: per-phase archive metrics and their summary."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

MetricPhase = Literal["single", "chunk", "merge"]


class ArchiveMetric(BaseModel):
    """One phase of one generation run."""

    metric_id: str
    timestamp: datetime
    run_id: str
    phase: MetricPhase
    container_id: str
    order_id: str
    archive_kind: str
    files_count: int = 0
    archive_size_bytes: int | None = None
    worker_count: int | None = None
    chunk_index: int | None = None
    duration_ms: int = 0
    bottleneck: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    success: bool = True
    error: str | None = None


class DurationStats(BaseModel):
    avg_ms: int = 0
    p50_ms: int = 0
    p95_ms: int = 0
    p99_ms: int = 0


class SuccessBreakdown(BaseModel):
    single: int = 0
    chunked: int = 0
    fail: int = 0


class GroupStats(BaseModel):
    count: int
    avg_ms: int


class MetricsSummary(BaseModel):
    """Aggregated view over a window of metric records."""

    total_runs: int = 0
    duration: DurationStats = Field(default_factory=DurationStats)
    success_rate: int = 100
    success_breakdown: SuccessBreakdown = Field(default_factory=SuccessBreakdown)
    bottleneck_distribution: dict[str, int] = Field(default_factory=dict)
    by_worker_count: dict[str, GroupStats] = Field(default_factory=dict)
    by_files_bucket: dict[str, GroupStats] = Field(default_factory=dict)
