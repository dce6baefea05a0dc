# src/tracking/metrics.py - v1
"""Archive metrics recording, one record per pipeline phase.

Records accumulate in memory and, when a path is configured, are appended
to a JSON Lines file for post-run analysis.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from chunkzip.core.models import OrderKey
from chunkzip.tracking.models import ArchiveMetric

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """Accumulates ArchiveMetric records during a process lifetime."""

    def __init__(self, path: Path | None = None) -> None:
        self._records: list[ArchiveMetric] = []
        self._path = Path(path).expanduser() if path else None

    def record(
        self,
        order_key: OrderKey,
        run_id: str,
        phase: str,
        duration_ms: int,
        success: bool = True,
        error: str | None = None,
        **fields: Any,
    ) -> ArchiveMetric:
        """Record one phase outcome.

        Args:
            order_key: Order the phase worked on.
            run_id: Run identifier ("single-..." for the single path).
            phase: "single", "chunk" or "merge".
            duration_ms: Wall time of the phase.
            success: Whether the phase completed.
            error: Error message when it did not.
            **fields: Optional ArchiveMetric fields (files_count, bottleneck...).

        Returns:
            The recorded ArchiveMetric.
        """
        metric = ArchiveMetric(
            metric_id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc),
            run_id=run_id,
            phase=phase,  # type: ignore[arg-type]
            container_id=order_key.container_id,
            order_id=order_key.order_id,
            archive_kind=order_key.archive_kind,
            duration_ms=duration_ms,
            success=success,
            error=error,
            **fields,
        )
        self._records.append(metric)
        if self._path is not None:
            self._append(metric)
        return metric

    def _append(self, metric: ArchiveMetric) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)  # type: ignore[union-attr]
            with self._path.open("a", encoding="utf-8") as f:  # type: ignore[union-attr]
                f.write(metric.model_dump_json() + "\n")
        except OSError as e:
            logger.warning("Failed to persist metric %s: %s", metric.metric_id, e)

    @property
    def records(self) -> list[ArchiveMetric]:
        """All recorded metrics."""
        return list(self._records)


def load_metrics(path: Path) -> list[ArchiveMetric]:
    """Load metrics from a JSON Lines file; malformed lines are skipped."""
    path = Path(path).expanduser()
    if not path.exists():
        return []
    metrics: list[ArchiveMetric] = []
    for line_no, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        if not line.strip():
            continue
        try:
            metrics.append(ArchiveMetric(**json.loads(line)))
        except (ValueError, TypeError) as e:
            logger.warning("Skipping malformed metric at %s:%d: %s", path, line_no, e)
    return metrics
