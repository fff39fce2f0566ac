"""Metrics collection for mailbox sync runs."""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

# Durations kept per user for the rolling average
DURATION_WINDOW = 100


@dataclass
class SyncMetricsSummary:
    """Aggregated sync metrics for one user."""

    user_id: str
    generated_at: datetime

    total_runs: int = 0
    completed_runs: int = 0
    failed_runs: int = 0
    skipped_runs: int = 0
    cold_starts: int = 0
    reseeds: int = 0
    failure_rate: float = 0.0

    pages_applied: int = 0
    messages_stored: int = 0
    messages_missing: int = 0
    message_fetch_failures: int = 0
    messages_deleted: int = 0

    embedding_batches_dropped: int = 0

    run_durations: List[float] = field(default_factory=list)
    average_run_seconds: float = 0.0
    last_error: Optional[str] = None

    def calculate_rates(self) -> None:
        """Calculate rate-based metrics from raw counts."""
        if self.total_runs > 0:
            self.failure_rate = self.failed_runs / self.total_runs
        if self.run_durations:
            self.average_run_seconds = sum(self.run_durations) / len(self.run_durations)


class SyncMetricsCollector:
    """Thread-safe metrics collector for sync operations."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._durations: Dict[str, Deque[float]] = defaultdict(
            lambda: deque(maxlen=DURATION_WINDOW)
        )
        self._last_error: Dict[str, str] = {}

    # ============================================================================
    # Runs
    # ============================================================================

    def record_run(self, user_id: str, status: str, duration_seconds: float) -> None:
        """Record the terminal status of one orchestrator run."""
        with self._lock:
            counters = self._counters[user_id]
            counters["runs"] += 1
            counters[f"runs_{status}"] += 1
            self._durations[user_id].append(duration_seconds)

    def record_failure(self, user_id: str, error: str) -> None:
        with self._lock:
            self._counters[user_id]["failures"] += 1
            self._last_error[user_id] = error

    def record_page(self, user_id: str, deleted: int = 0) -> None:
        with self._lock:
            counters = self._counters[user_id]
            counters["pages_applied"] += 1
            counters["messages_deleted"] += deleted

    # ============================================================================
    # Fetching and fan-out
    # ============================================================================

    def record_fetch(self, user_id: str, *, stored: int, missing: int, failed: int) -> None:
        with self._lock:
            counters = self._counters[user_id]
            counters["messages_stored"] += stored
            counters["messages_missing"] += missing
            counters["message_fetch_failures"] += failed

    def record_embedding_drop(self, user_id: str) -> None:
        with self._lock:
            self._counters[user_id]["embedding_batches_dropped"] += 1

    # ============================================================================
    # Query and Aggregation
    # ============================================================================

    def get_counter(self, metric_name: str, user_id: str) -> int:
        with self._lock:
            return self._counters[user_id].get(metric_name, 0)

    def generate_summary(self, user_id: str) -> SyncMetricsSummary:
        with self._lock:
            counters = self._counters[user_id]
            summary = SyncMetricsSummary(
                user_id=user_id,
                generated_at=datetime.now(timezone.utc),
                total_runs=counters.get("runs", 0),
                completed_runs=counters.get("runs_completed", 0)
                + counters.get("runs_page_applied", 0),
                failed_runs=counters.get("runs_failed", 0),
                skipped_runs=counters.get("runs_skipped", 0),
                cold_starts=counters.get("runs_cold_start", 0),
                reseeds=counters.get("runs_reseeded", 0),
                pages_applied=counters.get("pages_applied", 0),
                messages_stored=counters.get("messages_stored", 0),
                messages_missing=counters.get("messages_missing", 0),
                message_fetch_failures=counters.get("message_fetch_failures", 0),
                messages_deleted=counters.get("messages_deleted", 0),
                embedding_batches_dropped=counters.get("embedding_batches_dropped", 0),
                run_durations=list(self._durations.get(user_id, [])),
                last_error=self._last_error.get(user_id),
            )
        summary.calculate_rates()
        return summary

    def reset_metrics(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id:
                self._counters.pop(user_id, None)
                self._durations.pop(user_id, None)
                self._last_error.pop(user_id, None)
            else:
                self._counters.clear()
                self._durations.clear()
                self._last_error.clear()


__all__ = ["DURATION_WINDOW", "SyncMetricsCollector", "SyncMetricsSummary"]
