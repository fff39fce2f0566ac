"""Tests for sync metrics collection."""

from __future__ import annotations

from mailmirror.sync.metrics import DURATION_WINDOW, SyncMetricsCollector


def test_summary_aggregates_runs_and_pages():
    """Counters roll up into the per-user summary."""
    metrics = SyncMetricsCollector()
    metrics.record_run("u1", "completed", 0.5)
    metrics.record_run("u1", "page_applied", 1.5)
    metrics.record_run("u1", "failed", 1.0)
    metrics.record_failure("u1", "history.list failed")
    metrics.record_page("u1", deleted=2)
    metrics.record_fetch("u1", stored=3, missing=1, failed=0)
    metrics.record_embedding_drop("u1")

    summary = metrics.generate_summary("u1")

    assert summary.total_runs == 3
    assert summary.completed_runs == 2
    assert summary.failed_runs == 1
    assert summary.failure_rate == 1 / 3
    assert summary.average_run_seconds == 1.0
    assert summary.pages_applied == 1
    assert summary.messages_deleted == 2
    assert summary.messages_stored == 3
    assert summary.messages_missing == 1
    assert summary.embedding_batches_dropped == 1
    assert summary.last_error == "history.list failed"


def test_users_are_isolated_and_resettable():
    metrics = SyncMetricsCollector()
    metrics.record_run("u1", "completed", 0.1)
    metrics.record_run("u2", "cold_start", 0.1)

    assert metrics.get_counter("runs", "u1") == 1
    assert metrics.generate_summary("u2").cold_starts == 1

    metrics.reset_metrics("u1")
    assert metrics.get_counter("runs", "u1") == 0
    assert metrics.get_counter("runs", "u2") == 1

    metrics.reset_metrics()
    assert metrics.generate_summary("u2").total_runs == 0


def test_run_durations_are_bounded():
    """Only the most recent durations feed the average."""
    metrics = SyncMetricsCollector()
    for _ in range(DURATION_WINDOW):
        metrics.record_run("u1", "completed", 10.0)
    for _ in range(DURATION_WINDOW):
        metrics.record_run("u1", "completed", 1.0)

    summary = metrics.generate_summary("u1")

    assert summary.total_runs == 2 * DURATION_WINDOW
    assert len(summary.run_durations) == DURATION_WINDOW
    assert summary.average_run_seconds == 1.0
    assert summary.generated_at.tzinfo is not None
