"""
Unit tests for metrics module.

Tests cover:
- Counter increment (single-threaded and multi-threaded)
- Drop reason tracking
- Histogram recording and statistics
- Snapshot and reset functionality
- Thread safety
"""

import logging
import threading
import time

import pytest

from cyphy_core.metrics import MetricsCollector, get_metrics, reset_metrics


class TestMetricsCollectorBasic:
    """Tests for basic metrics collector functionality."""

    def test_initialization(self):
        """Standard counters start at 0, unknown counters read as 0."""
        collector = MetricsCollector()

        assert collector.get_counter('tdoa_updates') == 0
        assert collector.get_counter('mpc_solves') == 0
        assert collector.get_counter('unknown_counter') == 0

    def test_increment_counter(self):
        collector = MetricsCollector()

        collector.increment('tdoa_updates')
        assert collector.get_counter('tdoa_updates') == 1

        collector.increment('tdoa_updates', 5)
        assert collector.get_counter('tdoa_updates') == 6

    def test_increment_drop_with_valid_reason(self):
        collector = MetricsCollector()

        collector.increment_drop('outlier')
        assert collector.get_counter('events_dropped') == 1
        assert collector.get_drop_count('outlier') == 1

    def test_increment_drop_unknown_reason(self, caplog):
        """Unknown reasons log a warning but are still counted."""
        collector = MetricsCollector()

        with caplog.at_level(logging.WARNING, logger='cyphy_core.metrics.counters'):
            collector.increment_drop('unknown_reason')

        assert 'unknown_reason' in caplog.text
        assert collector.get_counter('events_dropped') == 1
        assert collector.get_drop_count('unknown_reason') == 1

    def test_multiple_drop_reasons(self):
        collector = MetricsCollector()

        collector.increment_drop('invalid_anchor', 3)
        collector.increment_drop('outlier', 5)
        collector.increment_drop('solver_timeout', 2)

        snapshot = collector.snapshot()

        assert snapshot.drop_reasons['invalid_anchor'] == 3
        assert snapshot.drop_reasons['outlier'] == 5
        assert snapshot.drop_reasons['solver_timeout'] == 2
        assert snapshot.total_dropped() == 10


class TestHistograms:
    """Tests for histogram functionality."""

    def test_record_histogram(self):
        collector = MetricsCollector()

        collector.record_histogram('mpc_solve_time_s', 0.012)
        collector.record_histogram('mpc_solve_time_s', 0.030)
        collector.record_histogram('mpc_solve_time_s', 0.018)

        stats = collector.get_histogram_stats('mpc_solve_time_s')

        assert stats is not None
        assert stats['count'] == 3
        assert stats['mean'] == pytest.approx(0.02)
        assert stats['min'] == 0.012
        assert stats['max'] == 0.030

    def test_histogram_empty(self):
        collector = MetricsCollector()
        assert collector.get_histogram_stats('nonexistent') is None

    def test_histogram_percentiles(self):
        collector = MetricsCollector()

        for i in range(100):
            collector.record_histogram('test', float(i))

        stats = collector.get_histogram_stats('test')

        assert stats['count'] == 100
        assert 49 < stats['median'] < 51
        assert 94 < stats['p95'] < 96
        assert 98 < stats['p99'] < 100

    def test_histogram_max_samples_bounded(self):
        collector = MetricsCollector()

        for i in range(15000):
            collector.record_histogram('test', float(i), max_samples=1000)

        assert len(collector.snapshot().histograms['test']) <= 1000


class TestSnapshotAndReset:
    """Tests for snapshot and reset."""

    def test_snapshot_creates_copy(self):
        collector = MetricsCollector()

        collector.increment('tdoa_updates', 10)
        snapshot1 = collector.snapshot()

        collector.increment('tdoa_updates', 5)
        snapshot2 = collector.snapshot()

        assert snapshot1.counters['tdoa_updates'] == 10
        assert snapshot2.counters['tdoa_updates'] == 15

    def test_snapshot_drop_rate(self):
        collector = MetricsCollector()

        collector.increment_drop('outlier', 5)
        collector.increment_drop('numerical_instability', 3)

        assert collector.snapshot().drop_rate(100) == pytest.approx(8.0)
        assert collector.snapshot().drop_rate(0) == 0.0

    def test_reset_clears_and_reinitializes(self):
        """Reset returns without deadlocking and restores standard keys."""
        collector = MetricsCollector()

        collector.increment('mpc_solves', 100)
        collector.increment_drop('solver_failed', 5)
        collector.record_histogram('mpc_cost', 1.23)

        collector.reset()

        snapshot = collector.snapshot()
        assert snapshot.counters['mpc_solves'] == 0
        assert snapshot.total_dropped() == 0
        assert not snapshot.histograms
        assert 'solver_failed' in snapshot.drop_reasons


class TestThreadSafety:
    """Tests for thread-safe operations."""

    def test_concurrent_increment(self):
        collector = MetricsCollector()
        num_threads = 10
        increments_per_thread = 1000

        def worker():
            for _ in range(increments_per_thread):
                collector.increment('tdoa_updates')

        threads = [threading.Thread(target=worker) for _ in range(num_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert collector.get_counter('tdoa_updates') == num_threads * increments_per_thread

    def test_concurrent_drop_reasons(self):
        collector = MetricsCollector()
        increments_per_thread = 200
        reasons = ['outlier', 'invalid_anchor', 'solver_timeout']

        def worker(reason: str):
            for _ in range(increments_per_thread):
                collector.increment_drop(reason)

        threads = [
            threading.Thread(target=worker, args=(reason,))
            for reason in reasons
            for _ in range(5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snapshot = collector.snapshot()
        for reason in reasons:
            assert snapshot.drop_reasons[reason] == 5 * increments_per_thread


class TestGlobalSingleton:
    """Tests for global metrics singleton."""

    def test_get_metrics_returns_same_instance(self):
        assert get_metrics() is get_metrics()

    def test_reset_metrics_creates_new_instance(self):
        metrics1 = get_metrics()
        metrics1.increment('test_counter', 100)

        reset_metrics()

        metrics2 = get_metrics()
        assert metrics2 is not metrics1
        assert metrics2.get_counter('test_counter') == 0


class TestDropReasonCodes:
    """Tests for standard drop reason codes."""

    def test_all_standard_drop_reasons_defined(self):
        expected_reasons = [
            'invalid_anchor',
            'invalid_config',
            'numerical_instability',
            'outlier',
            'solver_failed',
            'solver_timeout',
            'stale_estimate',
        ]

        for reason in expected_reasons:
            assert reason in MetricsCollector.DROP_REASONS

    def test_drop_reasons_initialized_to_zero(self):
        snapshot = MetricsCollector().snapshot()
        for reason in MetricsCollector.DROP_REASONS:
            assert snapshot.drop_reasons[reason] == 0


class TestPrintSummary:
    """Tests for print_summary functionality."""

    def test_print_summary(self, capsys):
        collector = MetricsCollector()

        collector.increment('tdoa_updates', 100)
        collector.increment_drop('outlier', 5)
        collector.record_histogram('tdoa_innovation_m', 0.04)

        collector.print_summary()

        captured = capsys.readouterr()
        assert 'METRICS SUMMARY' in captured.out
        assert 'tdoa_updates' in captured.out
        assert 'outlier' in captured.out

    def test_uptime_increases(self):
        collector = MetricsCollector()
        uptime1 = collector.get_uptime()
        time.sleep(0.01)
        assert collector.get_uptime() > uptime1
