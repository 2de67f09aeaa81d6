"""Tests for scheduler.py module."""

from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from conftest import FakeResealer
from kubeseal_reencrypt.cluster import ClusterReader
from kubeseal_reencrypt.engine import ReencryptionEngine
from kubeseal_reencrypt.exceptions import ErrorKind
from kubeseal_reencrypt.keys import KeyProvider
from kubeseal_reencrypt.models import ItemState
from kubeseal_reencrypt.reporter import Reporter
from kubeseal_reencrypt.scheduler import ActivityCounter, Scheduler


def _run(make_engine, items, *, concurrency=4, max_attempts=1, on_outcome=None):
    scheduler = Scheduler(make_engine, Reporter(echo=False), max_attempts=max_attempts, on_outcome=on_outcome)
    return scheduler, scheduler.run(items, concurrency)


class TestActivityCounter:
    """Tests for the engine instrumentation."""

    def test_counts_and_peak(self):
        """Test nested activity raises the peak and unwinds."""
        counter = ActivityCounter()
        with counter, counter:
            assert counter.active == 2
        assert counter.active == 0
        assert counter.peak == 2
        assert counter.total == 2


class TestSchedulerScenarios:
    """End-to-end runs against the in-memory cluster."""

    def test_all_committed(self, make_engine, make_items):
        """Test three resealable items are all committed."""
        _, report = _run(make_engine, make_items())

        assert report.counts == {ItemState.COMMITTED: 3}
        assert report.exit_code == 0

    def test_missing_decrypted_secret_is_skipped(self, make_engine, make_items, fake_cluster):
        """Test an item without its decrypted Secret is skipped and the run succeeds."""
        fake_cluster.add("apps", "orphan", with_secret=False)

        _, report = _run(make_engine, make_items("apps"))

        assert report.count(ItemState.SKIPPED) == 1
        assert report.outcomes[0].error_kind is ErrorKind.NO_DECRYPTED_SECRET
        assert report.exit_code == 0

    def test_concurrency_limit(self, fake_cluster, keys, arena, make_items):
        """Test at most two engines run at once for ten items."""
        for i in range(10):
            fake_cluster.add("load", f"item-{i:02d}")
        resealer = FakeResealer(delay=0.02)

        def make_engine():
            return ReencryptionEngine(fake_cluster, resealer, keys, arena, controller_namespace="kube-system")

        scheduler, report = _run(make_engine, make_items("load"), concurrency=2)

        assert report.count(ItemState.COMMITTED) == 10
        assert scheduler.counter.total == 10
        assert 1 <= scheduler.counter.peak <= 2

    def test_sequential_when_limit_is_one(self, make_engine, make_items):
        """Test a limit of one never overlaps engines."""
        scheduler, report = _run(make_engine, make_items(), concurrency=1)
        assert scheduler.counter.peak == 1
        assert report.count(ItemState.COMMITTED) == 3

    def test_invalid_limit(self, make_engine, make_items):
        """Test a non-positive limit is rejected."""
        with pytest.raises(ValueError):
            Scheduler(make_engine, Reporter(echo=False)).run(make_items(), 0)


class TestSchedulerIsolation:
    """Tests that one item never affects another."""

    def test_failed_item_does_not_stop_others(self, make_engine, make_items, fake_cluster):
        """Test a rejected item fails while its siblings commit."""
        fake_cluster.reject.add(("default", "db-creds"))

        _, report = _run(make_engine, make_items())

        states = {str(o.ref): o.state for o in report.outcomes}
        assert states == {
            "default/api-token": ItemState.COMMITTED,
            "default/db-creds": ItemState.FAILED,
            "monitoring/grafana": ItemState.COMMITTED,
        }
        assert report.exit_code == 1

    def test_forbidden_secret_read_fails_only_its_item(self, make_engine, make_items, fake_cluster, monkeypatch):
        """Test RBAC refusing one namespace's Secret does not abort the run."""
        fake_cluster.add("locked", "vault-token")
        reader = ClusterReader(MagicMock(), timeout=5)
        reader.core_api = MagicMock()
        reader.core_api.read_namespaced_secret.side_effect = ApiException(status=403, reason="Forbidden")
        fetch_secret = fake_cluster.fetch_secret

        def fetch_secret_with_rbac(namespace, name):
            if namespace == "locked":
                return reader.fetch_secret(namespace, name)
            return fetch_secret(namespace, name)

        monkeypatch.setattr(fake_cluster, "fetch_secret", fetch_secret_with_rbac)

        scheduler, report = _run(make_engine, make_items(), concurrency=1)

        assert not scheduler.cancelled
        assert not report.aborted
        failed = report.failed
        assert [str(o.ref) for o in failed] == ["locked/vault-token"]
        assert failed[0].error_kind is ErrorKind.VALIDATION_ERROR
        assert "403" in failed[0].message
        assert report.count(ItemState.COMMITTED) == 3
        assert report.exit_code == 1

    def test_engine_factory_error_is_contained(self, make_items, quiet_reporter):
        """Test even a broken engine factory yields terminal outcomes."""

        def broken():
            raise RuntimeError("no engine")

        report = Scheduler(broken, quiet_reporter).run(make_items(), 2)

        assert report.count(ItemState.FAILED) == 3
        assert all(o.error_kind is ErrorKind.UNEXPECTED for o in report.outcomes)

    def test_outcomes_in_discovery_order(self, make_engine, make_items):
        """Test the report lists items as they were discovered."""
        items = make_items()
        _, report = _run(make_engine, items, concurrency=3)
        assert [o.ref.key for o in report.outcomes] == [item.ref.key for item in items]
        assert [o.index for o in report.outcomes] == [0, 1, 2]


class TestSchedulerIdempotence:
    """Tests for repeated runs."""

    def test_second_run_commits_nothing(self, make_engine, make_items, fake_cluster):
        """Test a second run under the same key changes nothing."""
        _run(make_engine, make_items())
        fake_cluster.writes.clear()

        _, second = _run(make_engine, make_items())

        assert second.count(ItemState.COMMITTED) == 0
        assert all(o.error_kind is ErrorKind.NO_CHANGE_DETECTED for o in second.outcomes)
        assert fake_cluster.writes == []

    def test_rotation_between_runs_commits_again(self, fake_cluster, resealer, cert_source, arena, make_items):
        """Test a key rotated between runs is applied by the next run."""

        def run_once():
            with KeyProvider(cert_source) as keys:

                def make_engine():
                    return ReencryptionEngine(fake_cluster, resealer, keys, arena, controller_namespace="kube-system")

                return _run(make_engine, make_items())[1]

        first = run_once()
        cert_source.rotate(b"key-2")
        second = run_once()

        assert first.count(ItemState.COMMITTED) == 3
        assert second.count(ItemState.COMMITTED) == 3
        assert cert_source.calls == 2


class TestSchedulerRetries:
    """Tests for concurrent-modification retries."""

    def test_no_retry_by_default(self, make_engine, make_items, fake_cluster):
        """Test a concurrent modification fails the item without retries."""
        fake_cluster.bump_before_commit.add(("default", "db-creds"))

        _, report = _run(make_engine, make_items())

        outcome = report.outcomes[1]
        assert outcome.state is ItemState.FAILED
        assert outcome.error_kind is ErrorKind.CONCURRENT_MODIFICATION
        assert outcome.attempts == 1

    def test_retry_succeeds(self, make_engine, make_items, fake_cluster):
        """Test a retry re-reads the object and commits."""
        fake_cluster.bump_before_commit.add(("default", "db-creds"))

        _, report = _run(make_engine, make_items(), max_attempts=2)

        outcome = report.outcomes[1]
        assert outcome.state is ItemState.COMMITTED
        assert outcome.attempts == 2
        assert report.exit_code == 0

    def test_other_errors_are_not_retried(self, make_engine, make_items, fake_cluster, resealer):
        """Test only concurrent modifications are retried."""
        resealer.fail.add(("default", "db-creds"))

        _, report = _run(make_engine, make_items(), max_attempts=3)

        assert report.outcomes[1].attempts == 1
        assert report.outcomes[1].error_kind is ErrorKind.RESEAL_FAILED

    def test_invalid_attempts(self, make_engine, quiet_reporter):
        """Test max_attempts must allow at least one attempt."""
        with pytest.raises(ValueError):
            Scheduler(make_engine, quiet_reporter, max_attempts=0)


class TestSchedulerCancellation:
    """Tests for fatal aborts and operator cancellation."""

    def test_fatal_error_aborts_run(self, make_engine, make_items, fake_cluster):
        """Test an unreachable cluster stops the run and skips the rest."""
        fake_cluster.unreachable_on_fetch.add(("default", "api-token"))

        scheduler, report = _run(make_engine, make_items(), concurrency=1)

        assert scheduler.cancelled
        assert report.aborted
        assert report.exit_code == 2
        assert report.outcomes[0].error_kind is ErrorKind.CLUSTER_UNREACHABLE
        assert [o.state for o in report.outcomes[1:]] == [ItemState.SKIPPED, ItemState.SKIPPED]
        assert all(o.error_kind is ErrorKind.CANCELLED for o in report.outcomes[1:])
        assert "ClusterUnreachable" in report.fatal_error
        assert fake_cluster.writes == []

    def test_cancel_before_run(self, make_engine, make_items, quiet_reporter, resealer):
        """Test a cancelled scheduler starts nothing."""
        scheduler = Scheduler(make_engine, quiet_reporter)
        scheduler.cancel()

        report = scheduler.run(make_items())

        assert report.count(ItemState.SKIPPED) == 3
        assert report.fatal_error == "cancelled by operator"
        assert resealer.calls == []

    def test_cancel_mid_run(self, make_engine, make_items, quiet_reporter):
        """Test items finished before a cancel keep their outcome."""

        def make_engine_then_cancel():
            engine = make_engine()
            process = engine.process

            def process_and_cancel(item, cancelled=None):
                outcome = process(item, cancelled)
                scheduler.cancel("stop")
                return outcome

            engine.process = process_and_cancel
            return engine

        scheduler = Scheduler(make_engine_then_cancel, quiet_reporter)
        report = scheduler.run(make_items(), 1)

        assert report.outcomes[0].state is ItemState.COMMITTED
        assert report.count(ItemState.SKIPPED) == 2
        assert report.aborted
        assert report.fatal_error == "stop"

    def test_interrupt_while_collecting_cancels_queue(self, fake_cluster, keys, arena, make_items, quiet_reporter):
        """Test Ctrl-C during outcome handling stops items that have not committed."""
        resealer = FakeResealer(delay=0.2)

        def make_engine():
            return ReencryptionEngine(fake_cluster, resealer, keys, arena, controller_namespace="kube-system")

        def interrupt(_outcome):
            raise KeyboardInterrupt

        scheduler = Scheduler(make_engine, quiet_reporter, on_outcome=interrupt)

        with pytest.raises(KeyboardInterrupt):
            scheduler.run(make_items(), 1)

        assert scheduler.cancelled
        assert fake_cluster.writes == [(("default", "api-token"), False)]
        assert len(resealer.calls) <= 2

    def test_first_cancel_reason_wins(self, make_engine, quiet_reporter):
        """Test a later cancel does not overwrite the abort reason."""
        scheduler = Scheduler(make_engine, quiet_reporter)
        scheduler.cancel("first")
        scheduler.cancel("second")
        assert scheduler.run([]).fatal_error == "first"

