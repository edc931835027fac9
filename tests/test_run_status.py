"""
Unit tests for the run status registry and progress formatting.
"""

import threading
import time

from syncer.run_status import (
    COMPLETED,
    ERRORED,
    IDLE,
    RUNNING,
    RunStatus,
    RunStatusRegistry,
    _format_duration,
)


# ---------------------------------------------------------------------------
# _format_duration
# ---------------------------------------------------------------------------


class TestFormatDuration:
    def test_seconds(self):
        assert _format_duration(45) == "45s"

    def test_minutes_and_seconds(self):
        assert _format_duration(150) == "2m 30s"

    def test_exact_minutes(self):
        assert _format_duration(120) == "2m"

    def test_hours_and_minutes(self):
        assert _format_duration(4500) == "1h 15m"

    def test_exact_hours(self):
        assert _format_duration(7200) == "2h"

    def test_negative(self):
        assert _format_duration(-5) == "0s"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestRunStatusRegistry:
    def test_initially_idle(self):
        status = RunStatusRegistry().snapshot()
        assert status.state == IDLE
        assert status.running is False
        assert status.conversations_processed == 0

    def test_try_start_enters_running(self):
        registry = RunStatusRegistry()
        accepted, status = registry.try_start("run-1", "page-1", "messenger")

        assert accepted is True
        assert status.state == RUNNING
        assert status.page_id == "page-1"
        assert status.started_at is not None
        assert status.started_at == status.last_updated_at

    def test_second_start_rejected_while_running(self):
        """A trigger for any page is rejected while a run is in flight."""
        registry = RunStatusRegistry()
        registry.try_start("run-1", "page-1", "messenger")

        accepted, status = registry.try_start("run-2", "page-2", "messenger")

        assert accepted is False
        assert status.run_id == "run-1"
        assert status.page_id == "page-1"
        assert registry.snapshot().page_id == "page-1"

    def test_concurrent_starts_accept_exactly_one(self):
        registry = RunStatusRegistry()
        barrier = threading.Barrier(8)
        results = []

        def trigger(idx):
            barrier.wait()
            accepted, _ = registry.try_start(f"run-{idx}", f"page-{idx}", "messenger")
            results.append(accepted)

        threads = [threading.Thread(target=trigger, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    def test_record_conversation_counts(self):
        registry = RunStatusRegistry()
        registry.try_start("run-1", "page-1", "messenger")
        registry.record_conversation("run-1", 4)
        status = registry.record_conversation("run-1", 2)

        assert status.conversations_processed == 2
        assert status.messages_processed == 6
        assert status.last_updated_at >= status.started_at

    def test_concurrent_updates_are_not_lost(self):
        registry = RunStatusRegistry()
        registry.try_start("run-1", "page-1", "messenger")

        def work():
            for _ in range(200):
                registry.record_conversation("run-1", 3)

        threads = [threading.Thread(target=work) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        status = registry.snapshot()
        assert status.conversations_processed == 1000
        assert status.messages_processed == 3000

    def test_total_estimate_set_once(self):
        registry = RunStatusRegistry()
        registry.try_start("run-1", "page-1", "messenger")
        registry.set_total_estimate("run-1", 12)
        registry.set_total_estimate("run-1", 99)
        assert registry.snapshot().conversations_total_estimate == 12

    def test_complete_is_terminal_and_kept(self):
        registry = RunStatusRegistry()
        registry.try_start("run-1", "page-1", "messenger")
        registry.record_conversation("run-1", 1)
        registry.complete("run-1")
        registry.fail("run-1", "late failure")

        status = registry.snapshot()
        assert status.state == COMPLETED
        assert status.running is False
        assert status.error is None
        assert status.conversations_processed == 1

    def test_fail_records_error(self):
        registry = RunStatusRegistry()
        registry.try_start("run-1", "page-1", "messenger")
        registry.fail("run-1", "Invalid OAuth access token.")

        status = registry.snapshot()
        assert status.state == ERRORED
        assert status.error == "Invalid OAuth access token."

    def test_fail_without_message(self):
        registry = RunStatusRegistry()
        registry.try_start("run-1", "page-1", "messenger")
        registry.fail("run-1", "")
        assert registry.snapshot().error == "Unknown sync error"

    def test_next_run_resets_fields(self):
        registry = RunStatusRegistry()
        registry.try_start("run-1", "page-1", "messenger")
        registry.set_total_estimate("run-1", 3)
        registry.record_conversation("run-1", 5)
        registry.fail("run-1", "boom")

        accepted, status = registry.try_start("run-2", "page-2", "instagram")

        assert accepted is True
        assert status.conversations_processed == 0
        assert status.messages_processed == 0
        assert status.conversations_total_estimate is None
        assert status.error is None
        assert status.platform == "instagram"

    def test_stale_run_updates_ignored(self):
        """Updates tagged with an older run id do not touch the current run."""
        registry = RunStatusRegistry()
        registry.try_start("run-1", "page-1", "messenger")
        registry.complete("run-1")
        registry.try_start("run-2", "page-1", "messenger")

        registry.record_conversation("run-1", 10)
        registry.fail("run-1", "stale")

        status = registry.snapshot()
        assert status.run_id == "run-2"
        assert status.state == RUNNING
        assert status.conversations_processed == 0

    def test_eta(self):
        registry = RunStatusRegistry()
        registry.try_start("run-1", "page-1", "messenger")
        registry.set_total_estimate("run-1", 10)
        assert registry.eta_seconds() is None

        registry._monotonic_start = time.monotonic() - 10
        registry.record_conversation("run-1", 1)
        eta = registry.eta_seconds()
        assert eta is not None
        assert 80 <= eta <= 95


class TestRunStatusPayload:
    def test_running_payload(self):
        registry = RunStatusRegistry()
        registry.try_start("run-1", "page-1", "messenger")
        payload = registry.snapshot().to_payload()

        assert payload["running"] is True
        assert payload["state"] == "running"
        assert payload["pageId"] == "page-1"
        assert payload["platform"] == "messenger"
        assert payload["conversationsProcessed"] == 0
        assert payload["messagesProcessed"] == 0
        assert payload["startedAt"].endswith("+00:00")
        assert "conversationsTotalEstimate" not in payload
        assert "error" not in payload

    def test_errored_payload(self):
        status = RunStatus(state=ERRORED, page_id="p", conversations_total_estimate=4, error="boom")
        payload = status.to_payload()
        assert payload["running"] is False
        assert payload["conversationsTotalEstimate"] == 4
        assert payload["error"] == "boom"

    def test_idle_payload(self):
        payload = RunStatus().to_payload()
        assert payload["running"] is False
        assert payload["startedAt"] is None
        assert payload["pageId"] is None
