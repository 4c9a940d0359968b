import pytest

from sendqueuectl.config import DEFAULT_CONFIG
from sendqueuectl.errors import SendError
from sendqueuectl.models import QUEUED, IN_PROGRESS, SENT, FAILED, DEAD_LETTER, MarkFailedResult
from sendqueuectl.notifications import MemoryNotifier
from sendqueuectl.sender import StubSender
from sendqueuectl.worker import process_job, process_queue


@pytest.fixture
def cfg():
    return dict(DEFAULT_CONFIG)


@pytest.fixture
def notifier():
    return MemoryNotifier()


def _event_types(notifier):
    return [e.type for e in notifier.events]


class TestExecute:
    def test_sends_ready_jobs(self, manager, make_request, cfg, notifier):
        ids = [manager.enqueue(make_request(f"d{i}")).job_id for i in range(3)]
        sender = StubSender()

        result = process_queue(manager, sender, cfg, max_jobs=10, execute=True, notifier=notifier)

        assert result.dry_run is False
        assert result.processed == 3 and result.sent == 3
        assert sender.sent == ["d0", "d1", "d2"]
        for job_id in ids:
            job = manager.get_job(job_id)
            assert job.status == SENT
            assert job.message_id == f"stub-msg-{job.draft_id}"
        assert _event_types(notifier) == ["AUTO_SEND_SUCCESS"] * 3

    def test_respects_max_jobs(self, manager, make_request, cfg):
        for i in range(5):
            manager.enqueue(make_request(f"d{i}"))
        result = process_queue(manager, StubSender(), cfg, max_jobs=2, execute=True)
        assert result.processed == 2
        assert manager.get_status_counts()[QUEUED] == 3

    def test_transient_failure_backs_off(self, manager, make_request, cfg, notifier):
        job_id = manager.enqueue(make_request()).job_id
        sender = StubSender({"draft-123": SendError("quota exceeded", status=429)})

        result = process_queue(manager, sender, cfg, execute=True, notifier=notifier)

        assert result.retried == 1
        assert result.jobs[0].status == "retry"
        assert result.jobs[0].next_attempt_at is not None
        assert manager.get_job(job_id).status == QUEUED
        # Not eligible again within the same batch.
        assert result.processed == 1
        assert _event_types(notifier) == ["SEND_QUEUE_BACKOFF"]

    def test_fatal_failure_dead_letters(self, manager, make_request, cfg, notifier):
        job_id = manager.enqueue(make_request()).job_id
        sender = StubSender({"draft-123": SendError("Unauthorized", status=401)})

        result = process_queue(manager, sender, cfg, execute=True, notifier=notifier)

        assert result.dead_letter == 1
        assert manager.get_job(job_id).status == DEAD_LETTER
        assert _event_types(notifier) == ["SEND_QUEUE_DEAD_LETTER"]

    def test_unexpected_exception_is_treated_as_failure(self, manager, make_request, cfg):
        job_id = manager.enqueue(make_request()).job_id
        sender = StubSender({"draft-123": RuntimeError("socket closed")})
        result = process_queue(manager, sender, cfg, execute=True)
        assert result.retried == 1
        assert manager.get_job(job_id).last_error_code == "unknown"

    def test_kill_switch_blocks_as_policy_stop(self, manager, make_request, cfg, notifier):
        job_id = manager.enqueue(make_request()).job_id
        cfg["kill_switch"] = "true"
        sender = StubSender()

        result = process_queue(manager, sender, cfg, execute=True, notifier=notifier)

        assert result.blocked == 1
        assert sender.sent == []
        job = manager.get_job(job_id)
        assert job.status == FAILED
        assert job.last_error_code == "policy"
        assert _event_types(notifier) == ["AUTO_SEND_BLOCKED"]

    def test_kill_switch_from_environment(self, manager, make_request, cfg, monkeypatch):
        monkeypatch.setenv("SENDQ_KILL_SWITCH", "1")
        manager.enqueue(make_request())
        assert process_queue(manager, StubSender(), cfg, execute=True).blocked == 1

    def test_sending_disabled_blocks(self, manager, make_request, cfg):
        manager.enqueue(make_request())
        cfg["sending_enabled"] = "false"
        result = process_queue(manager, StubSender(), cfg, execute=True)
        assert result.blocked == 1
        assert result.jobs[0].reason == "Sending not enabled"

    def test_notifier_failure_does_not_break_batch(self, manager, make_request, cfg):
        class Exploding:
            def notify(self, event):
                raise RuntimeError("webhook down")

        job_id = manager.enqueue(make_request()).job_id
        result = process_queue(manager, StubSender(), cfg, execute=True, notifier=Exploding())
        assert result.sent == 1
        assert manager.get_job(job_id).status == SENT

    def test_empty_queue(self, manager, cfg):
        result = process_queue(manager, StubSender(), cfg, execute=True)
        assert result.processed == 0


class TestDryRun:
    def test_no_send_and_no_mutation(self, manager, make_request, cfg, queue_file):
        job_id = manager.enqueue(make_request()).job_id
        before = queue_file.read_text()
        sender = StubSender()

        result = process_queue(manager, sender, cfg, max_jobs=10, execute=False)

        assert result.dry_run is True
        assert result.processed == 1 and result.skipped == 1
        assert result.jobs[0].reason == "Dry run - would send"
        assert sender.sent == []
        assert queue_file.read_text() == before
        assert manager.get_job(job_id).attempts == 0

    def test_reports_policy_block_without_mutation(self, manager, make_request, cfg):
        job_id = manager.enqueue(make_request()).job_id
        cfg["kill_switch"] = "true"
        result = process_queue(manager, StubSender(), cfg, execute=False)
        assert result.blocked == 1
        assert manager.get_job(job_id).status == QUEUED


def test_process_job_skips_sent(manager, make_request, cfg):
    job_id = manager.enqueue(make_request()).job_id
    job = manager.lease_next_job().job
    manager.mark_sent(job_id, "m", "t")
    sender = StubSender()

    result = process_job(job, manager, sender, cfg)

    assert result.status == "skipped"
    assert sender.sent == []


def test_process_job_leaves_in_progress_when_completion_cannot_be_recorded(manager, make_request, cfg):
    job_id = manager.enqueue(make_request()).job_id
    job = manager.lease_next_job().job
    manager.mark_sent = lambda *a, **k: type("R", (), {"success": False, "error": "disk full"})()

    result = process_job(job, manager, StubSender(), cfg)

    assert result.status == "failed"
    assert result.message_id == "stub-msg-draft-123"
    assert manager.get_job(job_id).status == IN_PROGRESS


def test_blocked_job_reported_failed_when_block_cannot_be_recorded(manager, make_request, cfg, notifier):
    cfg["kill_switch"] = "true"
    job_id = manager.enqueue(make_request()).job_id
    job = manager.lease_next_job().job
    manager.mark_failed = lambda *a, **k: MarkFailedResult(success=False, error="disk full")

    result = process_job(job, manager, StubSender(), cfg, notifier)

    assert result.status == "failed"
    assert result.reason == "disk full"
    assert manager.get_job(job_id).status == IN_PROGRESS
    assert notifier.events == []
