from datetime import timedelta

from sendqueuectl.models import QUEUED, IN_PROGRESS, DEAD_LETTER
from sendqueuectl.notifications import MemoryNotifier
from sendqueuectl.reaper import reap_stale_jobs
from sendqueuectl.utils import parse_iso, utcnow


def _stuck(manager, make_request, draft_id="draft-123", attempts=1):
    """A job leased `attempts` times whose worker never came back."""
    job_id = manager.enqueue(make_request(draft_id)).job_id
    for _ in range(attempts - 1):
        manager.lease_next_job()
        manager.mark_failed(job_id, "HTTP 503")
        job = manager.get_job(job_id)
        job.next_attempt_at = None
        manager.store.update_job(job)
    manager.lease_next_job()
    return job_id


def test_fresh_leases_are_left_alone(manager, make_request):
    _stuck(manager, make_request)
    result = reap_stale_jobs(manager, stale_minutes=30, execute=True)
    assert result.stale_jobs_found == 0


def test_dry_run_reports_without_writing(manager, make_request, queue_file):
    job_id = _stuck(manager, make_request)
    before = queue_file.read_text()

    result = reap_stale_jobs(manager, stale_minutes=30, now=utcnow() + timedelta(hours=1))

    assert result.dry_run is True
    assert result.requeued == 1
    assert queue_file.read_text() == before
    assert manager.get_job(job_id).status == IN_PROGRESS


def test_requeues_with_backoff_without_counting_an_attempt(manager, make_request):
    job_id = _stuck(manager, make_request)
    now = utcnow() + timedelta(hours=1)
    notifier = MemoryNotifier()

    result = reap_stale_jobs(manager, stale_minutes=30, execute=True, now=now, notifier=notifier)

    assert result.requeued == 1
    job = manager.get_job(job_id)
    assert job.status == QUEUED
    assert job.attempts == 1
    assert job.last_error_code == "stale_lease"
    assert job.in_progress_started_at is None
    assert parse_iso(job.next_attempt_at) > now
    assert [e.type for e in notifier.events] == ["SEND_QUEUE_REAPED"]


def test_dead_letters_when_attempts_used_up(manager, make_request):
    job_id = _stuck(manager, make_request, attempts=3)
    assert manager.get_job(job_id).attempts == 3

    result = reap_stale_jobs(manager, stale_minutes=30, execute=True, now=utcnow() + timedelta(hours=1))

    assert result.dead_lettered == 1
    assert manager.get_job(job_id).status == DEAD_LETTER


def test_nothing_to_reap_sends_no_notification(manager):
    notifier = MemoryNotifier()
    result = reap_stale_jobs(manager, execute=True, notifier=notifier)
    assert result.success and result.stale_jobs_found == 0
    assert notifier.events == []
