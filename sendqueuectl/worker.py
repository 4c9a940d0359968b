import signal
import threading
from datetime import datetime
from typing import Callable, Dict, Optional

import structlog

from .config import kill_switch_active, sending_enabled
from .errors import PolicyBlocked, SendError
from .manager import QueueManager
from .models import Job, JobProcessResult, ProcessResult, RETRY, DEAD
from .notifications import (
    Notifier, notify_backoff, notify_blocked, notify_dead_letter, notify_send_success,
)
from .sender import Sender
from .utils import utcnow

logger = structlog.get_logger()

_stop = threading.Event()


def setup_signal_handlers():
    def _handler(signum, frame):
        logger.info("stop_requested", signal=signum)
        _stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # signal handlers can only be installed from the main thread
            pass


def _policy_block(cfg: Dict[str, str]) -> Optional[str]:
    if kill_switch_active(cfg):
        return "runtime kill_switch active"
    if not sending_enabled(cfg):
        return "Sending not enabled"
    return None


def _failure_status(action: str) -> str:
    if action == RETRY:
        return "retry"
    if action == DEAD:
        return "dead_letter"
    return "failed"


def process_job(job: Job, manager: QueueManager, sender: Sender, cfg: Dict[str, str],
                notifier: Optional[Notifier] = None, now: Optional[datetime] = None) -> JobProcessResult:
    """Run one leased job to its next state."""
    if manager.should_skip_job(job):
        return JobProcessResult(job.job_id, job.tracking_id, "skipped", reason="Already sent")

    block = _policy_block(cfg)
    if block:
        result = manager.mark_failed(job.job_id, PolicyBlocked(block), now=now)
        if not result.success:
            logger.error("mark_failed_rejected", job_id=job.job_id, error=result.error)
            return JobProcessResult(job.job_id, job.tracking_id, "failed", reason=result.error)
        notify_blocked(notifier, job.job_id, job.tracking_id, block, result.error_code)
        return JobProcessResult(job.job_id, job.tracking_id, "blocked",
                                error_code=result.error_code, reason=block)

    try:
        outcome = sender.send(job.draft_id)
    except Exception as e:
        error = e if isinstance(e, SendError) else SendError(str(e) or type(e).__name__)
        result = manager.mark_failed(job.job_id, error, now=now)
        if not result.success:
            logger.error("mark_failed_rejected", job_id=job.job_id, error=result.error)
            return JobProcessResult(job.job_id, job.tracking_id, "failed", reason=result.error)

        if result.action == DEAD:
            notify_dead_letter(notifier, job.job_id, result.error_code, job.attempts,
                               job.to_domain, job.template_id, job.tracking_id)
        elif result.action == RETRY:
            notify_backoff(notifier, job.job_id, result.error_code, result.next_attempt_at, job.attempts)
        else:
            notify_blocked(notifier, job.job_id, job.tracking_id, f"Send failed: {result.action}",
                           result.error_code)

        return JobProcessResult(
            job.job_id, job.tracking_id, _failure_status(result.action),
            error_code=result.error_code,
            reason=error.message[:100],
            next_attempt_at=result.next_attempt_at,
        )

    sent = manager.mark_sent(job.job_id, outcome.message_id, outcome.thread_id)
    if not sent.success:
        # The channel accepted the draft but we could not record it. Leave the
        # job in_progress; the reaper requeues it and should_skip_job guards.
        logger.error("mark_sent_rejected", job_id=job.job_id, error=sent.error)
        return JobProcessResult(job.job_id, job.tracking_id, "failed",
                                message_id=outcome.message_id, thread_id=outcome.thread_id,
                                reason=sent.error)

    notify_send_success(notifier, job.job_id, job.tracking_id, job.company_id,
                        job.template_id, job.ab_variant)
    return JobProcessResult(job.job_id, job.tracking_id, "sent",
                            message_id=outcome.message_id, thread_id=outcome.thread_id)


def _tally(result: ProcessResult, job_result: JobProcessResult):
    result.processed += 1
    result.jobs.append(job_result)
    counter = {
        "sent": "sent", "blocked": "blocked", "retry": "retried",
        "dead_letter": "dead_letter", "failed": "failed", "skipped": "skipped",
    }[job_result.status]
    setattr(result, counter, getattr(result, counter) + 1)


def process_queue(manager: QueueManager, sender: Sender, cfg: Dict[str, str],
                  max_jobs: int = 10, execute: bool = False,
                  notifier: Optional[Notifier] = None, now: Optional[datetime] = None) -> ProcessResult:
    """
    Process up to `max_jobs` ready jobs.

    In dry-run mode nothing is leased or written and no send is attempted;
    each ready job is only checked against the send gates.
    """
    now = now or utcnow()
    result = ProcessResult(dry_run=not execute)

    if not execute:
        block = _policy_block(cfg)
        for job in manager.peek_ready_jobs(max_jobs, now):
            if block:
                _tally(result, JobProcessResult(job.job_id, job.tracking_id, "blocked",
                                                error_code="policy", reason=block))
            else:
                _tally(result, JobProcessResult(job.job_id, job.tracking_id, "skipped",
                                                reason="Dry run - would send"))
        return result

    for _ in range(max_jobs):
        lease = manager.lease_next_job(now)
        if not lease.success or lease.job is None:
            break
        _tally(result, process_job(lease.job, manager, sender, cfg, notifier, now))

    logger.info("batch_processed", processed=result.processed, sent=result.sent,
                retried=result.retried, dead_letter=result.dead_letter, failed=result.failed)
    return result


def run_forever(run_batch: Callable[[], ProcessResult], interval_seconds: int,
                on_batch: Optional[Callable[[ProcessResult], None]] = None):
    """
    Foreground loop: one batch every `interval_seconds` until SIGINT/SIGTERM.
    Batches run one after another in this process; never start two loops on
    the same queue file.
    """
    setup_signal_handlers()
    _stop.clear()
    while not _stop.is_set():
        try:
            batch = run_batch()
            if on_batch is not None:
                on_batch(batch)
        except Exception as e:
            logger.exception("batch_crashed", error=str(e))
        _stop.wait(interval_seconds)
    logger.info("worker_stopped")
