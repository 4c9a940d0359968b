"""
Recover jobs stuck in in_progress.

A worker that dies between lease and completion leaves its job in
in_progress forever. Reaping puts such jobs back in the queue with backoff,
or dead-letters them once they have used up max_attempts. Reaping does not
count as an attempt; only a lease does.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import structlog

from .errors import StoreError
from .manager import QueueManager
from .models import IN_PROGRESS, QUEUED, DEAD_LETTER
from .notifications import Notifier, notify_reaped
from .utils import error_hash, iso_after_seconds, utcnow

logger = structlog.get_logger()

STALE_LEASE = "stale_lease"


@dataclass
class ReapJobResult:
    job_id: str
    tracking_id: str
    action: str  # requeued | dead_lettered | skipped
    attempts: int
    reason: str


@dataclass
class ReapResult:
    success: bool
    dry_run: bool
    stale_minutes: float
    max_attempts: int
    stale_jobs_found: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    jobs: List[ReapJobResult] = field(default_factory=list)
    error: Optional[str] = None


def reap_stale_jobs(
    manager: QueueManager,
    stale_minutes: float = 30,
    execute: bool = False,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> ReapResult:
    now = now or utcnow()
    store = manager.store
    policy = manager.retry_policy
    result = ReapResult(
        success=True,
        dry_run=not execute,
        stale_minutes=stale_minutes,
        max_attempts=policy.max_attempts,
    )

    try:
        stale_jobs = store.find_stale(stale_minutes, now)
    except StoreError as e:
        result.success = False
        result.error = str(e)
        return result
    result.stale_jobs_found = len(stale_jobs)

    for job in stale_jobs:
        try:
            current = store.get_job(job.job_id)
            if current is None or current.status != IN_PROGRESS:
                result.jobs.append(ReapJobResult(job.job_id, job.tracking_id, "skipped",
                                                 job.attempts, "Status changed during reap"))
                result.skipped += 1
                continue

            if current.attempts >= policy.max_attempts:
                if execute:
                    current.status = DEAD_LETTER
                    current.next_attempt_at = None
                    current.last_error_code = STALE_LEASE
                    current.last_error_message_hash = error_hash("Reaped: max attempts exhausted")
                    current.in_progress_started_at = None
                    store.update_job(current)
                result.jobs.append(ReapJobResult(current.job_id, current.tracking_id, "dead_lettered",
                                                 current.attempts,
                                                 f"Max attempts ({policy.max_attempts}) exhausted"))
                result.dead_lettered += 1
            else:
                next_at = iso_after_seconds(policy.backoff_seconds(current.attempts), now)
                if execute:
                    current.status = QUEUED
                    current.next_attempt_at = next_at
                    current.last_error_code = STALE_LEASE
                    current.last_error_message_hash = error_hash("Reaped: stale lease recovered")
                    current.in_progress_started_at = None
                    store.update_job(current)
                result.jobs.append(ReapJobResult(current.job_id, current.tracking_id, "requeued",
                                                 current.attempts,
                                                 f"Stale for over {stale_minutes}min, next attempt at {next_at}"))
                result.requeued += 1
        except StoreError as e:
            result.success = False
            result.error = str(e)
            break

    if execute and (result.requeued or result.dead_lettered):
        logger.warning("stale_jobs_reaped", requeued=result.requeued, dead_lettered=result.dead_lettered)
        if notifier is not None:
            sample = [j.job_id for j in result.jobs if j.action != "skipped"][:3]
            notify_reaped(notifier, result.requeued, result.dead_lettered, sample)

    return result
