"""
Send queue lifecycle.

    queued -> in_progress -> sent*
                          -> queued (retry with backoff)
                          -> dead_letter* / failed*
    queued | in_progress  -> cancelled*
    dead_letter | failed  -> queued (operator retry, attempts reset)

No method raises: each returns a result object whose `success` flag and
`error` field tell the caller what happened.
"""
from datetime import datetime
from typing import Dict, List, Optional, Union

import structlog

from .errors import SendError, StoreError
from .models import (
    Job, SendRequest,
    QUEUED, IN_PROGRESS, SENT, FAILED, DEAD_LETTER, CANCELLED,
    CANCELLABLE_STATUSES, REOPENABLE_STATUSES, RETRY, DEAD,
    EnqueueResult, LeaseResult, MarkSentResult, MarkFailedResult,
    CancelResult, RetryDeadLetterResult,
)
from .retry import RetryPolicy
from .store import JobStore
from .utils import error_hash, to_iso, utcnow

logger = structlog.get_logger()

NO_JOBS_READY = "No jobs ready"
JOB_NOT_FOUND = "Job not found"


class QueueManager:
    def __init__(self, store: JobStore, retry_policy: Optional[RetryPolicy] = None):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()

    # ---------- Enqueue ----------
    def enqueue(self, request: SendRequest) -> EnqueueResult:
        if not request.draft_id or not request.draft_id.strip():
            return EnqueueResult(success=False, error="draft_id cannot be empty")
        try:
            existing = self.store.find_by_draft_id(request.draft_id)

            sent = next((j for j in existing if j.status == SENT), None)
            if sent is not None:
                return EnqueueResult(
                    success=False,
                    error="Draft already sent",
                    already_queued=True,
                    existing_job_id=sent.job_id,
                )

            active = next((j for j in existing if not j.is_terminal), None)
            if active is not None:
                return EnqueueResult(
                    success=True,
                    job_id=active.job_id,
                    job=active,
                    already_queued=True,
                    existing_job_id=active.job_id,
                )

            # Nothing live for this draft (or only failed/dead_letter/cancelled
            # chains): start a fresh attempt chain.
            job = self.store.create_job(request)
        except StoreError as e:
            return EnqueueResult(success=False, error=str(e))

        logger.info("job_enqueued", job_id=job.job_id, draft_id=job.draft_id, tracking_id=job.tracking_id)
        return EnqueueResult(success=True, job_id=job.job_id, job=job)

    # ---------- Lease ----------
    def lease_next_job(self, now: Optional[datetime] = None) -> LeaseResult:
        now = now or utcnow()
        try:
            job = self.store.find_next_ready(now)
            if job is None:
                return LeaseResult(success=False, error=NO_JOBS_READY)

            job.status = IN_PROGRESS
            job.attempts += 1
            job.in_progress_started_at = to_iso(now)
            self.store.update_job(job)
        except StoreError as e:
            return LeaseResult(success=False, error=str(e))

        logger.info("job_leased", job_id=job.job_id, attempts=job.attempts)
        return LeaseResult(success=True, job=job)

    def peek_ready_jobs(self, limit: int, now: Optional[datetime] = None) -> List[Job]:
        """Jobs a lease would hand out next, without leasing them."""
        try:
            return self.store.ready_jobs(now or utcnow())[:max(limit, 0)]
        except StoreError as e:
            logger.error("job_log_unreadable", error=str(e))
            return []

    # ---------- Completion ----------
    def mark_sent(self, job_id: str, message_id: str, thread_id: str) -> MarkSentResult:
        try:
            job = self.store.get_job(job_id)
            if job is None:
                return MarkSentResult(success=False, error=JOB_NOT_FOUND)

            # Duplicate completion signal: keep the identifiers from the first one.
            if job.status == SENT:
                return MarkSentResult(success=True, already_sent=True)

            if job.status != IN_PROGRESS:
                return MarkSentResult(success=False, error=f"Cannot mark {job.status} job as sent")

            job.status = SENT
            if job.message_id is None:
                job.message_id = message_id
            if job.thread_id is None:
                job.thread_id = thread_id
            job.sent_at = to_iso(utcnow())
            job.in_progress_started_at = None
            job.last_error_code = None
            job.last_error_message_hash = None
            self.store.update_job(job)
        except StoreError as e:
            return MarkSentResult(success=False, error=str(e))

        logger.info("job_sent", job_id=job_id, message_id=job.message_id)
        return MarkSentResult(success=True)

    def mark_failed(self, job_id: str, error: Union[SendError, Exception, str],
                    status_hint: Optional[int] = None, now: Optional[datetime] = None) -> MarkFailedResult:
        now = now or utcnow()
        try:
            job = self.store.get_job(job_id)
            if job is None:
                return MarkFailedResult(success=False, error=JOB_NOT_FOUND)

            if job.status != IN_PROGRESS:
                return MarkFailedResult(success=False, error=f"Cannot mark {job.status} job as failed")

            decision = self.retry_policy.decide(error, job.attempts, status_hint=status_hint, now=now)
            message = error.message if isinstance(error, SendError) else str(error)

            job.last_error_code = decision.classification.code
            job.last_error_message_hash = error_hash(message)
            job.in_progress_started_at = None

            if decision.action == RETRY:
                job.status = QUEUED
                job.next_attempt_at = decision.next_attempt_at
            elif decision.action == DEAD:
                job.status = DEAD_LETTER
                job.next_attempt_at = None
            else:
                job.status = FAILED
                job.next_attempt_at = None

            self.store.update_job(job)
        except StoreError as e:
            return MarkFailedResult(success=False, error=str(e))

        log = logger.warning if decision.action != RETRY else logger.info
        log("job_failed", job_id=job_id, action=decision.action, error_code=job.last_error_code,
            attempts=job.attempts, next_attempt_at=job.next_attempt_at, reason=decision.reason)
        return MarkFailedResult(
            success=True,
            action=decision.action,
            next_attempt_at=job.next_attempt_at if decision.action == RETRY else None,
            error_code=job.last_error_code,
        )

    # ---------- Operator actions ----------
    def cancel(self, job_id: str, actor: str, reason: str) -> CancelResult:
        try:
            job = self.store.get_job(job_id)
            if job is None:
                return CancelResult(success=False, error=JOB_NOT_FOUND)

            if job.status == SENT:
                return CancelResult(success=False, error="Cannot cancel a completed action")
            if job.status not in CANCELLABLE_STATUSES:
                return CancelResult(success=False, error=f"Cannot cancel {job.status} job")

            job.status = CANCELLED
            job.cancelled_by = actor
            job.cancel_reason = reason
            job.in_progress_started_at = None
            self.store.update_job(job)
        except StoreError as e:
            return CancelResult(success=False, error=str(e))

        logger.info("job_cancelled", job_id=job_id, actor=actor)
        return CancelResult(success=True)

    def retry_dead_letter(self, job_id: str, actor: str, reason: str) -> RetryDeadLetterResult:
        try:
            job = self.store.get_job(job_id)
            if job is None:
                return RetryDeadLetterResult(success=False, error=JOB_NOT_FOUND)

            if job.status not in REOPENABLE_STATUSES:
                return RetryDeadLetterResult(success=False, error=f"Cannot retry {job.status} job")

            job.status = QUEUED
            job.attempts = 0
            job.next_attempt_at = to_iso(utcnow())
            job.last_error_code = None
            job.last_error_message_hash = None
            job.requeued_by = actor
            job.requeue_reason = reason
            self.store.update_job(job)
        except StoreError as e:
            return RetryDeadLetterResult(success=False, error=str(e))

        logger.info("job_requeued", job_id=job_id, actor=actor)
        return RetryDeadLetterResult(success=True, job_id=job_id)

    # ---------- Queries ----------
    def should_skip_job(self, job: Job) -> bool:
        """
        True only when the store confirms the job was sent. Anything less
        certain is re-attempted rather than dropped.
        """
        if job.status == SENT:
            return True
        try:
            current = self.store.get_job(job.job_id)
        except StoreError:
            return False
        return current is not None and current.status == SENT

    def get_job(self, job_id: str) -> Optional[Job]:
        try:
            return self.store.get_job(job_id)
        except StoreError as e:
            logger.error("job_log_unreadable", error=str(e))
            return None

    def list_jobs(self, status: Optional[str] = None) -> List[Job]:
        try:
            return self.store.list_jobs(status=status)
        except (StoreError, ValueError) as e:
            logger.error("job_log_unreadable", error=str(e))
            return []

    def get_status_counts(self) -> Dict[str, int]:
        try:
            return self.store.count_by_status()
        except StoreError as e:
            logger.error("job_log_unreadable", error=str(e))
            return {}

    def get_dead_letter_jobs(self) -> List[Job]:
        jobs = self.list_jobs(status=DEAD_LETTER)
        jobs.sort(key=lambda j: j.last_updated_at, reverse=True)
        return jobs
