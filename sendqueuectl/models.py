from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Optional

# Job States
QUEUED = "queued"
IN_PROGRESS = "in_progress"
SENT = "sent"
FAILED = "failed"
DEAD_LETTER = "dead_letter"  # DLQ
CANCELLED = "cancelled"

ALL_STATUSES = (QUEUED, IN_PROGRESS, SENT, FAILED, DEAD_LETTER, CANCELLED)
TERMINAL_STATUSES = frozenset({SENT, FAILED, DEAD_LETTER, CANCELLED})
REOPENABLE_STATUSES = frozenset({FAILED, DEAD_LETTER})
CANCELLABLE_STATUSES = frozenset({QUEUED, IN_PROGRESS})

TIMESTAMP_FIELDS = ("created_at", "next_attempt_at", "in_progress_started_at", "last_updated_at", "sent_at")

# Retry actions
RETRY = "retry"
FAIL = "fail"
DEAD = "dead_letter"


@dataclass
class SendRequest:
    """An approved send, as handed over by the approval step."""
    draft_id: str
    tracking_id: str = ""
    company_id: str = ""
    template_id: str = ""
    ab_variant: Optional[str] = None
    to_domain: str = ""
    approval_fingerprint: str = ""


@dataclass
class Job:
    job_id: str
    draft_id: str
    created_at: str
    status: str = QUEUED
    tracking_id: str = ""
    company_id: str = ""
    template_id: str = ""
    ab_variant: Optional[str] = None
    to_domain: str = ""
    approval_fingerprint: str = ""
    attempts: int = 0
    next_attempt_at: Optional[str] = None
    in_progress_started_at: Optional[str] = None
    last_error_code: Optional[str] = None
    last_error_message_hash: Optional[str] = None
    last_updated_at: str = ""
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    sent_at: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    requeued_by: Optional[str] = None
    requeue_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """
        Build a Job from one log record. Unknown keys are ignored so older
        readers tolerate newer snapshots. Raises ValueError when the record
        cannot describe a job.
        """
        if not isinstance(data, dict):
            raise ValueError("snapshot is not an object")
        if not data.get("job_id") or not data.get("draft_id"):
            raise ValueError("snapshot without job_id/draft_id")
        if data.get("status") not in ALL_STATUSES:
            raise ValueError(f"unknown status {data.get('status')!r}")
        for name in TIMESTAMP_FIELDS:
            if not isinstance(data.get(name), (str, type(None))):
                raise ValueError(f"{name} is not a timestamp string")
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs.setdefault("created_at", "")
        job = cls(**kwargs)
        job.attempts = int(job.attempts or 0)
        return job


# ---------- Results ----------
# Every QueueManager operation answers with one of these instead of raising.

@dataclass
class EnqueueResult:
    success: bool
    job_id: Optional[str] = None
    job: Optional[Job] = None
    error: Optional[str] = None
    already_queued: bool = False
    existing_job_id: Optional[str] = None


@dataclass
class LeaseResult:
    success: bool
    job: Optional[Job] = None
    error: Optional[str] = None


@dataclass
class MarkSentResult:
    success: bool
    already_sent: bool = False
    error: Optional[str] = None


@dataclass
class MarkFailedResult:
    success: bool
    action: str = FAIL
    next_attempt_at: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CancelResult:
    success: bool
    error: Optional[str] = None


@dataclass
class RetryDeadLetterResult:
    success: bool
    job_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class JobProcessResult:
    job_id: str
    tracking_id: str
    status: str  # sent | blocked | retry | dead_letter | failed | skipped
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    error_code: Optional[str] = None
    reason: Optional[str] = None
    next_attempt_at: Optional[str] = None


@dataclass
class ProcessResult:
    dry_run: bool
    processed: int = 0
    sent: int = 0
    blocked: int = 0
    retried: int = 0
    dead_letter: int = 0
    failed: int = 0
    skipped: int = 0
    jobs: List[JobProcessResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
