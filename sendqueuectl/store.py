"""
Append-only NDJSON job log.

Every mutation appends one complete snapshot of the job; readers replay the
whole file and keep the last snapshot per job_id. Lines that fail to parse
are skipped so a half-written tail from an interrupted process never blocks
the queue. A single writer process is assumed.
"""
import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog

from .errors import StoreError
from .models import Job, SendRequest, ALL_STATUSES, IN_PROGRESS, QUEUED
from .utils import now_iso, parse_iso, to_iso, utcnow

logger = structlog.get_logger()


def _created_key(job: Job) -> datetime:
    return parse_iso(job.created_at) or datetime.min.replace(tzinfo=timezone.utc)


def generate_job_id() -> str:
    return f"SND-{uuid.uuid4().hex[:12]}"


class JobStore:
    def __init__(self, path):
        self.path = Path(path)

    # ---------- Low level ----------
    def _read_lines(self) -> List[str]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8", errors="replace") as f:
                return f.read().splitlines()
        except OSError as e:
            raise StoreError(f"cannot read job log {self.path}: {e}") from e

    def _replay(self) -> Dict[str, Job]:
        jobs: Dict[str, Job] = {}
        skipped = 0
        for line in self._read_lines():
            if not line.strip():
                continue
            try:
                job = Job.from_dict(json.loads(line))
            except (ValueError, TypeError):
                skipped += 1
                continue
            jobs[job.job_id] = job
        if skipped:
            logger.debug("job_log_lines_skipped", path=str(self.path), count=skipped)
        return jobs

    def _needs_newline(self) -> bool:
        try:
            if self.path.stat().st_size == 0:
                return False
            with open(self.path, "rb") as f:
                f.seek(-1, os.SEEK_END)
                return f.read(1) != b"\n"
        except FileNotFoundError:
            return False

    def append(self, job: Job) -> None:
        line = json.dumps(job.to_dict(), ensure_ascii=False, sort_keys=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            prefix = "\n" if self._needs_newline() else ""
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(prefix + line + "\n")
                f.flush()
        except OSError as e:
            raise StoreError(f"cannot append to job log {self.path}: {e}") from e

    # ---------- Writes ----------
    def create_job(self, request: SendRequest, now: Optional[datetime] = None) -> Job:
        ts = to_iso(now or utcnow())
        job = Job(
            job_id=generate_job_id(),
            draft_id=request.draft_id,
            created_at=ts,
            status=QUEUED,
            tracking_id=request.tracking_id,
            company_id=request.company_id,
            template_id=request.template_id,
            ab_variant=request.ab_variant,
            to_domain=request.to_domain,
            approval_fingerprint=request.approval_fingerprint,
            attempts=0,
            next_attempt_at=ts,
            last_updated_at=ts,
        )
        self.append(job)
        return job

    def update_job(self, job: Job) -> None:
        job.last_updated_at = now_iso()
        self.append(job)

    # ---------- Reads ----------
    def get_job(self, job_id: str) -> Optional[Job]:
        return self._replay().get(job_id)

    def all_jobs(self) -> List[Job]:
        return list(self._replay().values())

    def list_jobs(self, status: Optional[str] = None,
                  predicate: Optional[Callable[[Job], bool]] = None) -> List[Job]:
        if status is not None and status not in ALL_STATUSES:
            raise ValueError(f"unknown status {status!r}")
        jobs = self.all_jobs()
        if status:
            jobs = [j for j in jobs if j.status == status]
        if predicate:
            jobs = [j for j in jobs if predicate(j)]
        jobs.sort(key=_created_key)
        return jobs

    def find_by_draft_id(self, draft_id: str) -> List[Job]:
        return self.list_jobs(predicate=lambda j: j.draft_id == draft_id)

    def ready_jobs(self, now: Optional[datetime] = None) -> List[Job]:
        """Queued jobs whose backoff has elapsed, oldest first."""
        now = now or utcnow()

        def eligible(job: Job) -> bool:
            due = parse_iso(job.next_attempt_at)
            return due is None or due <= now

        return self.list_jobs(status=QUEUED, predicate=eligible)

    def find_next_ready(self, now: Optional[datetime] = None) -> Optional[Job]:
        ready = self.ready_jobs(now)
        return ready[0] if ready else None

    def find_stale(self, stale_minutes: float, now: Optional[datetime] = None) -> List[Job]:
        threshold = (now or utcnow()) - timedelta(minutes=stale_minutes)

        def stale(job: Job) -> bool:
            started = parse_iso(job.in_progress_started_at)
            return started is not None and started < threshold

        jobs = self.list_jobs(status=IN_PROGRESS, predicate=stale)
        jobs.sort(key=lambda j: parse_iso(j.in_progress_started_at))
        return jobs

    def count_by_status(self) -> Dict[str, int]:
        out = {s: 0 for s in ALL_STATUSES}
        for job in self.all_jobs():
            out[job.status] += 1
        return out
