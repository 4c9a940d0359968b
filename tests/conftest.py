"""Shared fixtures: every test gets its own queue file under tmp_path."""
from datetime import timedelta

import pytest
import structlog

from sendqueuectl.manager import QueueManager
from sendqueuectl.models import SendRequest
from sendqueuectl.retry import RetryConfig, RetryPolicy
from sendqueuectl.store import JobStore
from sendqueuectl.utils import parse_iso


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def queue_file(tmp_path):
    return tmp_path / "data" / "send_queue.ndjson"


@pytest.fixture
def store(queue_file):
    return JobStore(queue_file)


@pytest.fixture
def policy():
    # No jitter so backoff is deterministic.
    return RetryPolicy(RetryConfig(max_attempts=3, base_delay_seconds=60, max_delay_seconds=3600,
                                   multiplier=2, jitter_factor=0))


@pytest.fixture
def manager(store, policy):
    return QueueManager(store, policy)


@pytest.fixture
def make_request():
    def _make(draft_id="draft-123", **overrides):
        fields = dict(
            draft_id=draft_id,
            tracking_id="track-abc",
            company_id="company-xyz",
            template_id="template-001",
            ab_variant="A",
            to_domain="example.com",
            approval_fingerprint="fp12345",
        )
        fields.update(overrides)
        return SendRequest(**fields)
    return _make


def after(job, seconds=1):
    """A moment just past the job's backoff."""
    return parse_iso(job.next_attempt_at) + timedelta(seconds=seconds)
