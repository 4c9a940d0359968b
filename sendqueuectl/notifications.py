"""
Operational notifications.

Notifications never carry PII: job ids, tracking ids, template ids and the
recipient domain only. Delivery is best effort. A failing webhook is logged
and forgotten; it must never fail or block a queue operation.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlsplit

import httpx
import structlog

from .utils import now_iso

logger = structlog.get_logger()

SEVERITY_ICONS = {"info": ":information_source:", "warn": ":warning:", "error": ":rotating_light:"}


@dataclass
class NotificationEvent:
    type: str
    severity: str  # info | warn | error
    reason: str
    meta: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)

    def format_text(self) -> str:
        icon = SEVERITY_ICONS.get(self.severity, "")
        lines = [f"{icon} [{self.type}] {self.reason}".strip()]
        for k, v in self.meta.items():
            if v is not None:
                lines.append(f"• {k}: {v}")
        return "\n".join(lines)


class Notifier(Protocol):
    def notify(self, event: NotificationEvent) -> None: ...


class NullNotifier:
    def notify(self, event: NotificationEvent) -> None:
        return None


class MemoryNotifier:
    """Keeps events in a list. Handy for dry runs and tests."""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)


class WebhookNotifier:
    """Posts a Slack-compatible payload to an incoming webhook."""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    @property
    def masked_url(self) -> str:
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}/***" if parts.netloc else "(invalid URL)"

    def _payload(self, event: NotificationEvent) -> Dict[str, Any]:
        return {
            "text": event.format_text(),
            "event": {
                "timestamp": event.timestamp,
                "type": event.type,
                "severity": event.severity,
                "reason": event.reason,
                "meta": event.meta,
            },
        }

    def notify(self, event: NotificationEvent) -> None:
        try:
            if self._client is not None:
                resp = self._client.post(self.url, json=self._payload(event), timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(self.url, json=self._payload(event))
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("notification_failed", type=event.type, url=self.masked_url, error=str(e))


def build_notifier(cfg: Dict[str, str]) -> Notifier:
    url = (cfg.get("notify_webhook_url") or "").strip()
    return WebhookNotifier(url) if url else NullNotifier()


def send_notification(notifier: Optional[Notifier], event: NotificationEvent) -> None:
    """Fire and forget: whatever the notifier does, the caller carries on."""
    if notifier is None:
        return
    try:
        notifier.notify(event)
    except Exception as e:  # collaborator failures must not reach the queue
        logger.warning("notification_failed", type=event.type, error=str(e))


def notify_dead_letter(notifier, job_id: str, error_code: Optional[str], attempts: int,
                       to_domain: str, template_id: str = "", tracking_id: str = ""):
    send_notification(notifier, NotificationEvent(
        type="SEND_QUEUE_DEAD_LETTER",
        severity="error",
        reason=f"Job {job_id} moved to dead letter after {attempts} attempt(s)",
        meta={"job_id": job_id, "error_code": error_code, "attempts": attempts,
              "to_domain": to_domain, "template_id": template_id, "tracking_id": tracking_id},
    ))


def notify_backoff(notifier, job_id: str, error_code: Optional[str], next_attempt_at: Optional[str], attempts: int):
    send_notification(notifier, NotificationEvent(
        type="SEND_QUEUE_BACKOFF",
        severity="warn",
        reason=f"Job {job_id} backed off (attempt {attempts})",
        meta={"job_id": job_id, "error_code": error_code,
              "next_attempt_at": next_attempt_at, "attempts": attempts},
    ))


def notify_send_success(notifier, job_id: str, tracking_id: str, company_id: str,
                        template_id: str, ab_variant: Optional[str]):
    send_notification(notifier, NotificationEvent(
        type="AUTO_SEND_SUCCESS",
        severity="info",
        reason=f"Job {job_id} sent",
        meta={"job_id": job_id, "tracking_id": tracking_id, "company_id": company_id,
              "template_id": template_id, "ab_variant": ab_variant},
    ))


def notify_blocked(notifier, job_id: str, tracking_id: str, reason: str, error_code: Optional[str] = None):
    send_notification(notifier, NotificationEvent(
        type="AUTO_SEND_BLOCKED",
        severity="warn",
        reason=f"Job {job_id} blocked: {reason}",
        meta={"job_id": job_id, "tracking_id": tracking_id, "error_code": error_code},
    ))


def notify_reaped(notifier, requeued: int, dead_lettered: int, sample_job_ids: List[str]):
    send_notification(notifier, NotificationEvent(
        type="SEND_QUEUE_REAPED",
        severity="warn",
        reason=f"Reaped {requeued + dead_lettered} stale job(s): "
               f"{requeued} requeued, {dead_lettered} dead_lettered",
        meta={"requeued": requeued, "dead_lettered": dead_lettered, "sample_job_ids": sample_job_ids},
    ))
