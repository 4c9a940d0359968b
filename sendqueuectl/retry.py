"""
Failure classification and exponential backoff.

Three outcomes are possible for a failed delivery:
  transient -> retried with backoff until max_attempts, then dead_letter
  fatal     -> dead_letter immediately (credentials, bad request, missing draft)
  policy    -> failed; somebody stopped sending on purpose and must lift it
"""
import random
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Union

from .errors import ErrorKind, SendError
from .models import RETRY, FAIL, DEAD
from .utils import iso_after_seconds, utcnow

_HTTP_STATUS_RE = re.compile(r"(?i)\bHTTP\s*(\d{3})\b")
_BARE_STATUS_RE = re.compile(r"\b(429|401|403|404|400|5\d\d)\b")

# (code, kind, reason) checked in order against the lowercased message.
_TEXT_RULES = (
    ("rate_limited", ErrorKind.TRANSIENT, "Rate limited by channel",
     ("rate limit", "rate_limit", "too many requests", "quota")),
    ("server_error", ErrorKind.TRANSIENT, "Channel server error",
     ("server error", "service unavailable", "internal error", "bad gateway", "timed out", "timeout")),
    ("bad_request", ErrorKind.FATAL, "Bad request - invalid draft or parameters",
     ("bad request",)),
    ("auth", ErrorKind.FATAL, "Authentication error - check credentials",
     ("unauthorized", "forbidden", "invalid_grant", "auth", "credential",
      "invalid token", "token expired", "expired token")),
    ("policy", ErrorKind.POLICY, "Policy check failed - sending not allowed",
     ("kill_switch", "kill switch", "not_enabled", "not enabled", "sending disabled", "allowlist", "policy")),
    ("gate", ErrorKind.POLICY, "Pre-send gate check failed",
     ("gate", "presend", "violation")),
    ("not_found", ErrorKind.FATAL, "Draft not found",
     ("not found", "missing")),
)

_KIND_CODES = {
    ErrorKind.TRANSIENT: "unknown",
    ErrorKind.FATAL: "fatal",
    ErrorKind.POLICY: "policy",
}


@dataclass
class RetryConfig:
    max_attempts: int = 5
    base_delay_seconds: float = 60
    max_delay_seconds: float = 3600
    multiplier: float = 2
    jitter_factor: float = 0.2

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("backoff delays must be >= 0")
        if not 0 <= self.jitter_factor < 1:
            raise ValueError("jitter_factor must be in [0, 1)")

    @classmethod
    def from_config(cls, cfg: Dict[str, str]) -> "RetryConfig":
        return cls(
            max_attempts=int(cfg.get("max_attempts", 5)),
            base_delay_seconds=float(cfg.get("backoff_base_seconds", 60)),
            max_delay_seconds=float(cfg.get("backoff_max_seconds", 3600)),
            multiplier=float(cfg.get("backoff_multiplier", 2)),
            jitter_factor=float(cfg.get("jitter_factor", 0.2)),
        )


@dataclass
class Classification:
    code: str
    kind: ErrorKind
    reason: str

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


@dataclass
class RetryDecision:
    action: str  # retry | fail | dead_letter
    classification: Classification
    delay_seconds: float = 0
    next_attempt_at: Optional[str] = None
    reason: str = ""


def extract_status(message: str) -> Optional[int]:
    """Pull an HTTP-like status out of free text ('HTTP 503', 'error 429: ...')."""
    m = _HTTP_STATUS_RE.search(message) or _BARE_STATUS_RE.search(message)
    return int(m.group(1)) if m else None


def classify_status(status: int) -> Optional[Classification]:
    if status == 429:
        return Classification("rate_limited", ErrorKind.TRANSIENT, "Rate limited by channel")
    if 500 <= status < 600:
        return Classification("server_error", ErrorKind.TRANSIENT, f"Channel server error ({status})")
    if status in (401, 403):
        return Classification("auth", ErrorKind.FATAL, "Authentication error - check credentials")
    if status == 404:
        return Classification("not_found", ErrorKind.FATAL, "Draft not found")
    if status == 400:
        return Classification("bad_request", ErrorKind.FATAL, "Bad request - invalid draft or parameters")
    return None


class RetryPolicy:
    def __init__(self, config: Optional[RetryConfig] = None, rng: Optional[random.Random] = None):
        self.config = config or RetryConfig()
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    def classify(self, error: Union[SendError, Exception, str],
                 status_hint: Optional[int] = None) -> Classification:
        message = error.message if isinstance(error, SendError) else str(error)

        if isinstance(error, SendError) and error.kind is not None:
            by_status = classify_status(error.status) if error.status else None
            if by_status is not None and by_status.kind is error.kind:
                return by_status
            code = self._code_from_text(message, error.kind) or _KIND_CODES[error.kind]
            return Classification(code, error.kind, message or error.kind.value)

        status = status_hint
        if status is None and isinstance(error, SendError):
            status = error.status
        if status is None:
            status = extract_status(message)
        if status is not None:
            found = classify_status(status)
            if found is not None:
                return found

        lowered = message.lower()
        for code, kind, reason, needles in _TEXT_RULES:
            if any(n in lowered for n in needles):
                return Classification(code, kind, reason)
        return Classification("unknown", ErrorKind.TRANSIENT, "Unknown error - will retry")

    @staticmethod
    def _code_from_text(message: str, kind: ErrorKind) -> Optional[str]:
        lowered = message.lower()
        for code, rule_kind, _reason, needles in _TEXT_RULES:
            if rule_kind is kind and any(n in lowered for n in needles):
                return code
        return None

    def backoff_seconds(self, attempts: int) -> float:
        cfg = self.config
        exponent = max(attempts, 1) - 1
        delay = min(cfg.max_delay_seconds, cfg.base_delay_seconds * cfg.multiplier ** exponent)
        if cfg.jitter_factor:
            delay *= self._rng.uniform(1 - cfg.jitter_factor, 1 + cfg.jitter_factor)
        return delay

    def decide(self, error: Union[SendError, Exception, str], attempts: int,
               status_hint: Optional[int] = None, now: Optional[datetime] = None) -> RetryDecision:
        classification = self.classify(error, status_hint)

        if classification.kind is ErrorKind.POLICY:
            return RetryDecision(FAIL, classification, reason="Policy stop - operator must lift it")

        if classification.kind is ErrorKind.FATAL:
            return RetryDecision(DEAD, classification, reason="Not retryable")

        if attempts >= self.config.max_attempts:
            return RetryDecision(
                DEAD, classification,
                reason=f"Max attempts ({self.config.max_attempts}) exhausted",
            )

        delay = self.backoff_seconds(attempts)
        return RetryDecision(
            RETRY,
            classification,
            delay_seconds=delay,
            next_attempt_at=iso_after_seconds(delay, now or utcnow()),
            reason=f"Retry in {round(delay)}s (attempt {attempts + 1}/{self.config.max_attempts})",
        )
