from datetime import datetime, timezone, timedelta
from typing import Optional
import hashlib
import re

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")

def parse_delay_to_seconds(s: str) -> int:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h', '90m'.
    Returns total seconds (int). Raises ValueError on bad input or zero.
    """
    if not s:
        raise ValueError("delay string is empty")
    m = DELAY_RE.match(s)
    if not m:
        raise ValueError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    if total <= 0:
        raise ValueError("delay must be > 0 seconds")
    return total

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def to_iso(dt: datetime) -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

def now_iso() -> str:
    return to_iso(utcnow())

def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Inverse of to_iso. Naive strings are taken as UTC; bad input gives None."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

def iso_after_seconds(seconds: float, now: Optional[datetime] = None) -> str:
    """Return UTC ISO time `seconds` after `now` (default: current time)."""
    return to_iso((now or utcnow()) + timedelta(seconds=seconds))

def short_hash(text: str) -> str:
    """First 8 hex chars of sha256, enough to group identical errors without storing them."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:8]

def approval_fingerprint(token: str) -> str:
    return short_hash(token)

def error_hash(message: str) -> str:
    return short_hash(message)
