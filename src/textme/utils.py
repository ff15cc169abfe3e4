"""Shared helpers for formatting operator-facing text."""

from __future__ import annotations

from datetime import UTC, datetime


def digits_only(raw: str) -> str:
    """Reduce a phone handle to its digits so +1 (555) 010-0000 == 15550100000."""
    return "".join(ch for ch in (raw or "") if ch.isdigit())


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO string so stored timestamps sort lexically."""
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def iso_now() -> str:
    return to_iso(utc_now())


def parse_dt(value: str) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def preview(text: str, limit: int) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def truncate(text: str, limit: int, marker: str = "\n\n[Truncated]") -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + marker


def format_time_ago(timestamp: str, now: datetime | None = None) -> str:
    current = now or utc_now()
    seconds = int((current - parse_dt(timestamp)).total_seconds())
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"
