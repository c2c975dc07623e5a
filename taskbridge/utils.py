import re
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence, TypeVar

T = TypeVar("T")


def ellipsis(text: str, length: int = 50, end: str = "...") -> str:
    """
    Truncate `text` to roughly `length` characters without cutting a word in half.
    """
    if len(text) <= length:
        return text
    match = re.match(rf"^.{{{length}}}(\w+)?", text)
    head = match.group(0) if match else text[:length]
    return head + end


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 / RFC3339 string into an aware datetime (UTC if naive)."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat()


def format_rfc3339(dt: datetime) -> str:
    """Normalize datetime to RFC3339 `YYYY-MM-DDTHH:MM:SSZ` format."""
    if dt.tzinfo is None:
        # Assume naive datetimes are already UTC
        dt_utc = dt.replace(microsecond=0)
    else:
        dt_utc = dt.astimezone(timezone.utc).replace(tzinfo=None, microsecond=0)

    return dt_utc.isoformat(timespec="seconds") + "Z"


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    for start in range(0, len(items), size):
        yield list(items[start:start + size])
