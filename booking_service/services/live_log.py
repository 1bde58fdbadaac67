from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

__all__ = ["LiveLogEntry", "push", "snapshot", "clear", "MAX_ENTRIES"]

MAX_ENTRIES = 500
UTC = timezone.utc


@dataclass(slots=True)
class LiveLogEntry:
    timestamp: datetime
    source: str
    message: str
    level: str = "INFO"


_BUFFER = deque[LiveLogEntry](maxlen=MAX_ENTRIES)


def push(source: str, message: str, *, level: str = "INFO") -> None:
    """Append a sweep line for dashboards; never raises."""
    _BUFFER.append(
        LiveLogEntry(
            timestamp=datetime.now(UTC),
            source=source,
            message=message,
            level=level.upper(),
        )
    )


def snapshot(limit: int = 50, *, source: Optional[str] = None) -> List[LiveLogEntry]:
    """Return up to *limit* recent entries, oldest first, optionally for one *source*."""
    if limit <= 0:
        return []
    entries = [e for e in _BUFFER if source is None or e.source == source]
    return entries[-limit:]


def clear() -> None:
    _BUFFER.clear()
