"""
Structured logging for the periodic sweeps.

One compact JSON line per notable event so log pipelines can aggregate
reminders, escalations and reconciler fixes without parsing prose.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

__all__ = ["SweepEvent", "SweepLogEntry", "log_sweep_event"]

logger = logging.getLogger("sweeps.structured")


class SweepEvent(str, Enum):
    SWEEP_START = "sweep_start"
    SWEEP_END = "sweep_end"
    SWEEP_FAILED = "sweep_failed"
    READINESS_CHECK_SENT = "readiness_check_sent"
    REMINDER_SENT = "reminder_sent"
    REMINDER_SKIPPED = "reminder_skipped"
    ESCALATED = "escalated"
    FIX_APPLIED = "fix_applied"
    FIX_FAILED = "fix_failed"
    POINTER_CLEARED = "pointer_cleared"
    ACCEPTANCE_RELEASED = "acceptance_released"


@dataclass
class SweepLogEntry:
    timestamp: str
    event: str
    sweep: str
    order_id: Optional[int] = None
    specialist_id: Optional[int] = None
    category: Optional[str] = None
    reminder_type: Optional[str] = None
    reminder_count: Optional[int] = None
    success: Optional[bool] = None
    reason: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        data = {k: v for k, v in asdict(self).items() if v is not None and v != {}}
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)


def log_sweep_event(
    event: SweepEvent,
    *,
    sweep: str,
    order_id: Optional[int] = None,
    specialist_id: Optional[int] = None,
    category: Optional[str] = None,
    reminder_type: Optional[str] = None,
    reminder_count: Optional[int] = None,
    success: Optional[bool] = None,
    reason: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
    level: str = "INFO",
) -> str:
    """Emit *event* as a JSON line on the ``sweeps.structured`` logger and return it."""
    entry = SweepLogEntry(
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        event=event.value,
        sweep=sweep,
        order_id=order_id,
        specialist_id=specialist_id,
        category=category,
        reminder_type=reminder_type,
        reminder_count=reminder_count,
        success=success,
        reason=reason,
        details=details or {},
    )
    json_msg = entry.to_json()
    log_method = getattr(logger, level.lower(), logger.info)
    log_method(json_msg)
    return json_msg
