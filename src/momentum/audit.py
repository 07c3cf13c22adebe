"""
Structured audit events for trade state transitions.

One event is emitted per transition (buy, hedge, sell, redemption outcome),
never per retry attempt. Sinks are passed explicitly to the detector, trader
and hedge engine instead of being reached through a module-level global.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    BUY = "buy"
    BUY_FAILED = "buy_failed"
    LIMIT_BUY_PLACED = "limit_buy_placed"
    BUY_FILLED = "buy_filled"
    SELL_ORDERS_PLACED = "sell_orders_placed"
    SELL = "sell"
    SELL_FILLED = "sell_filled"
    SELL_ABORTED = "sell_aborted"
    SELL_EXHAUSTED = "sell_exhausted"
    STOP_LOSS = "stop_loss"
    OPPOSITE_HEDGE = "opposite_hedge"
    HEDGE = "hedge"
    CANCELLED = "cancelled"
    REDEEMED = "redeemed"
    ALREADY_REDEEMED = "already_redeemed"
    REDEMPTION_ABANDONED = "redemption_abandoned"
    CYCLE_COMPLETED = "cycle_completed"
    RESYNC = "resync"


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class AuditEvent:
    """A single state-transition record."""

    event: AuditEventType
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event": self.event.value,
            "message": self.message,
            **self.data,
        }


class AuditSink:
    """Base sink: logs the event summary line."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def emit(
        self,
        event: AuditEventType,
        message: str,
        **data: Any,
    ) -> AuditEvent:
        record = AuditEvent(event=event, message=message, data=data)
        self.log.info(f"{event.value.upper()} | {message}")
        self.record(record)
        return record

    def record(self, event: AuditEvent) -> None:
        """Persist an event. The base sink only logs."""
        pass


class MemoryAuditSink(AuditSink):
    """Keeps events in memory; used by paper sessions and tests."""

    def __init__(self, log: Optional[logging.Logger] = None):
        super().__init__(log)
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: AuditEventType) -> list[AuditEvent]:
        return [e for e in self.events if e.event == event_type]


class JsonlAuditSink(AuditSink):
    """Appends one JSON line per event to a history file."""

    def __init__(
        self,
        path: Union[str, Path] = "data/trade_history.jsonl",
        log: Optional[logging.Logger] = None,
    ):
        super().__init__(log)
        self.path = Path(path)

    def record(self, event: AuditEvent) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")
        except OSError as e:
            self.log.warning(f"Failed to write audit event: {e}")
