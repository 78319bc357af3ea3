"""
Operational metrics for the ledger and the reporter.

Events:
- ledger/transaction_committed, ledger/transaction_rejected
- ledger/backdated_recompute, ledger/portfolio_reset
- report/generated, report/irr_undefined

Each event is logged at INFO and kept in a bounded in-memory buffer that
backs the /api/v1/metrics endpoints. Nothing is persisted.
"""
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

LEDGER = "ledger"
REPORT = "report"


@dataclass
class MetricEvent:
    timestamp: datetime
    category: str
    event_type: str
    value: float
    portfolio_id: Optional[int] = None
    symbol: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.category}/{self.event_type}"

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "category": self.category,
            "event_type": self.event_type,
            "symbol": self.symbol,
            "portfolio_id": self.portfolio_id,
            "value": self.value,
            "metadata": self.metadata,
        }


class MetricsEmitter:
    """Log-and-buffer emitter. One process-wide instance: `metrics`."""

    def __init__(self, buffer_size: int = 1000):
        self._buffer: Deque[MetricEvent] = deque(maxlen=buffer_size)
        self._enabled = True

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        """Stop recording; emit() returns None until enable() is called."""
        self._enabled = False

    def emit(
        self,
        category: str,
        event_type: str,
        value: float,
        portfolio_id: Optional[int] = None,
        symbol: Optional[str] = None,
        **metadata: Any,
    ) -> Optional[MetricEvent]:
        if not self._enabled:
            return None

        event = MetricEvent(
            timestamp=datetime.now(timezone.utc),
            category=category,
            event_type=event_type,
            value=value,
            portfolio_id=portfolio_id,
            symbol=symbol,
            metadata=metadata,
        )
        logger.info(
            "METRIC [%s] portfolio=%s symbol=%s value=%s%s",
            event.key, portfolio_id, symbol, value, f" {metadata}" if metadata else "",
        )
        self._buffer.append(event)
        return event

    # =========================================================================
    # Ledger events
    # =========================================================================

    def transaction_committed(self, portfolio_id: int, tx_type: str, amount: float,
                              symbol: Optional[str], transaction_id: int) -> Optional[MetricEvent]:
        return self.emit(LEDGER, "transaction_committed", amount, portfolio_id, symbol,
                         type=tx_type, transaction_id=transaction_id)

    def transaction_rejected(self, portfolio_id: int, tx_type: str, code: str,
                             symbol: Optional[str]) -> Optional[MetricEvent]:
        return self.emit(LEDGER, "transaction_rejected", 1.0, portfolio_id, symbol,
                         type=tx_type, code=code)

    def backdated_recompute(self, portfolio_id: int, rows: int) -> Optional[MetricEvent]:
        """`rows` is the number of ledger rows re-stamped."""
        return self.emit(LEDGER, "backdated_recompute", rows, portfolio_id)

    def portfolio_reset(self, portfolio_id: int, deleted: int) -> Optional[MetricEvent]:
        return self.emit(LEDGER, "portfolio_reset", deleted, portfolio_id)

    # =========================================================================
    # Report events
    # =========================================================================

    def report_generated(self, portfolio_id: int, period: str, total_value: float,
                         duration_ms: float) -> Optional[MetricEvent]:
        return self.emit(REPORT, "generated", total_value, portfolio_id,
                         period=period, duration_ms=round(duration_ms, 2))

    def irr_undefined(self, portfolio_id: int, method: str, reason: str) -> Optional[MetricEvent]:
        return self.emit(REPORT, "irr_undefined", 0.0, portfolio_id, method=method, reason=reason)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_buffer(self) -> List[MetricEvent]:
        """Buffered events, oldest first."""
        return list(self._buffer)

    def get_summary(self, hours: int = 24) -> dict:
        """Event counts over the last `hours`, with the ledger rejection rate."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        recent = [e for e in self._buffer if e.timestamp >= cutoff]

        by_event = Counter(e.key for e in recent)
        rejected_by_code = Counter(
            e.metadata.get("code", "unknown")
            for e in recent
            if e.event_type == "transaction_rejected"
        )
        committed = by_event[f"{LEDGER}/transaction_committed"]
        rejected = by_event[f"{LEDGER}/transaction_rejected"]
        attempts = committed + rejected

        return {
            "period_hours": hours,
            "total_events": len(recent),
            "by_category": dict(Counter(e.category for e in recent)),
            "by_event": dict(by_event),
            "transactions_committed": committed,
            "transactions_rejected": rejected,
            "rejection_rate": rejected / attempts if attempts else None,
            "rejected_by_code": dict(rejected_by_code),
            "reports_generated": by_event[f"{REPORT}/generated"],
        }

    def clear_buffer(self) -> int:
        """Empty the buffer; returns how many events were dropped."""
        count = len(self._buffer)
        self._buffer.clear()
        return count


metrics = MetricsEmitter()
