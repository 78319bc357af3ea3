"""
Read-only view over the in-process metrics buffer.

GET /summary counts ledger and report events; GET /events lists recent
events newest first.
"""
from datetime import datetime, timedelta, timezone
from itertools import islice
from typing import Dict, List, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from stockfolio.core.metrics import MetricEvent, metrics

router = APIRouter()

HoursQuery = Query(default=24, ge=1, le=168, description="Look-back window in hours")


class MetricsSummary(BaseModel):
    period_hours: int
    total_events: int
    by_category: Dict[str, int]
    by_event: Dict[str, int]
    transactions_committed: int
    transactions_rejected: int
    rejection_rate: Optional[float]
    rejected_by_code: Dict[str, int]
    reports_generated: int


class MetricEventResponse(BaseModel):
    timestamp: str
    category: str
    event_type: str
    symbol: Optional[str]
    portfolio_id: Optional[int]
    value: float
    metadata: dict


@router.get("/summary", response_model=MetricsSummary)
async def metrics_summary(hours: int = HoursQuery) -> MetricsSummary:
    return MetricsSummary(**metrics.get_summary(hours=hours))


@router.get("/events", response_model=List[MetricEventResponse])
async def recent_events(
    category: Optional[str] = Query(default=None, description="ledger or report"),
    event_type: Optional[str] = Query(default=None),
    portfolio_id: Optional[int] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    hours: int = HoursQuery,
) -> List[MetricEventResponse]:
    cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)

    def wanted(event: MetricEvent) -> bool:
        return (
            event.timestamp >= cutoff
            and (category is None or event.category == category)
            and (event_type is None or event.event_type == event_type)
            and (portfolio_id is None or event.portfolio_id == portfolio_id)
        )

    matching = filter(wanted, reversed(metrics.get_buffer()))
    return [MetricEventResponse(**e.to_dict()) for e in islice(matching, limit)]
