"""
Performance API endpoints.

Provides:
- Performance report per period (returns, IRR/XIRR, volatility, drawdown)
- Daily valuation series for charting
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from stockfolio.api.deps import get_reporter
from stockfolio.services.reporting_service import PerformanceReporter

router = APIRouter()


# ============================================================================
# Pydantic Response Schemas
# ============================================================================

class HoldingPerformanceSchema(BaseModel):
    ticker: str
    shares: float
    current_price: float
    price_as_of: Optional[date] = None
    current_value: float
    average_cost: float
    fifo_cost: float
    unrealized_gain_avg: float
    unrealized_gain_fifo: float
    realized_gain_avg: float
    realized_gain_fifo: float
    dividend_income: float
    total_return: float
    return_percent: float


class PerformanceReportSchema(BaseModel):
    """Performance report; rates and returns are in percent."""
    portfolio_id: int
    period: str
    period_start: date
    generated_at: datetime
    cash_balance: float
    stock_value: float
    total_value: float
    start_value: float
    net_contributions: float
    realized_gain_avg: float
    realized_gain_fifo: float
    unrealized_gain_avg: float
    unrealized_gain_fifo: float
    dividend_income: float
    total_return: float
    return_percent: float
    time_weighted_return: float
    money_weighted_return: float
    irr: Optional[float] = None
    irr_note: Optional[str] = None
    xirr: Optional[float] = None
    xirr_note: Optional[str] = None
    volatility: float
    max_drawdown: float
    drawdown_start: Optional[date] = None
    drawdown_end: Optional[date] = None
    drawdown_days: int
    period_returns: Dict[str, Optional[float]]
    holdings: List[HoldingPerformanceSchema]


class DailyValuationSchema(BaseModel):
    date: date
    cash_balance: Decimal
    stock_value: Decimal
    total_value: Decimal
    deposits: Decimal
    withdrawals: Decimal
    adjusted_change: Decimal
    change_percent: float
    positions: Dict[str, Decimal]


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/{portfolio_id}/performance", response_model=PerformanceReportSchema)
async def get_performance_report(
    portfolio_id: int,
    period: str = Query("ALL", description="ALL, YTD, 1Y or 1M"),
    reporter: PerformanceReporter = Depends(get_reporter),
):
    return await reporter.generate_report(portfolio_id, period)


@router.get("/{portfolio_id}/daily-values", response_model=List[DailyValuationSchema])
async def get_daily_values(
    portfolio_id: int,
    start_date: date,
    end_date: date,
    reporter: PerformanceReporter = Depends(get_reporter),
):
    """Day-by-day portfolio value with cash-flow-adjusted change."""
    return await reporter.valuation_builder.get_daily_values(portfolio_id, start_date, end_date)
