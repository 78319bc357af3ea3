"""
Portfolio API Router.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from stockfolio.api.deps import (
    get_ledger_service,
    get_portfolio_service,
    get_price_feed_dep,
    get_reporter,
)
from stockfolio.services.ledger_service import LedgerService
from stockfolio.services.portfolio_service import PortfolioService
from stockfolio.services.price_feed import PriceFeed
from stockfolio.services.reporting_service import PerformanceReporter

router = APIRouter()

# ---------- Pydantic Schemas ----------

class PortfolioCreate(BaseModel):
    name: str
    description: Optional[str] = None


class PortfolioSchema(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class HoldingSchema(BaseModel):
    ticker: str
    shares: Decimal
    average_cost: Decimal
    fifo_cost: Decimal
    current_price: Optional[Decimal] = None
    price_as_of: Optional[date] = None
    target_percentage: Optional[Decimal] = None
    adjustment_percentage: Optional[Decimal] = None

    class Config:
        from_attributes = True


class StockLotSchema(BaseModel):
    id: int
    transaction_id: int
    ticker: str
    shares: Decimal
    remaining_shares: Decimal
    purchase_price: Decimal
    purchase_date: datetime

    class Config:
        from_attributes = True


class TargetUpdate(BaseModel):
    target_percentage: Optional[Decimal] = None


class PortfolioSummarySchema(BaseModel):
    portfolio_id: int
    cash_balance: float
    total_value: float
    total_cost_avg: float
    total_cost_fifo: float
    unrealized_gain_avg: float
    unrealized_gain_fifo: float
    realized_gain_avg: float
    realized_gain_fifo: float
    total_gain_avg: float
    total_gain_fifo: float


class RebalanceLineSchema(BaseModel):
    ticker: str
    shares: float
    price: float
    current_value: float
    current_percentage: float
    target_percentage: Optional[float] = None
    adjustment_percentage: Optional[float] = None
    adjustment_value: Optional[float] = None
    adjustment_shares: Optional[int] = None


class BalanceSchema(BaseModel):
    cash_balance: Decimal
    ticker: Optional[str] = None
    shares: Decimal
    average_cost: Decimal
    transaction_id: Optional[int] = None
    effective_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReconcileSchema(BaseModel):
    portfolio_id: int
    transactions: int
    ok: bool
    issues: List[str]


# ---------- Endpoints ----------

@router.post("", response_model=PortfolioSchema, status_code=201)
async def create_portfolio(
    payload: PortfolioCreate,
    service: PortfolioService = Depends(get_portfolio_service),
):
    """Create a portfolio (with its CASH holding)."""
    return await service.create_portfolio(payload.name, payload.description)


@router.get("", response_model=list[PortfolioSchema])
async def list_portfolios(service: PortfolioService = Depends(get_portfolio_service)):
    return await service.list_portfolios()


@router.get("/{portfolio_id}", response_model=PortfolioSchema)
async def get_portfolio(
    portfolio_id: int,
    service: PortfolioService = Depends(get_portfolio_service),
):
    return await service.get_portfolio(portfolio_id)


@router.put("/{portfolio_id}", response_model=PortfolioSchema)
async def rename_portfolio(
    portfolio_id: int,
    payload: PortfolioCreate,
    service: PortfolioService = Depends(get_portfolio_service),
):
    return await service.rename_portfolio(portfolio_id, payload.name, payload.description)


@router.delete("/{portfolio_id}", status_code=204)
async def delete_portfolio(
    portfolio_id: int,
    service: PortfolioService = Depends(get_portfolio_service),
):
    await service.delete_portfolio(portfolio_id)


@router.post("/{portfolio_id}/reset")
async def reset_portfolio(
    portfolio_id: int,
    ledger: LedgerService = Depends(get_ledger_service),
):
    """Delete the portfolio's entire ledger."""
    deleted = await ledger.reset_portfolio(portfolio_id)
    return {"portfolio_id": portfolio_id, "deleted_transactions": deleted}


@router.get("/{portfolio_id}/reconcile", response_model=ReconcileSchema)
async def reconcile_portfolio(
    portfolio_id: int,
    ledger: LedgerService = Depends(get_ledger_service),
):
    report = await ledger.reconcile(portfolio_id)
    return ReconcileSchema(
        portfolio_id=report.portfolio_id,
        transactions=report.transactions,
        ok=report.ok,
        issues=report.issues,
    )


@router.get("/{portfolio_id}/balance", response_model=BalanceSchema)
async def get_balance(
    portfolio_id: int,
    ticker: Optional[str] = None,
    service: PortfolioService = Depends(get_portfolio_service),
):
    """Cash after the latest ledger row; with ?ticker= also that ticker's shares and average cost."""
    return await service.get_balance(portfolio_id, ticker)


@router.get("/{portfolio_id}/holdings", response_model=list[HoldingSchema])
async def get_holdings(
    portfolio_id: int,
    service: PortfolioService = Depends(get_portfolio_service),
):
    return await service.get_holdings(portfolio_id)


@router.post("/{portfolio_id}/holdings/refresh-prices")
async def refresh_holding_prices(
    portfolio_id: int,
    service: PortfolioService = Depends(get_portfolio_service),
    price_feed: PriceFeed = Depends(get_price_feed_dep),
):
    updated = await service.refresh_holding_prices(portfolio_id, price_feed)
    return {"portfolio_id": portfolio_id, "updated": updated}


@router.put("/{portfolio_id}/holdings/{ticker}/target", response_model=HoldingSchema)
async def set_target_percentage(
    portfolio_id: int,
    ticker: str,
    payload: TargetUpdate,
    service: PortfolioService = Depends(get_portfolio_service),
):
    return await service.set_target_percentage(portfolio_id, ticker, payload.target_percentage)


@router.get("/{portfolio_id}/lots", response_model=list[StockLotSchema])
async def get_lots(
    portfolio_id: int,
    ticker: Optional[str] = None,
    service: PortfolioService = Depends(get_portfolio_service),
):
    """Purchase lots in FIFO order, fully consumed ones included."""
    return await service.get_lots(portfolio_id, ticker)


@router.get("/{portfolio_id}/summary", response_model=PortfolioSummarySchema)
async def get_portfolio_summary(
    portfolio_id: int,
    reporter: PerformanceReporter = Depends(get_reporter),
):
    return await reporter.portfolio_summary(portfolio_id)


@router.get("/{portfolio_id}/rebalance", response_model=list[RebalanceLineSchema])
async def get_rebalance_plan(
    portfolio_id: int,
    save: bool = False,
    reporter: PerformanceReporter = Depends(get_reporter),
):
    return await reporter.rebalance_plan(portfolio_id, save=save)
