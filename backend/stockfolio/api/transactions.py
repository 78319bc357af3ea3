"""
Transactions API Router.

Create and read ledger entries. Every response row carries its balance
snapshot; rejected requests come back as error bodies with a stable code.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from stockfolio.api.deps import get_ledger_service, get_portfolio_service, get_reporter
from stockfolio.services.ledger_service import LedgerService
from stockfolio.services.portfolio_service import PortfolioService
from stockfolio.services.reporting_service import PerformanceReporter

router = APIRouter()

# ---------- Pydantic Schemas ----------

class TransactionCreate(BaseModel):
    type: str
    ticker: Optional[str] = None
    shares: Optional[Decimal] = None
    price: Optional[Decimal] = None
    amount: Decimal
    fee: Decimal = Decimal("0")
    notes: Optional[str] = None
    effective_at: Optional[datetime] = None


class TransactionSchema(BaseModel):
    id: int
    portfolio_id: int
    type: str
    ticker: Optional[str] = None
    shares: Optional[Decimal] = None
    price: Optional[Decimal] = None
    amount: Decimal
    fee: Decimal
    total_amount: Decimal
    notes: Optional[str] = None
    effective_at: datetime
    created_at: datetime

    cash_balance_before: Decimal
    cash_balance_after: Decimal
    shares_count_before: Optional[Decimal] = None
    shares_count_after: Optional[Decimal] = None
    average_cost_before: Optional[Decimal] = None
    average_cost_after: Optional[Decimal] = None
    realized_gain_avg: Optional[Decimal] = None
    realized_gain_fifo: Optional[Decimal] = None
    fifo_cost_basis: Optional[Decimal] = None

    class Config:
        from_attributes = True


class TransactionSummarySchema(BaseModel):
    transaction_count: int
    total_deposits: float
    total_withdrawals: float
    total_fees: float
    total_dividends: float
    realized_gain_avg: float
    realized_gain_fifo: float
    unrealized_gain_avg: float
    unrealized_gain_fifo: float
    net_cash_flow: float


class TransactionListSchema(BaseModel):
    transactions: list[TransactionSchema]
    summary: TransactionSummarySchema


# ---------- Endpoints ----------

@router.post("/{portfolio_id}/transactions", response_model=TransactionSchema, status_code=201)
async def create_transaction(
    portfolio_id: int,
    payload: TransactionCreate,
    ledger: LedgerService = Depends(get_ledger_service),
):
    """Append a transaction to the ledger."""
    return await ledger.create_transaction(
        portfolio_id,
        type=payload.type,
        amount=payload.amount,
        fee=payload.fee,
        ticker=payload.ticker,
        shares=payload.shares,
        price=payload.price,
        notes=payload.notes,
        effective_at=payload.effective_at,
    )


@router.get("/{portfolio_id}/transactions", response_model=TransactionListSchema)
async def list_transactions(
    portfolio_id: int,
    ticker: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    service: PortfolioService = Depends(get_portfolio_service),
    reporter: PerformanceReporter = Depends(get_reporter),
):
    """Newest first, with totals over the whole ledger."""
    transactions = await service.get_transactions(portfolio_id, ticker=ticker, limit=limit)
    summary = await reporter.transaction_summary(portfolio_id)
    return TransactionListSchema(
        transactions=[TransactionSchema.model_validate(t) for t in transactions],
        summary=TransactionSummarySchema.model_validate(summary, from_attributes=True),
    )


@router.get("/{portfolio_id}/transactions/{transaction_id}", response_model=TransactionSchema)
async def get_transaction(
    portfolio_id: int,
    transaction_id: int,
    service: PortfolioService = Depends(get_portfolio_service),
):
    return await service.get_transaction(portfolio_id, transaction_id)
