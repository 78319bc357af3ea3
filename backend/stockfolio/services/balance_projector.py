"""
Balance Projector.

The canonical "current state" read path: the most recently written ledger
row for a portfolio (cash) or for a portfolio/ticker (shares, average cost),
ordered by (effective_at desc, id desc).
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from stockfolio.accounting.quantities import ZERO, or_zero
from stockfolio.models.base import as_utc
from stockfolio.models.transaction import Transaction, TransactionType


@dataclass(frozen=True)
class BalanceSnapshot:
    cash_balance: Decimal = ZERO
    ticker: Optional[str] = None
    shares: Decimal = ZERO
    average_cost: Decimal = ZERO
    # Latest row of the portfolio as a whole; None for an empty ledger
    transaction_id: Optional[int] = None
    effective_at: Optional[datetime] = None


class BalanceProjector:

    async def latest_row(
        self,
        session: AsyncSession,
        portfolio_id: int,
        ticker: Optional[str] = None,
    ) -> Optional[Transaction]:
        query = select(Transaction).where(Transaction.portfolio_id == portfolio_id)
        if ticker is not None:
            query = query.where(Transaction.ticker == ticker)
        query = query.order_by(desc(Transaction.effective_at), desc(Transaction.id)).limit(1)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def latest(
        self,
        session: AsyncSession,
        portfolio_id: int,
        ticker: Optional[str] = None,
    ) -> BalanceSnapshot:
        """Latest cash balance and, if a ticker is given, its share count and cost basis."""
        row = await self.latest_row(session, portfolio_id)
        if row is None:
            return BalanceSnapshot(ticker=ticker)

        held = ZERO
        average_cost = ZERO
        if ticker is not None:
            ticker_row = await self.latest_row(session, portfolio_id, ticker)
            if ticker_row is not None:
                held = or_zero(ticker_row.shares_count_after)
                average_cost = or_zero(ticker_row.average_cost_after)

        return BalanceSnapshot(
            cash_balance=row.cash_balance_after,
            ticker=ticker,
            shares=held,
            average_cost=average_cost,
            transaction_id=row.id,
            effective_at=as_utc(row.effective_at),
        )

    async def shares_held_at(
        self,
        session: AsyncSession,
        portfolio_id: int,
        ticker: str,
        as_of: datetime,
    ) -> Decimal:
        """Sum of signed BUY/SELL share deltas with effective_at <= as_of."""
        result = await session.execute(
            select(Transaction.type, Transaction.shares).where(
                Transaction.portfolio_id == portfolio_id,
                Transaction.ticker == ticker,
                Transaction.type.in_([TransactionType.BUY.value, TransactionType.SELL.value]),
                Transaction.effective_at <= as_of,
            )
        )
        held = ZERO
        for tx_type, shares in result.all():
            if tx_type == TransactionType.BUY.value:
                held += shares
            else:
                held -= shares
        return held


balance_projector = BalanceProjector()
