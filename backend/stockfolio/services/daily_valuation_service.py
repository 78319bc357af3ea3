"""
Daily Valuation Builder.

Reconstructs a day-by-day portfolio value series by replaying the stored
ledger snapshots against closing prices. Days without transactions carry
the last known position forward; nothing is interpolated.

Price for a ticker on a day, first available of:
1. the feed's close on or before the day
2. the price of the last transaction in that ticker on or before the day
3. the position's average cost
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pandas as pd
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from stockfolio.accounting.quantities import ZERO, money, or_zero
from stockfolio.core.database import AsyncSessionLocal
from stockfolio.core.exceptions import PortfolioNotFound, ValidationError
from stockfolio.models.base import as_utc
from stockfolio.models.portfolio import Portfolio
from stockfolio.models.transaction import Transaction, TransactionType
from stockfolio.services.price_feed import PriceFeed, get_price_feed

logger = logging.getLogger(__name__)


@dataclass
class DailyValuation:
    date: date
    cash_balance: Decimal
    stock_value: Decimal
    total_value: Decimal
    deposits: Decimal = ZERO
    withdrawals: Decimal = ZERO
    adjusted_change: Decimal = ZERO
    change_percent: float = 0.0
    positions: Dict[str, Decimal] = field(default_factory=dict)


@dataclass
class _Position:
    shares: Decimal = ZERO
    average_cost: Decimal = ZERO
    last_trade_price: Optional[Decimal] = None


class DailyValuationBuilder:

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        price_feed: Optional[PriceFeed] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.price_feed = price_feed or get_price_feed()

    async def get_daily_values(
        self,
        portfolio_id: int,
        start_date: date,
        end_date: date,
    ) -> List[DailyValuation]:
        """One valuation per calendar day in [start_date, end_date]."""
        if end_date < start_date:
            raise ValidationError(
                f"end date {end_date} is before start date {start_date}", field="end_date"
            )

        transactions = await self._load_ledger(portfolio_id, end_date)
        tickers = sorted({t.ticker for t in transactions if t.ticker})
        prices = {
            ticker: await self._price_series(ticker, start_date - timedelta(days=1), end_date)
            for ticker in tickers
        }

        cash = ZERO
        positions: Dict[str, _Position] = {}
        cursor = 0
        previous_total: Optional[Decimal] = None
        valuations: List[DailyValuation] = []

        # Start one day early to seed the previous day's value
        day = start_date - timedelta(days=1)
        while day <= end_date:
            deposits = ZERO
            withdrawals = ZERO
            while cursor < len(transactions) and as_utc(transactions[cursor].effective_at).date() <= day:
                transaction = transactions[cursor]
                cursor += 1
                cash = transaction.cash_balance_after
                tx_day = as_utc(transaction.effective_at).date()
                if transaction.type == TransactionType.DEPOSIT.value and tx_day == day:
                    deposits += transaction.amount
                elif transaction.type == TransactionType.WITHDRAW.value and tx_day == day:
                    withdrawals += transaction.amount
                if transaction.ticker:
                    position = positions.setdefault(transaction.ticker, _Position())
                    position.shares = or_zero(transaction.shares_count_after)
                    position.average_cost = or_zero(transaction.average_cost_after)
                    if transaction.price is not None:
                        position.last_trade_price = transaction.price

            values = {
                ticker: money(position.shares * self._price(prices[ticker], day, position))
                for ticker, position in positions.items()
                if position.shares > ZERO
            }
            stock_value = sum(values.values(), ZERO)
            total = cash + stock_value

            if day >= start_date:
                adjusted = ZERO
                percent = 0.0
                if previous_total is not None:
                    adjusted = total - previous_total - deposits + withdrawals
                    if previous_total != ZERO:
                        percent = float(adjusted / previous_total * 100)
                valuations.append(DailyValuation(
                    date=day,
                    cash_balance=cash,
                    stock_value=stock_value,
                    total_value=total,
                    deposits=deposits,
                    withdrawals=withdrawals,
                    adjusted_change=adjusted,
                    change_percent=percent,
                    positions=values,
                ))
            previous_total = total
            day += timedelta(days=1)

        logger.debug(
            "Built %d daily valuations for portfolio %s (%s..%s)",
            len(valuations), portfolio_id, start_date, end_date,
        )
        return valuations

    async def _load_ledger(self, portfolio_id: int, end_date: date) -> list:
        cutoff = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
        async with self.session_factory() as session:
            if await session.get(Portfolio, portfolio_id) is None:
                raise PortfolioNotFound(portfolio_id)
            result = await session.execute(
                select(Transaction)
                .where(
                    Transaction.portfolio_id == portfolio_id,
                    Transaction.effective_at < cutoff,
                )
                .order_by(Transaction.effective_at, Transaction.id)
            )
            return list(result.scalars().all())

    async def _price_series(self, ticker: str, start: date, end: date) -> pd.Series:
        quotes = await self.price_feed.price_history(ticker, start, end)
        if not quotes:
            return pd.Series(dtype=object)
        return pd.Series(
            [quote.price for quote in quotes],
            index=pd.DatetimeIndex([pd.Timestamp(quote.as_of) for quote in quotes]),
        )

    def _price(self, series: pd.Series, day: date, position: _Position) -> Decimal:
        if not series.empty:
            known = series[series.index <= pd.Timestamp(day)]
            if not known.empty:
                return known.iloc[-1]
        if position.last_trade_price is not None:
            return position.last_trade_price
        return position.average_cost


def to_frame(valuations: List[DailyValuation]) -> pd.DataFrame:
    """Date-indexed frame of the float columns the calculator works on."""
    if not valuations:
        return pd.DataFrame(
            columns=["total_value", "change_percent"], index=pd.DatetimeIndex([]), dtype=float
        )
    return pd.DataFrame(
        {
            "total_value": [float(v.total_value) for v in valuations],
            "change_percent": [v.change_percent for v in valuations],
        },
        index=pd.DatetimeIndex([pd.Timestamp(v.date) for v in valuations]),
    )
