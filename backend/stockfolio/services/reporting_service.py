"""
Performance Reporter.

Read-only views derived from the ledger, the Holding cache and the price
feed: the performance report, transaction and portfolio summaries, and the
rebalancing plan. The performance report replays the ledger up to its
reference time; the summaries read the Holding cache. A holding without a
feed price is valued at its cached current price, then at its own average
cost, so one missing quote never fails a report.
"""
import logging
import time as timer
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Union

import pandas as pd
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from stockfolio.accounting.projection import LedgerReplay
from stockfolio.accounting.quantities import ZERO, money, or_zero
from stockfolio.core.config import settings
from stockfolio.core.database import AsyncSessionLocal
from stockfolio.core.exceptions import PortfolioNotFound, ValidationError
from stockfolio.core.metrics import metrics
from stockfolio.models.base import as_utc, utcnow
from stockfolio.models.holding import Holding
from stockfolio.models.portfolio import Portfolio
from stockfolio.models.transaction import Transaction, TransactionType
from stockfolio.services.daily_valuation_service import DailyValuationBuilder, to_frame
from stockfolio.services.performance_calculator import (
    CashFlow,
    PerformanceCalculator,
    performance_calculator,
)
from stockfolio.services.price_feed import PriceFeed, get_price_feed

logger = logging.getLogger(__name__)

PERIODS = ("ALL", "YTD", "1Y", "1M")


@dataclass
class HoldingPerformance:
    """Lifetime figures for one ticker, valued at the report's reference close."""
    ticker: str
    shares: float
    current_price: float
    price_as_of: Optional[date]
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


@dataclass
class PerformanceReport:
    portfolio_id: int
    period: str
    period_start: date
    generated_at: datetime
    cash_balance: float = 0.0
    stock_value: float = 0.0
    total_value: float = 0.0
    start_value: float = 0.0
    net_contributions: float = 0.0
    realized_gain_avg: float = 0.0
    realized_gain_fifo: float = 0.0
    unrealized_gain_avg: float = 0.0
    unrealized_gain_fifo: float = 0.0
    dividend_income: float = 0.0
    total_return: float = 0.0
    return_percent: float = 0.0

    # Percent units
    time_weighted_return: float = 0.0
    money_weighted_return: float = 0.0
    irr: Optional[float] = None
    irr_note: Optional[str] = None
    xirr: Optional[float] = None
    xirr_note: Optional[str] = None
    volatility: float = 0.0
    max_drawdown: float = 0.0
    drawdown_start: Optional[date] = None
    drawdown_end: Optional[date] = None
    drawdown_days: int = 0

    period_returns: Dict[str, Optional[float]] = field(default_factory=dict)
    holdings: List[HoldingPerformance] = field(default_factory=list)


@dataclass
class TransactionSummary:
    transaction_count: int = 0
    total_deposits: float = 0.0
    total_withdrawals: float = 0.0
    total_fees: float = 0.0
    total_dividends: float = 0.0
    realized_gain_avg: float = 0.0
    realized_gain_fifo: float = 0.0
    unrealized_gain_avg: float = 0.0
    unrealized_gain_fifo: float = 0.0
    net_cash_flow: float = 0.0


@dataclass
class PortfolioSummary:
    portfolio_id: int
    cash_balance: float = 0.0
    total_value: float = 0.0
    total_cost_avg: float = 0.0
    total_cost_fifo: float = 0.0
    unrealized_gain_avg: float = 0.0
    unrealized_gain_fifo: float = 0.0
    realized_gain_avg: float = 0.0
    realized_gain_fifo: float = 0.0
    total_gain_avg: float = 0.0
    total_gain_fifo: float = 0.0


@dataclass
class RebalanceLine:
    ticker: str
    shares: float
    price: float
    current_value: float
    current_percentage: float
    target_percentage: Optional[float]
    adjustment_percentage: Optional[float]
    adjustment_value: Optional[float]
    adjustment_shares: Optional[int]


@dataclass
class _Position:
    """A replayed position, shaped like the Holding fields the views read."""
    ticker: str
    shares: Decimal
    average_cost: Decimal
    fifo_cost: Decimal
    target_percentage: Optional[Decimal] = None


@dataclass
class _Valued:
    position: Union[Holding, _Position]
    price: Decimal
    as_of: Optional[date]

    @property
    def value(self) -> Decimal:
        return money(self.position.shares * self.price)

    @property
    def unrealized_avg(self) -> Decimal:
        return self.position.shares * (self.price - self.position.average_cost)

    @property
    def unrealized_fifo(self) -> Decimal:
        return self.position.shares * (self.price - self.position.fifo_cost)


@dataclass
class _Snapshot:
    transactions: List[Transaction]
    cash: Decimal
    valued: List[_Valued]

    @property
    def stock_value(self) -> Decimal:
        return sum((v.value for v in self.valued), ZERO)

    @property
    def total_value(self) -> Decimal:
        return self.cash + self.stock_value


class PerformanceReporter:

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        price_feed: Optional[PriceFeed] = None,
        calculator: Optional[PerformanceCalculator] = None,
        cash_ticker: Optional[str] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.price_feed = price_feed or get_price_feed()
        self.calculator = calculator or performance_calculator
        self.cash_ticker = (cash_ticker or settings.CASH_TICKER).upper()
        self.valuation_builder = DailyValuationBuilder(self.session_factory, self.price_feed)

    # =========================================================================
    # Performance report
    # =========================================================================

    async def generate_report(
        self,
        portfolio_id: int,
        period: str = "ALL",
        as_of: Optional[datetime] = None,
    ) -> PerformanceReport:
        """
        Build the performance report for a period.

        Args:
            portfolio_id: Portfolio to report on
            period: ALL, YTD, 1Y or 1M
            as_of: Reference time (defaults to now). Positions, cash and
                closes are all taken as of this time.
        """
        started = timer.perf_counter()
        period = (period or "ALL").upper()
        if period not in PERIODS:
            raise ValidationError(
                f"unknown period {period!r}; expected one of {', '.join(PERIODS)}", field="period"
            )

        now = as_utc(as_of) if as_of else utcnow()
        today = now.date()
        snapshot = await self._load(portfolio_id, until=now)
        transactions = snapshot.transactions

        first_day = as_utc(transactions[0].effective_at).date() if transactions else today
        period_start = self.period_start(period, today, first_day)
        in_period = [t for t in transactions if as_utc(t.effective_at).date() >= period_start]

        report = PerformanceReport(
            portfolio_id=portfolio_id,
            period=period,
            period_start=period_start,
            generated_at=now,
        )

        deposits = _sum_amounts(in_period, TransactionType.DEPOSIT)
        withdrawals = _sum_amounts(in_period, TransactionType.WITHDRAW)
        dividends = _sum_amounts(in_period, TransactionType.DIVIDEND)
        sells = [t for t in in_period if t.type == TransactionType.SELL.value]
        realized_avg = sum((or_zero(t.realized_gain_avg) for t in sells), ZERO)
        realized_fifo = sum((or_zero(t.realized_gain_fifo) for t in sells), ZERO)
        unrealized_avg = sum((v.unrealized_avg for v in snapshot.valued), ZERO)
        unrealized_fifo = sum((v.unrealized_fifo for v in snapshot.valued), ZERO)
        net_contributions = deposits - withdrawals
        total_return = realized_avg + unrealized_avg + dividends
        total_value = snapshot.total_value

        report.cash_balance = float(snapshot.cash)
        report.stock_value = float(snapshot.stock_value)
        report.total_value = float(total_value)
        report.net_contributions = float(net_contributions)
        report.realized_gain_avg = _round(realized_avg)
        report.realized_gain_fifo = _round(realized_fifo)
        report.unrealized_gain_avg = _round(unrealized_avg)
        report.unrealized_gain_fifo = _round(unrealized_fifo)
        report.dividend_income = float(dividends)
        report.total_return = _round(total_return)
        report.return_percent = (
            float(total_return / net_contributions * 100) if net_contributions != ZERO else 0.0
        )

        daily = to_frame(
            await self.valuation_builder.get_daily_values(portfolio_id, first_day, today)
            if transactions else []
        )
        start_value = 0.0
        if period != "ALL":
            before = daily[daily.index < pd.Timestamp(period_start)]
            if not before.empty:
                start_value = float(before["total_value"].iloc[-1])
        report.start_value = start_value

        calc = self.calculator
        report.time_weighted_return = 100 * calc.time_weighted_return(
            start_value, report.total_value, report.net_contributions
        )
        report.money_weighted_return = 100 * calc.money_weighted_return(
            start_value, report.total_value, report.net_contributions
        )

        flows = self._cash_flows(in_period, start_value, period_start, now, report.total_value)
        for method, result in (("irr", calc.irr(flows)), ("xirr", calc.xirr(flows))):
            if result.defined:
                setattr(report, method, 100 * result.rate)
            else:
                setattr(report, f"{method}_note", result.reason)
                logger.info(
                    "%s undefined for portfolio %s (%s): %s",
                    method.upper(), portfolio_id, period, result.reason,
                )
                metrics.irr_undefined(portfolio_id, method, result.reason)

        window = daily[daily.index >= pd.Timestamp(period_start)]
        report.volatility = 100 * calc.calculate_annualized_vol(window["change_percent"] / 100)
        drawdown = calc.calculate_max_drawdown(window["total_value"])
        report.max_drawdown = 100 * drawdown.fraction
        report.drawdown_start = drawdown.start
        report.drawdown_end = drawdown.end
        report.drawdown_days = drawdown.duration_days

        report.period_returns = self._period_returns(daily["change_percent"] / 100, today)
        report.holdings = self._holding_performance(snapshot)

        duration_ms = (timer.perf_counter() - started) * 1000
        logger.info(
            "Generated %s report for portfolio %s: value=%.2f return=%.2f%% in %.1fms",
            period, portfolio_id, report.total_value, report.return_percent, duration_ms,
        )
        metrics.report_generated(portfolio_id, period, report.total_value, duration_ms)
        return report

    def period_start(self, period: str, today: date, first_day: date) -> date:
        if period == "ALL":
            return first_day
        if period == "YTD":
            return date(today.year, 1, 1)
        if period == "1Y":
            return (pd.Timestamp(today) - pd.DateOffset(years=1)).date()
        if period == "1M":
            return (pd.Timestamp(today) - pd.DateOffset(months=1)).date()
        raise ValidationError(f"unknown period {period!r}", field="period")

    def _cash_flows(
        self,
        transactions: List[Transaction],
        start_value: float,
        period_start: date,
        now: datetime,
        end_value: float,
    ) -> List[CashFlow]:
        flows = []
        if start_value > 0:
            opening = datetime.combine(period_start, time.min, tzinfo=timezone.utc)
            flows.append(CashFlow(opening, -start_value))
        for transaction in transactions:
            when = as_utc(transaction.effective_at)
            amount = float(transaction.amount)
            if transaction.type == TransactionType.DEPOSIT.value:
                flows.append(CashFlow(when, -amount))
            elif transaction.type in (TransactionType.WITHDRAW.value, TransactionType.DIVIDEND.value):
                flows.append(CashFlow(when, amount))
        flows.append(CashFlow(now, end_value))
        return flows

    def _period_returns(self, daily_returns: pd.Series, today: date) -> Dict[str, Optional[float]]:
        anchors = {
            "1D": today - timedelta(days=1),
            "1W": today - timedelta(days=7),
            "1M": (pd.Timestamp(today) - pd.DateOffset(months=1)).date(),
            "YTD": date(today.year - 1, 12, 31),
            "1Y": (pd.Timestamp(today) - pd.DateOffset(years=1)).date(),
        }
        returns = {}
        for name, since in anchors.items():
            value = self.calculator.chained_return(daily_returns, since)
            returns[name] = 100 * value if value is not None else None
        return returns

    def _holding_performance(self, snapshot: _Snapshot) -> List[HoldingPerformance]:
        realized_avg: Dict[str, Decimal] = {}
        realized_fifo: Dict[str, Decimal] = {}
        dividends: Dict[str, Decimal] = {}
        invested: Dict[str, Decimal] = {}
        for t in snapshot.transactions:
            if not t.ticker:
                continue
            if t.type == TransactionType.SELL.value:
                realized_avg[t.ticker] = realized_avg.get(t.ticker, ZERO) + or_zero(t.realized_gain_avg)
                realized_fifo[t.ticker] = realized_fifo.get(t.ticker, ZERO) + or_zero(t.realized_gain_fifo)
            elif t.type == TransactionType.DIVIDEND.value:
                dividends[t.ticker] = dividends.get(t.ticker, ZERO) + t.amount
            elif t.type == TransactionType.BUY.value:
                invested[t.ticker] = invested.get(t.ticker, ZERO) + t.amount

        rows = []
        for valued in snapshot.valued:
            ticker = valued.position.ticker
            realized = realized_avg.get(ticker, ZERO)
            income = dividends.get(ticker, ZERO)
            total = valued.unrealized_avg + realized + income
            cost_in = invested.get(ticker, ZERO)
            rows.append(HoldingPerformance(
                ticker=ticker,
                shares=float(valued.position.shares),
                current_price=float(valued.price),
                price_as_of=valued.as_of,
                current_value=float(valued.value),
                average_cost=float(valued.position.average_cost),
                fifo_cost=float(valued.position.fifo_cost),
                unrealized_gain_avg=_round(valued.unrealized_avg),
                unrealized_gain_fifo=_round(valued.unrealized_fifo),
                realized_gain_avg=_round(realized),
                realized_gain_fifo=_round(realized_fifo.get(ticker, ZERO)),
                dividend_income=float(income),
                total_return=_round(total),
                return_percent=float(total / cost_in * 100) if cost_in > ZERO else 0.0,
            ))
        return rows

    # =========================================================================
    # Summaries
    # =========================================================================

    async def transaction_summary(self, portfolio_id: int) -> TransactionSummary:
        snapshot = await self._load(portfolio_id)
        transactions = snapshot.transactions

        deposits = _sum_amounts(transactions, TransactionType.DEPOSIT)
        withdrawals = _sum_amounts(transactions, TransactionType.WITHDRAW)
        dividends = _sum_amounts(transactions, TransactionType.DIVIDEND)
        fees = sum((or_zero(t.fee) for t in transactions), ZERO)
        realized_avg = sum((or_zero(t.realized_gain_avg) for t in transactions), ZERO)
        realized_fifo = sum((or_zero(t.realized_gain_fifo) for t in transactions), ZERO)

        return TransactionSummary(
            transaction_count=len(transactions),
            total_deposits=float(deposits),
            total_withdrawals=float(withdrawals),
            total_fees=float(fees),
            total_dividends=float(dividends),
            realized_gain_avg=_round(realized_avg),
            realized_gain_fifo=_round(realized_fifo),
            unrealized_gain_avg=_round(sum((v.unrealized_avg for v in snapshot.valued), ZERO)),
            unrealized_gain_fifo=_round(sum((v.unrealized_fifo for v in snapshot.valued), ZERO)),
            net_cash_flow=_round(deposits - withdrawals + dividends + realized_avg - fees),
        )

    async def portfolio_summary(self, portfolio_id: int) -> PortfolioSummary:
        snapshot = await self._load(portfolio_id)
        realized_avg = sum((or_zero(t.realized_gain_avg) for t in snapshot.transactions), ZERO)
        realized_fifo = sum((or_zero(t.realized_gain_fifo) for t in snapshot.transactions), ZERO)
        unrealized_avg = sum((v.unrealized_avg for v in snapshot.valued), ZERO)
        unrealized_fifo = sum((v.unrealized_fifo for v in snapshot.valued), ZERO)
        cost_avg = sum((v.position.shares * v.position.average_cost for v in snapshot.valued), ZERO)
        cost_fifo = sum((v.position.shares * v.position.fifo_cost for v in snapshot.valued), ZERO)

        return PortfolioSummary(
            portfolio_id=portfolio_id,
            cash_balance=float(snapshot.cash),
            total_value=float(snapshot.total_value),
            total_cost_avg=_round(cost_avg),
            total_cost_fifo=_round(cost_fifo),
            unrealized_gain_avg=_round(unrealized_avg),
            unrealized_gain_fifo=_round(unrealized_fifo),
            realized_gain_avg=_round(realized_avg),
            realized_gain_fifo=_round(realized_fifo),
            total_gain_avg=_round(unrealized_avg + realized_avg),
            total_gain_fifo=_round(unrealized_fifo + realized_fifo),
        )

    async def rebalance_plan(self, portfolio_id: int, save: bool = False) -> List[RebalanceLine]:
        """
        Current vs target allocation per holding.

        adjustment_shares is truncated toward zero. With save=True the
        adjustment percentages are written onto the Holding cache.
        """
        snapshot = await self._load(portfolio_id)
        total = snapshot.total_value

        lines = []
        adjustments: Dict[str, Optional[Decimal]] = {}
        for valued in snapshot.valued:
            holding = valued.position
            current_pct = valued.value / total * 100 if total > ZERO else ZERO
            target = holding.target_percentage
            adjust_pct = adjust_value = adjust_shares = None
            if target is not None:
                adjust_pct = target - current_pct
                adjust_value = total * adjust_pct / 100
                adjust_shares = int(adjust_value / valued.price) if valued.price > ZERO else 0
            adjustments[holding.ticker] = adjust_pct
            lines.append(RebalanceLine(
                ticker=holding.ticker,
                shares=float(holding.shares),
                price=float(valued.price),
                current_value=float(valued.value),
                current_percentage=round(float(current_pct), 4),
                target_percentage=float(target) if target is not None else None,
                adjustment_percentage=round(float(adjust_pct), 4) if adjust_pct is not None else None,
                adjustment_value=_round(adjust_value) if adjust_value is not None else None,
                adjustment_shares=adjust_shares,
            ))

        if save:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(Holding).where(Holding.portfolio_id == portfolio_id)
                    )
                    for holding in result.scalars():
                        if holding.ticker in adjustments:
                            value = adjustments[holding.ticker]
                            holding.adjustment_percentage = (
                                value.quantize(Decimal("0.0001")) if value is not None else None
                            )
        return lines

    # =========================================================================
    # Loading
    # =========================================================================

    async def _load(self, portfolio_id: int, until: Optional[datetime] = None) -> _Snapshot:
        """
        Ledger rows plus valued positions.

        Without `until` positions come from the Holding cache at the latest
        close. With `until` the ledger is cut there and replayed, and each
        position is valued at the close on or before that day, so nothing
        after `until` leaks into the figures.
        """
        async with self.session_factory() as session:
            if await session.get(Portfolio, portfolio_id) is None:
                raise PortfolioNotFound(portfolio_id)

            query = select(Transaction).where(Transaction.portfolio_id == portfolio_id)
            if until is not None:
                query = query.where(Transaction.effective_at <= until)
            result = await session.execute(
                query.order_by(Transaction.effective_at, Transaction.id)
            )
            transactions = list(result.scalars().all())

            result = await session.execute(
                select(Holding)
                .where(Holding.portfolio_id == portfolio_id)
                .order_by(Holding.ticker)
            )
            holdings = {holding.ticker: holding for holding in result.scalars()}

        if until is None:
            cash = transactions[-1].cash_balance_after if transactions else ZERO
            valued = [
                await self._value(holding)
                for ticker, holding in holdings.items()
                if ticker != self.cash_ticker and holding.shares > ZERO
            ]
            return _Snapshot(transactions, cash, valued)

        replay = LedgerReplay()
        replay.replay(transactions)
        valued = []
        for ticker in sorted(replay.positions):
            replayed = replay.positions[ticker]
            if replayed.shares <= ZERO:
                continue
            cached = holdings.get(ticker)
            position = _Position(
                ticker=ticker,
                shares=replayed.shares,
                average_cost=replayed.average_cost,
                fifo_cost=replayed.fifo_cost,
                target_percentage=cached.target_percentage if cached is not None else None,
            )
            valued.append(await self._value_on(position, cached, until.date()))
        return _Snapshot(transactions, replay.cash, valued)

    async def _value(self, holding: Holding) -> _Valued:
        quote = await self.price_feed.latest_price(holding.ticker)
        if quote is not None:
            return _Valued(holding, quote.price, quote.as_of)
        if holding.current_price is not None:
            return _Valued(holding, holding.current_price, holding.price_as_of)
        logger.debug("No price for %s; valuing at average cost", holding.ticker)
        return _Valued(holding, holding.average_cost, None)

    async def _value_on(
        self, position: _Position, cached: Optional[Holding], on: date
    ) -> _Valued:
        quote = await self.price_feed.price_on_or_before(position.ticker, on)
        if quote is not None:
            return _Valued(position, quote.price, quote.as_of)
        if (
            cached is not None
            and cached.current_price is not None
            and cached.price_as_of is not None
            and cached.price_as_of <= on
        ):
            return _Valued(position, cached.current_price, cached.price_as_of)
        logger.debug("No price for %s on or before %s; valuing at average cost", position.ticker, on)
        return _Valued(position, position.average_cost, None)


def _sum_amounts(transactions: List[Transaction], tx_type: TransactionType) -> Decimal:
    return sum((t.amount for t in transactions if t.type == tx_type.value), ZERO)


def _round(value: Decimal) -> float:
    return round(float(value), 2)
