"""
Portfolio Service.

Portfolio lifecycle and the read side of the ledger: holdings, lots and
transaction history. Ledger mutations go through LedgerService.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import delete, desc, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stockfolio.accounting.quantities import ONE, ZERO, to_decimal
from stockfolio.core.config import settings
from stockfolio.core.database import AsyncSessionLocal
from stockfolio.core.exceptions import PortfolioNotFound, TransactionNotFound, ValidationError
from stockfolio.models.holding import Holding
from stockfolio.models.portfolio import Portfolio
from stockfolio.models.stock_lot import StockLot
from stockfolio.models.transaction import Transaction
from stockfolio.services.balance_projector import BalanceSnapshot, balance_projector
from stockfolio.services.price_feed import PriceFeed

logger = logging.getLogger(__name__)


class PortfolioService:

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        cash_ticker: Optional[str] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.cash_ticker = (cash_ticker or settings.CASH_TICKER).upper()

    # =========================================================================
    # Portfolio lifecycle
    # =========================================================================

    async def create_portfolio(self, name: str, description: Optional[str] = None) -> Portfolio:
        """Create a portfolio together with its CASH holding."""
        name = _require_name(name)
        async with self.session_factory() as session:
            async with session.begin():
                portfolio = Portfolio(name=name, description=description)
                session.add(portfolio)
                await session.flush()
                session.add(Holding(
                    portfolio_id=portfolio.id,
                    ticker=self.cash_ticker,
                    shares=ZERO,
                    average_cost=ONE,
                    fifo_cost=ONE,
                ))
        logger.info("Created portfolio %s (%s)", portfolio.id, portfolio.name)
        return portfolio

    async def list_portfolios(self) -> List[Portfolio]:
        """Newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Portfolio).order_by(desc(Portfolio.created_at), desc(Portfolio.id))
            )
            return list(result.scalars().all())

    async def get_portfolio(self, portfolio_id: int) -> Portfolio:
        async with self.session_factory() as session:
            return await self._require(session, portfolio_id)

    async def rename_portfolio(
        self,
        portfolio_id: int,
        name: str,
        description: Optional[str] = None,
    ) -> Portfolio:
        name = _require_name(name)
        async with self.session_factory() as session:
            async with session.begin():
                portfolio = await self._require(session, portfolio_id)
                portfolio.name = name
                if description is not None:
                    portfolio.description = description
        logger.info("Renamed portfolio %s to %s", portfolio_id, name)
        return portfolio

    async def delete_portfolio(self, portfolio_id: int) -> None:
        """Delete a portfolio; its transactions, holdings and lots cascade."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(delete(Portfolio).where(Portfolio.id == portfolio_id))
                if not result.rowcount:
                    raise PortfolioNotFound(portfolio_id)
        logger.info("Deleted portfolio %s", portfolio_id)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_holdings(self, portfolio_id: int) -> List[Holding]:
        async with self.session_factory() as session:
            await self._require(session, portfolio_id)
            result = await session.execute(
                select(Holding)
                .where(Holding.portfolio_id == portfolio_id)
                .order_by(Holding.ticker)
            )
            return list(result.scalars().all())

    async def get_lots(self, portfolio_id: int, ticker: Optional[str] = None) -> List[StockLot]:
        """Lots in FIFO consumption order, fully consumed ones included."""
        async with self.session_factory() as session:
            await self._require(session, portfolio_id)
            query = select(StockLot).where(StockLot.portfolio_id == portfolio_id)
            if ticker:
                query = query.where(StockLot.ticker == ticker.strip().upper())
            result = await session.execute(
                query.order_by(StockLot.ticker, StockLot.purchase_date, StockLot.id)
            )
            return list(result.scalars().all())

    async def get_transactions(
        self,
        portfolio_id: int,
        ticker: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        """Newest first: effective_at desc, id desc."""
        async with self.session_factory() as session:
            await self._require(session, portfolio_id)
            query = select(Transaction).where(Transaction.portfolio_id == portfolio_id)
            if ticker:
                query = query.where(Transaction.ticker == ticker.strip().upper())
            query = query.order_by(desc(Transaction.effective_at), desc(Transaction.id))
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_balance(self, portfolio_id: int, ticker: Optional[str] = None) -> BalanceSnapshot:
        """Cash (and optionally one ticker's position) from the latest ledger row."""
        symbol = ticker.strip().upper() if ticker else None
        async with self.session_factory() as session:
            await self._require(session, portfolio_id)
            return await balance_projector.latest(session, portfolio_id, symbol)

    async def get_transaction(self, portfolio_id: int, transaction_id: int) -> Transaction:
        async with self.session_factory() as session:
            await self._require(session, portfolio_id)
            result = await session.execute(
                select(Transaction).where(
                    Transaction.portfolio_id == portfolio_id,
                    Transaction.id == transaction_id,
                )
            )
            transaction = result.scalar_one_or_none()
            if transaction is None:
                raise TransactionNotFound(portfolio_id, transaction_id)
            return transaction

    # =========================================================================
    # Holding display fields
    # =========================================================================

    async def refresh_holding_prices(self, portfolio_id: int, price_feed: PriceFeed) -> int:
        """Copy the feed's latest close onto each holding. Returns holdings updated."""
        # Quotes are fetched before the write transaction opens; a database
        # feed reads through its own session.
        tickers = [holding.ticker for holding in await self.get_holdings(portfolio_id)]
        quotes = {}
        for ticker in tickers:
            if ticker == self.cash_ticker:
                continue
            quote = await price_feed.latest_price(ticker)
            if quote is None:
                logger.warning("No price for %s in portfolio %s", ticker, portfolio_id)
                continue
            quotes[ticker] = quote

        async with self.session_factory() as session:
            async with session.begin():
                await self._require(session, portfolio_id)
                result = await session.execute(
                    select(Holding).where(
                        Holding.portfolio_id == portfolio_id,
                        Holding.ticker.in_(list(quotes)),
                    )
                )
                updated = 0
                for holding in result.scalars():
                    quote = quotes[holding.ticker]
                    holding.current_price = quote.price
                    holding.price_as_of = quote.as_of
                    updated += 1
        logger.info("Refreshed %d holding prices for portfolio %s", updated, portfolio_id)
        return updated

    async def set_target_percentage(
        self,
        portfolio_id: int,
        ticker: str,
        target: Optional[Decimal],
    ) -> Holding:
        target = to_decimal(target, "target_percentage")
        if target is not None and not (ZERO <= target <= Decimal("100")):
            raise ValidationError("target percentage must be between 0 and 100", field="target_percentage")

        symbol = ticker.strip().upper()
        async with self.session_factory() as session:
            async with session.begin():
                await self._require(session, portfolio_id)
                result = await session.execute(
                    select(Holding).where(
                        Holding.portfolio_id == portfolio_id,
                        Holding.ticker == symbol,
                    )
                )
                holding = result.scalar_one_or_none()
                if holding is None:
                    raise ValidationError(
                        f"portfolio {portfolio_id} has no holding in {symbol}", field="ticker"
                    )
                holding.target_percentage = target
        return holding

    async def _require(self, session: AsyncSession, portfolio_id: int) -> Portfolio:
        portfolio = await session.get(Portfolio, portfolio_id)
        if portfolio is None:
            raise PortfolioNotFound(portfolio_id)
        return portfolio


def _require_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("portfolio name is required", field="name")
    if len(name) > 100:
        raise ValidationError("portfolio name is limited to 100 characters", field="name")
    return name
