from datetime import date
from typing import List, Optional

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from stockfolio.core.database import AsyncSessionLocal
from stockfolio.models.daily_price import DailyPrice
from stockfolio.services.price_feed.base import PriceFeed, PriceQuote


class DatabasePriceFeed(PriceFeed):
    """Closes from the daily_stock_prices table filled by the price scraper."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or AsyncSessionLocal

    async def latest_price(self, ticker: str) -> Optional[PriceQuote]:
        return await self._last_close(ticker)

    async def price_on_or_before(self, ticker: str, on: date) -> Optional[PriceQuote]:
        return await self._last_close(ticker, on)

    async def price_history(self, ticker: str, start: date, end: date) -> List[PriceQuote]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DailyPrice.close_price, DailyPrice.date)
                .where(
                    DailyPrice.ticker == ticker.upper(),
                    DailyPrice.date >= start,
                    DailyPrice.date <= end,
                )
                .order_by(DailyPrice.date)
            )
            quotes = [PriceQuote(close, day) for close, day in result.all()]

        carried = await self._last_close(ticker, start, inclusive=False)
        return ([carried] if carried else []) + quotes

    async def _last_close(
        self,
        ticker: str,
        on: Optional[date] = None,
        inclusive: bool = True,
    ) -> Optional[PriceQuote]:
        query = select(DailyPrice.close_price, DailyPrice.date).where(
            DailyPrice.ticker == ticker.upper()
        )
        if on is not None:
            query = query.where(DailyPrice.date <= on if inclusive else DailyPrice.date < on)
        query = query.order_by(desc(DailyPrice.date)).limit(1)

        async with self.session_factory() as session:
            row = (await session.execute(query)).first()
        if row is None:
            return None
        return PriceQuote(row.close_price, row.date)
