from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from stockfolio.accounting.quantities import to_decimal
from stockfolio.services.price_feed.base import PriceFeed, PriceQuote


class MemoryPriceFeed(PriceFeed):
    """Static in-memory closes, keyed by ticker and date."""

    def __init__(self, prices: Optional[Dict[str, Dict[date, object]]] = None):
        self._prices: Dict[str, Dict[date, Decimal]] = {}
        for ticker, closes in (prices or {}).items():
            for day, close in closes.items():
                self.set_price(ticker, day, close)

    def set_price(self, ticker: str, day: date, close) -> None:
        self._prices.setdefault(ticker.upper(), {})[day] = to_decimal(close, "close")

    def _quotes(self, ticker: str) -> List[PriceQuote]:
        closes = self._prices.get(ticker.upper(), {})
        return [PriceQuote(closes[day], day) for day in sorted(closes)]

    async def latest_price(self, ticker: str) -> Optional[PriceQuote]:
        quotes = self._quotes(ticker)
        return quotes[-1] if quotes else None

    async def price_on_or_before(self, ticker: str, on: date) -> Optional[PriceQuote]:
        found = None
        for quote in self._quotes(ticker):
            if quote.as_of > on:
                break
            found = quote
        return found

    async def price_history(self, ticker: str, start: date, end: date) -> List[PriceQuote]:
        quotes = self._quotes(ticker)
        before = [q for q in quotes if q.as_of < start]
        within = [q for q in quotes if start <= q.as_of <= end]
        return before[-1:] + within
