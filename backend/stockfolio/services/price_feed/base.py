from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import List, NamedTuple, Optional


class PriceQuote(NamedTuple):
    price: Decimal
    as_of: date


class PriceFeed(ABC):
    """Read-only source of daily closing prices."""

    @abstractmethod
    async def latest_price(self, ticker: str) -> Optional[PriceQuote]:
        """Most recent close for a ticker, or None when the feed has none."""
        pass

    @abstractmethod
    async def price_on_or_before(self, ticker: str, on: date) -> Optional[PriceQuote]:
        """Close on `on`, or the latest one before it."""
        pass

    @abstractmethod
    async def price_history(self, ticker: str, start: date, end: date) -> List[PriceQuote]:
        """
        Closes dated in [start, end], ascending, preceded by the latest close
        before `start` when there is one (so callers can carry it forward).
        """
        pass
