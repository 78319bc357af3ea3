from typing import Dict, Type

from stockfolio.core.config import settings
from stockfolio.services.price_feed.base import PriceFeed, PriceQuote
from stockfolio.services.price_feed.database_feed import DatabasePriceFeed
from stockfolio.services.price_feed.memory_feed import MemoryPriceFeed

FEEDS: Dict[str, Type[PriceFeed]] = {
    "database": DatabasePriceFeed,
    "memory": MemoryPriceFeed,
}


def get_price_feed(name: str = None, **kwargs) -> PriceFeed:
    """Factory to get a price feed instance."""
    feed_class = FEEDS.get(name or settings.DEFAULT_PRICE_FEED)
    if not feed_class:
        raise ValueError(f"Unknown price feed: {name}")
    return feed_class(**kwargs)


__all__ = ["PriceFeed", "PriceQuote", "DatabasePriceFeed", "MemoryPriceFeed", "get_price_feed"]
