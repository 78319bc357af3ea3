"""
Service dependencies shared by the routers.

LedgerService holds the per-portfolio write locks, so one instance serves
the whole process. Tests swap these out through app.dependency_overrides.
"""
from functools import lru_cache

from stockfolio.services.ledger_service import LedgerService
from stockfolio.services.portfolio_service import PortfolioService
from stockfolio.services.price_feed import PriceFeed, get_price_feed
from stockfolio.services.reporting_service import PerformanceReporter


@lru_cache
def get_price_feed_dep() -> PriceFeed:
    return get_price_feed()


@lru_cache
def get_ledger_service() -> LedgerService:
    return LedgerService()


@lru_cache
def get_portfolio_service() -> PortfolioService:
    return PortfolioService()


@lru_cache
def get_reporter() -> PerformanceReporter:
    return PerformanceReporter(price_feed=get_price_feed_dep())
