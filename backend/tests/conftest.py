"""
Shared fixtures: a fresh SQLite database per test and services bound to it.
"""
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from stockfolio.core.database import Base, create_engine_for_url, create_session_factory, init_db
from stockfolio.core.metrics import metrics
from stockfolio.models import Ticker
from stockfolio.services.ledger_service import LedgerService
from stockfolio.services.portfolio_service import PortfolioService
from stockfolio.services.price_feed import MemoryPriceFeed
from stockfolio.services.reporting_service import PerformanceReporter

TICKERS = ["BBOB", "AAPL", "MSFT"]


def at(year: int, month: int, day: int, hour: int = 12, minute: int = 0) -> datetime:
    """UTC timestamp helper."""
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clear_metrics():
    metrics.clear_buffer()
    yield
    metrics.clear_buffer()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await init_db(engine)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    factory = create_session_factory(engine)
    async with factory() as session:
        async with session.begin():
            session.add_all([Ticker(symbol=symbol, name=symbol) for symbol in TICKERS])
    return factory


@pytest.fixture
def ledger(session_factory) -> LedgerService:
    return LedgerService(session_factory)


@pytest.fixture
def portfolios(session_factory) -> PortfolioService:
    return PortfolioService(session_factory)


@pytest.fixture
def price_feed() -> MemoryPriceFeed:
    return MemoryPriceFeed()


@pytest.fixture
def reporter(session_factory, price_feed) -> PerformanceReporter:
    return PerformanceReporter(session_factory, price_feed)


@pytest_asyncio.fixture
async def portfolio(portfolios):
    return await portfolios.create_portfolio("Main", "test portfolio")
