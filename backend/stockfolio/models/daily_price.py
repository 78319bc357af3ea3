from sqlalchemy import Column, String, Date, Numeric, BigInteger, UniqueConstraint
from stockfolio.core.database import Base
from stockfolio.models.base import IdMixin, TimestampMixin

class DailyPrice(Base, IdMixin, TimestampMixin):
    """
    Daily closing prices, written by the external price scraper.
    Read-only from the ledger's point of view.
    """
    __tablename__ = "daily_stock_prices"
    __table_args__ = (
        UniqueConstraint("ticker", "date", name="uq_daily_stock_prices_ticker_date"),
    )

    ticker = Column(String(20), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    open_price = Column(Numeric(18, 6))
    high_price = Column(Numeric(18, 6))
    low_price = Column(Numeric(18, 6))
    close_price = Column(Numeric(18, 6), nullable=False)
    volume = Column(BigInteger)
