from sqlalchemy import Column, String, Date, Numeric, Integer, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from stockfolio.core.database import Base
from stockfolio.models.base import IdMixin, TimestampMixin

class Holding(Base, IdMixin, TimestampMixin):
    """
    Current position per (portfolio, ticker), including the CASH sentinel.

    A cache updated in the same unit of work as each ledger write; always
    reconcilable by replaying the ledger.
    """
    __tablename__ = "portfolio_holdings"
    __table_args__ = (
        UniqueConstraint("portfolio_id", "ticker", name="uq_portfolio_holdings_portfolio_ticker"),
    )

    portfolio_id = Column(
        Integer, ForeignKey("portfolios.id", ondelete="CASCADE"), nullable=False
    )
    ticker = Column(String(20), nullable=False)
    shares = Column(Numeric(18, 6), nullable=False, default=0)
    average_cost = Column(Numeric(18, 8), nullable=False, default=0)
    fifo_cost = Column(Numeric(18, 8), nullable=False, default=0)
    current_price = Column(Numeric(18, 6))
    price_as_of = Column(Date)

    # Rebalancing display
    target_percentage = Column(Numeric(7, 4))
    adjustment_percentage = Column(Numeric(7, 4))

    portfolio = relationship("Portfolio", back_populates="holdings")
