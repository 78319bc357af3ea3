from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship
from stockfolio.core.database import Base
from stockfolio.models.base import IdMixin, utcnow


class StockLot(Base, IdMixin):
    """
    One purchase batch per BUY transaction, consumed oldest-first on sale.

    Never deleted when fully consumed (remaining_shares = 0).
    """
    __tablename__ = "portfolio_stock_lots"
    __table_args__ = (
        CheckConstraint("remaining_shares >= 0", name="non_negative_remaining"),
        CheckConstraint("remaining_shares <= shares", name="remaining_within_shares"),
        Index("ix_portfolio_stock_lots_fifo", "portfolio_id", "ticker", "purchase_date", "id"),
    )

    portfolio_id = Column(
        Integer, ForeignKey("portfolios.id", ondelete="CASCADE"), nullable=False
    )
    transaction_id = Column(
        Integer,
        ForeignKey("portfolio_transactions.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    ticker = Column(String(20), nullable=False)
    shares = Column(Numeric(18, 6), nullable=False)
    remaining_shares = Column(Numeric(18, 6), nullable=False)
    purchase_price = Column(Numeric(18, 6), nullable=False)
    purchase_date = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    portfolio = relationship("Portfolio", back_populates="lots")

    def __repr__(self) -> str:
        return (
            f"<StockLot(id={self.id}, ticker={self.ticker}, shares={self.shares}, "
            f"remaining={self.remaining_shares}, price={self.purchase_price})>"
        )
