"""
Append-only ledger of portfolio transactions.

Rows are totally ordered by (effective_at, id). Ledger facts (type, ticker,
shares, price, amount, fee, notes, timestamps) never change after commit;
the snapshot columns are only re-stamped by a backdated recompute.
"""
import enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from stockfolio.core.database import Base
from stockfolio.models.base import IdMixin, utcnow


class TransactionType(str, enum.Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"

    @property
    def is_cash_only(self) -> bool:
        return self in (TransactionType.DEPOSIT, TransactionType.WITHDRAW)

    @property
    def is_trade(self) -> bool:
        return self in (TransactionType.BUY, TransactionType.SELL)


class Transaction(Base, IdMixin):
    __tablename__ = "portfolio_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint("fee >= 0", name="non_negative_fee"),
        Index("ix_portfolio_transactions_order", "portfolio_id", "effective_at", "id"),
        Index(
            "ix_portfolio_transactions_ticker_order",
            "portfolio_id", "ticker", "effective_at", "id",
        ),
    )

    portfolio_id = Column(
        Integer, ForeignKey("portfolios.id", ondelete="CASCADE"), nullable=False
    )
    type = Column(String(10), nullable=False)
    ticker = Column(String(20))
    shares = Column(Numeric(18, 6))
    price = Column(Numeric(18, 6))
    amount = Column(Numeric(18, 2), nullable=False)
    fee = Column(Numeric(18, 2), nullable=False, default=0)
    notes = Column(Text)
    effective_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Balance snapshots
    cash_balance_before = Column(Numeric(18, 2), nullable=False)
    cash_balance_after = Column(Numeric(18, 2), nullable=False)
    shares_count_before = Column(Numeric(18, 6))
    shares_count_after = Column(Numeric(18, 6))
    average_cost_before = Column(Numeric(18, 8))
    average_cost_after = Column(Numeric(18, 8))

    # Realized gains, stored side by side for both cost-basis methods
    realized_gain_avg = Column(Numeric(18, 4))
    realized_gain_fifo = Column(Numeric(18, 4))
    fifo_cost_basis = Column(Numeric(18, 8))

    portfolio = relationship("Portfolio", back_populates="transactions")

    @property
    def total_amount(self):
        return self.amount + (self.fee or 0)

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, type={self.type}, ticker={self.ticker}, "
            f"amount={self.amount}, effective_at={self.effective_at})>"
        )
