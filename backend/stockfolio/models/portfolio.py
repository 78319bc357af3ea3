from sqlalchemy import Column, String, Text
from sqlalchemy.orm import relationship
from stockfolio.core.database import Base
from stockfolio.models.base import IdMixin, TimestampMixin


class Portfolio(Base, IdMixin, TimestampMixin):
    """
    A single-currency investment portfolio. Owns its ledger, holdings and lots.
    """
    __tablename__ = "portfolios"

    name = Column(String(100), nullable=False)
    description = Column(Text)

    transactions = relationship(
        "Transaction", back_populates="portfolio",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    holdings = relationship(
        "Holding", back_populates="portfolio",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    lots = relationship(
        "StockLot", back_populates="portfolio",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Portfolio(id={self.id}, name={self.name!r})>"
