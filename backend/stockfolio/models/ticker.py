from sqlalchemy import Column, String, Boolean
from stockfolio.core.database import Base
from stockfolio.models.base import TimestampMixin


class Ticker(Base, TimestampMixin):
    """
    Known tradable instruments. BUY/SELL/DIVIDEND must reference one of these.
    """
    __tablename__ = "tickers"

    symbol = Column(String(20), primary_key=True)
    name = Column(String(255))
    exchange = Column(String(50))
    active = Column(Boolean, default=True, nullable=False)
