# Base
from stockfolio.models.base import TimestampMixin, IdMixin

# Reference data
from stockfolio.models.ticker import Ticker
from stockfolio.models.daily_price import DailyPrice

# Ledger
from stockfolio.models.portfolio import Portfolio
from stockfolio.models.transaction import Transaction, TransactionType
from stockfolio.models.holding import Holding
from stockfolio.models.stock_lot import StockLot

__all__ = [
    "TimestampMixin",
    "IdMixin",
    "Ticker",
    "DailyPrice",
    "Portfolio",
    "Transaction",
    "TransactionType",
    "Holding",
    "StockLot",
]
