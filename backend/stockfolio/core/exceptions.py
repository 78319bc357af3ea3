"""
Ledger error taxonomy.

Validation and business-rule errors are raised before (or inside) the atomic
write so the unit of work rolls back as a whole. Each error carries a stable
``code`` and a ``detail`` dict callers can use to correct the request.
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""

    code = "ledger_error"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "detail": {k: _jsonable(v) for k, v in self.detail.items()},
        }


class ValidationError(LedgerError):
    """Malformed or missing fields; the caller can correct and resubmit."""

    code = "validation_error"

    def __init__(self, reason: str, **detail: Any):
        super().__init__(reason, detail)
        self.reason = reason


class InsufficientFunds(LedgerError):
    code = "insufficient_funds"

    def __init__(self, have: Decimal, need: Decimal, **detail: Any):
        super().__init__(
            f"insufficient cash balance: have {have:.2f}, need {need:.2f}",
            {"have": have, "need": need, **detail},
        )
        self.have = have
        self.need = need


class InsufficientShares(LedgerError):
    code = "insufficient_shares"

    def __init__(self, have: Decimal, need: Decimal, ticker: Optional[str] = None, **detail: Any):
        super().__init__(
            f"insufficient shares of {ticker}: have {have:.6f}, want to sell {need:.6f}",
            {"have": have, "need": need, "ticker": ticker, **detail},
        )
        self.have = have
        self.need = need
        self.ticker = ticker


class InvalidTicker(LedgerError):
    code = "invalid_ticker"

    def __init__(self, ticker: str):
        super().__init__(f"ticker {ticker} not found", {"ticker": ticker})
        self.ticker = ticker


class PortfolioNotFound(LedgerError):
    code = "portfolio_not_found"

    def __init__(self, portfolio_id: int):
        super().__init__(f"portfolio {portfolio_id} not found", {"portfolio_id": portfolio_id})
        self.portfolio_id = portfolio_id


class TransactionNotFound(LedgerError):
    code = "transaction_not_found"

    def __init__(self, portfolio_id: int, transaction_id: int):
        super().__init__(
            f"transaction {transaction_id} not found in portfolio {portfolio_id}",
            {"portfolio_id": portfolio_id, "transaction_id": transaction_id},
        )


class ConcurrencyConflict(LedgerError):
    """Lock contention or write timeout. Nothing was persisted; safe to retry."""

    code = "concurrency_conflict"

    def __init__(self, reason: str, **detail: Any):
        super().__init__(reason, detail)


class StorageError(LedgerError):
    """Infrastructure failure surfaced as a generic error."""

    code = "storage_error"

    def __init__(self, reason: str, **detail: Any):
        super().__init__(reason, detail)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value
