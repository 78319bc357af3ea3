"""
Transaction request normalization and per-type validation.

Rules by type:
- BUY/SELL: ticker required and known; shares > 0; price > 0;
  amount == shares * price within AMOUNT_TOLERANCE.
- DEPOSIT/WITHDRAW: no ticker, shares or price (absent or zero).
- DIVIDEND: ticker required, shares owned as of the effective timestamp;
  no shares, price or fee.
- All types: amount > 0, fee >= 0.

The validator has no side effects. Lookups that need storage (ticker
existence, shares held as of a date) are done by the caller and passed in.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from stockfolio.accounting import quantities as q
from stockfolio.accounting.quantities import ZERO, to_decimal
from stockfolio.core.config import settings
from stockfolio.core.exceptions import InvalidTicker, ValidationError
from stockfolio.models.base import as_utc, utcnow
from stockfolio.models.transaction import TransactionType


@dataclass
class TransactionRequest:
    """A normalized, not yet validated, transaction request."""
    type: TransactionType
    amount: Decimal
    fee: Decimal
    effective_at: datetime
    ticker: Optional[str] = None
    shares: Optional[Decimal] = None
    price: Optional[Decimal] = None
    notes: Optional[str] = None

    @classmethod
    def build(
        cls,
        type: Any,
        amount: Any,
        fee: Any = None,
        ticker: Optional[str] = None,
        shares: Any = None,
        price: Any = None,
        notes: Optional[str] = None,
        effective_at: Optional[datetime] = None,
        cash_ticker: Optional[str] = None,
    ) -> "TransactionRequest":
        """
        Coerce raw input into a request.

        Upper-cases the type and ticker, converts numbers to Decimal, maps a
        zero shares/price on cash and dividend types to "absent", drops the
        cash sentinel from DEPOSIT/WITHDRAW and stamps effective_at in UTC.
        """
        cash_ticker = (cash_ticker or settings.CASH_TICKER).upper()

        try:
            tx_type = TransactionType(str(type).strip().upper())
        except ValueError as exc:
            allowed = ", ".join(t.value for t in TransactionType)
            raise ValidationError(
                f"unknown transaction type {type!r}; expected one of {allowed}", field="type"
            ) from exc

        if amount is None:
            raise ValidationError("amount is required", field="amount")

        symbol = ticker.strip().upper() if ticker else None
        if not symbol:
            symbol = None
        if tx_type.is_cash_only and symbol == cash_ticker:
            symbol = None

        shares_value = to_decimal(shares, "shares")
        price_value = to_decimal(price, "price")
        if not tx_type.is_trade:
            if shares_value is not None and shares_value == ZERO:
                shares_value = None
            if price_value is not None and price_value == ZERO:
                price_value = None
        if shares_value is not None:
            shares_value = q.shares(shares_value)
        if price_value is not None:
            price_value = q.price(price_value)

        if notes is not None:
            notes = notes.strip() or None

        return cls(
            type=tx_type,
            amount=q.money(to_decimal(amount, "amount")),
            fee=q.money(to_decimal(fee, "fee")) if fee is not None else ZERO,
            effective_at=as_utc(effective_at) if effective_at else utcnow(),
            ticker=symbol,
            shares=shares_value,
            price=price_value,
            notes=notes,
        )


class TransactionValidator:
    """Per-type field and reference checks. Raises on the first violated rule."""

    def __init__(self, cash_ticker: Optional[str] = None, tolerance: Optional[float] = None):
        self.cash_ticker = (cash_ticker or settings.CASH_TICKER).upper()
        self.tolerance = Decimal(str(tolerance if tolerance is not None else settings.AMOUNT_TOLERANCE))

    def check_fields(self, request: TransactionRequest) -> None:
        """Checks that need nothing but the request itself."""
        if request.amount <= ZERO:
            raise ValidationError("amount must be greater than 0", field="amount")
        if request.fee < ZERO:
            raise ValidationError("fee cannot be negative", field="fee")

        if request.type.is_trade:
            self._check_trade(request)
        elif request.type.is_cash_only:
            self._check_cash(request)
        else:
            self._check_dividend(request)

    def check_references(
        self,
        request: TransactionRequest,
        ticker_known: bool = True,
        shares_held: Optional[Decimal] = None,
    ) -> None:
        """
        Checks against portfolio and reference state.

        Args:
            request: The request, already passed through check_fields
            ticker_known: Whether request.ticker exists in the ticker table
            shares_held: For DIVIDEND, shares owned as of request.effective_at
        """
        if request.ticker is None:
            return

        if request.ticker == self.cash_ticker:
            raise ValidationError(
                f"{request.type.value} cannot reference {self.cash_ticker}; "
                "cash is not a tradable instrument",
                field="ticker",
            )
        if not ticker_known:
            raise InvalidTicker(request.ticker)

        if request.type == TransactionType.DIVIDEND:
            if shares_held is None or shares_held <= ZERO:
                raise ValidationError(
                    f"cannot receive dividend for {request.ticker}: no shares owned at "
                    f"{request.effective_at:%Y-%m-%d}",
                    field="ticker",
                    ticker=request.ticker,
                )

    def _check_trade(self, request: TransactionRequest) -> None:
        kind = request.type.value
        if not request.ticker:
            raise ValidationError(f"ticker is required for {kind}", field="ticker")
        if request.shares is None or request.shares <= ZERO:
            raise ValidationError(f"shares must be greater than 0 for {kind}", field="shares")
        if request.price is None or request.price <= ZERO:
            raise ValidationError(f"price must be greater than 0 for {kind}", field="price")

        expected = request.shares * request.price
        if abs(expected - request.amount) > self.tolerance:
            raise ValidationError(
                f"amount {request.amount} does not match shares x price ({expected:.2f})",
                field="amount",
                expected=expected,
            )

    def _check_cash(self, request: TransactionRequest) -> None:
        kind = request.type.value
        if request.ticker is not None:
            raise ValidationError(f"{kind} cannot have a ticker", field="ticker")
        if request.shares is not None:
            raise ValidationError(f"{kind} cannot have shares", field="shares")
        if request.price is not None:
            raise ValidationError(f"{kind} cannot have a price", field="price")

    def _check_dividend(self, request: TransactionRequest) -> None:
        if not request.ticker:
            raise ValidationError("ticker is required for DIVIDEND", field="ticker")
        if request.shares is not None:
            raise ValidationError("DIVIDEND cannot have shares", field="shares")
        if request.price is not None:
            raise ValidationError("DIVIDEND cannot have a price", field="price")
        if request.fee != ZERO:
            raise ValidationError("DIVIDEND cannot have a fee", field="fee")
