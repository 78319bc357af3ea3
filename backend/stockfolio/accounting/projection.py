"""
Balance projection for a single ledger row and for a whole ledger.

`project_step` is the pure "before -> after" computation shared by the
append path and by `LedgerReplay`, which rebuilds every snapshot field of
a portfolio from its ledger facts (backdated recompute and reconcile).
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from stockfolio.accounting.average_cost import apply_average_cost
from stockfolio.accounting.fifo import (
    FifoSale,
    apply_fifo_sale,
    plan_fifo_sale,
    remaining_cost_basis,
    remaining_shares,
)
from stockfolio.accounting.quantities import ZERO, cost, gain, money, or_zero, shares
from stockfolio.core.exceptions import (
    InsufficientFunds,
    InsufficientShares,
    LedgerError,
    ValidationError,
)
from stockfolio.models.base import as_utc
from stockfolio.models.transaction import TransactionType


def cash_delta(tx_type: TransactionType, amount: Decimal, fee: Decimal) -> Decimal:
    """Signed effect of a transaction on the cash balance."""
    if tx_type == TransactionType.DEPOSIT:
        return amount - fee
    if tx_type == TransactionType.WITHDRAW:
        return -(amount + fee)
    if tx_type == TransactionType.BUY:
        return -(amount + fee)
    if tx_type == TransactionType.SELL:
        return amount - fee
    return amount


@dataclass
class LedgerStep:
    """Before/after values for one ledger row."""
    type: TransactionType
    cash_before: Decimal
    cash_after: Decimal
    shares_before: Optional[Decimal] = None
    shares_after: Optional[Decimal] = None
    average_cost_before: Optional[Decimal] = None
    average_cost_after: Optional[Decimal] = None
    realized_gain_avg: Optional[Decimal] = None
    realized_gain_fifo: Optional[Decimal] = None
    fifo_cost_basis: Optional[Decimal] = None
    fifo: Optional[FifoSale] = None

    def snapshot_fields(self) -> dict:
        return {
            "cash_balance_before": self.cash_before,
            "cash_balance_after": self.cash_after,
            "shares_count_before": self.shares_before,
            "shares_count_after": self.shares_after,
            "average_cost_before": self.average_cost_before,
            "average_cost_after": self.average_cost_after,
            "realized_gain_avg": self.realized_gain_avg,
            "realized_gain_fifo": self.realized_gain_fifo,
            "fifo_cost_basis": self.fifo_cost_basis,
        }

    def stamp(self, transaction) -> None:
        for name, value in self.snapshot_fields().items():
            setattr(transaction, name, value)


def project_step(
    entry,
    cash_before: Decimal,
    shares_before: Optional[Decimal] = None,
    average_cost_before: Optional[Decimal] = None,
    open_lots: Iterable = (),
) -> LedgerStep:
    """
    Compute the snapshot for one entry without mutating anything.

    `entry` is a TransactionRequest or a Transaction row. For SELL the
    returned step carries the FIFO plan; the caller applies it.

    Raises:
        InsufficientShares: SELL of more than is held
        InsufficientFunds: the step would leave cash below zero
    """
    tx_type = TransactionType(entry.type)
    fee = or_zero(entry.fee)
    cash_after = money(cash_before + cash_delta(tx_type, entry.amount, fee))
    step = LedgerStep(type=tx_type, cash_before=money(cash_before), cash_after=cash_after)

    if not tx_type.is_cash_only:
        held = or_zero(shares_before)
        avg = or_zero(average_cost_before)
        result = apply_average_cost(
            tx_type, held, avg, entry.shares, entry.price, ticker=entry.ticker
        )
        step.shares_before = shares(held)
        step.shares_after = shares(result.shares_after)
        step.average_cost_before = cost(avg)
        step.average_cost_after = cost(result.average_cost_after)

        if tx_type == TransactionType.SELL:
            sale = plan_fifo_sale(open_lots, entry.shares, entry.price, ticker=entry.ticker)
            step.fifo = sale
            step.realized_gain_avg = gain(result.realized_gain)
            step.realized_gain_fifo = gain(sale.realized_gain)
            step.fifo_cost_basis = cost(sale.average_cost)

    if cash_after < ZERO:
        raise InsufficientFunds(have=step.cash_before, need=step.cash_before - cash_after)

    return step


@dataclass
class ReplayLot:
    id: Optional[int]
    transaction_id: int
    ticker: str
    shares: Decimal
    remaining_shares: Decimal
    purchase_price: Decimal
    purchase_date: datetime


@dataclass
class ReplayPosition:
    shares: Decimal = ZERO
    average_cost: Decimal = ZERO
    realized_gain_avg: Decimal = ZERO
    realized_gain_fifo: Decimal = ZERO
    dividends: Decimal = ZERO
    lots: List[ReplayLot] = field(default_factory=list)

    @property
    def fifo_cost(self) -> Decimal:
        return cost(remaining_cost_basis(self.lots))

    @property
    def lot_shares(self) -> Decimal:
        return remaining_shares(self.lots)


class LedgerReplay:
    """
    Replays ledger rows in total order, carrying cash, positions and lots.

    Lots are copies: the caller decides whether to write the replayed
    remaining shares back (recompute) or only compare them (reconcile).
    Rows must be fed in (effective_at, id) order.
    """

    def __init__(self, lots: Iterable = ()):
        self.cash = ZERO
        self.positions: Dict[str, ReplayPosition] = {}
        self.rows = 0
        self._lot_ids = {lot.transaction_id: lot.id for lot in lots}
        self._lots_by_transaction: Dict[int, ReplayLot] = {}

    def position(self, ticker: str) -> ReplayPosition:
        if ticker not in self.positions:
            self.positions[ticker] = ReplayPosition()
        return self.positions[ticker]

    def apply(self, entry) -> LedgerStep:
        tx_type = TransactionType(entry.type)
        position = self.position(entry.ticker) if entry.ticker else None

        try:
            if tx_type == TransactionType.DIVIDEND and position.shares <= ZERO:
                raise ValidationError(
                    f"cannot receive dividend for {entry.ticker}: no shares owned at "
                    f"{as_utc(entry.effective_at):%Y-%m-%d}",
                    ticker=entry.ticker,
                )
            step = project_step(
                entry,
                cash_before=self.cash,
                shares_before=position.shares if position else None,
                average_cost_before=position.average_cost if position else None,
                open_lots=position.lots if position else (),
            )
        except (InsufficientFunds, InsufficientShares, ValidationError) as exc:
            _name_row(exc, entry)
            raise

        self.cash = step.cash_after
        self.rows += 1
        if position is None:
            return step

        position.shares = step.shares_after
        position.average_cost = step.average_cost_after
        if tx_type == TransactionType.BUY:
            lot = ReplayLot(
                id=self._lot_ids.get(entry.id),
                transaction_id=entry.id,
                ticker=entry.ticker,
                shares=entry.shares,
                remaining_shares=entry.shares,
                purchase_price=entry.price,
                purchase_date=as_utc(entry.effective_at),
            )
            position.lots.append(lot)
            self._lots_by_transaction[entry.id] = lot
        elif tx_type == TransactionType.SELL:
            apply_fifo_sale(step.fifo)
            position.realized_gain_avg += step.realized_gain_avg
            position.realized_gain_fifo += step.realized_gain_fifo
        elif tx_type == TransactionType.DIVIDEND:
            position.dividends += entry.amount
        return step

    def replay(self, entries: Iterable) -> List[LedgerStep]:
        return [self.apply(entry) for entry in entries]

    def remaining_for(self, lot) -> Optional[Decimal]:
        """Replayed remaining shares of a stored lot, None if its BUY was not replayed."""
        replayed = self._lots_by_transaction.get(lot.transaction_id)
        return replayed.remaining_shares if replayed else None


def _name_row(exc: LedgerError, entry) -> None:
    when = as_utc(entry.effective_at)
    exc.message = f"{exc.message} (transaction {entry.id} at {when:%Y-%m-%d %H:%M:%S})"
    exc.args = (exc.message,)
    exc.detail["transaction_id"] = entry.id
    exc.detail["effective_at"] = when.isoformat()
