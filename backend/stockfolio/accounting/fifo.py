"""
FIFO lot tracker.

Lots are consumed oldest-first: ordered by purchase date, then lot id.
Planning a sale is pure and all-or-nothing; applying the plan is the only
step that mutates lots. Works with StockLot rows and replay copies alike
(anything exposing id, shares, remaining_shares, purchase_price, purchase_date).
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional

from stockfolio.accounting.average_cost import blended_cost
from stockfolio.accounting.quantities import ZERO
from stockfolio.core.exceptions import InsufficientShares
from stockfolio.models.base import as_utc


@dataclass(frozen=True)
class LotConsumption:
    lot: object
    shares: Decimal


@dataclass
class FifoSale:
    shares: Decimal
    price: Decimal
    consumptions: List[LotConsumption] = field(default_factory=list)
    cost_basis: Decimal = ZERO
    realized_gain: Decimal = ZERO

    @property
    def average_cost(self) -> Decimal:
        """Average purchase price of the shares consumed."""
        if self.shares <= ZERO:
            return ZERO
        return self.cost_basis / self.shares


def open_lots_in_order(lots: Iterable) -> list:
    """Lots with shares left, in consumption order."""
    open_lots = [lot for lot in lots if lot.remaining_shares > ZERO]
    # ids are None only for lots not yet flushed, which are always the newest
    return sorted(
        open_lots,
        key=lambda lot: (as_utc(lot.purchase_date), lot.id is None, lot.id or 0),
    )


def plan_fifo_sale(
    lots: Iterable,
    shares: Decimal,
    price: Decimal,
    ticker: Optional[str] = None,
) -> FifoSale:
    """
    Decide which lots a sale consumes without touching them.

    Raises:
        InsufficientShares: when the open lots hold fewer than `shares`
    """
    ordered = open_lots_in_order(lots)
    available = sum((lot.remaining_shares for lot in ordered), ZERO)
    if available < shares:
        raise InsufficientShares(have=available, need=shares, ticker=ticker)

    sale = FifoSale(shares=shares, price=price)
    to_sell = shares
    for lot in ordered:
        if to_sell <= ZERO:
            break
        take = min(to_sell, lot.remaining_shares)
        sale.consumptions.append(LotConsumption(lot, take))
        sale.cost_basis += take * lot.purchase_price
        sale.realized_gain += take * (price - lot.purchase_price)
        to_sell -= take
    return sale


def apply_fifo_sale(sale: FifoSale) -> None:
    for consumption in sale.consumptions:
        consumption.lot.remaining_shares = consumption.lot.remaining_shares - consumption.shares


def remaining_shares(lots: Iterable) -> Decimal:
    return sum((lot.remaining_shares for lot in lots), ZERO)


def remaining_cost_basis(lots: Iterable) -> Decimal:
    """FIFO cost per share of what is still held."""
    return blended_cost(
        (lot.remaining_shares, lot.purchase_price)
        for lot in lots
        if lot.remaining_shares > ZERO
    )
