"""
Average-cost tracker: one running weighted-average cost per ticker.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from stockfolio.accounting.quantities import ZERO
from stockfolio.core.exceptions import InsufficientShares
from stockfolio.models.transaction import TransactionType


@dataclass(frozen=True)
class AverageCostResult:
    shares_after: Decimal
    average_cost_after: Decimal
    realized_gain: Optional[Decimal] = None


def apply_average_cost(
    tx_type: TransactionType,
    shares_before: Decimal,
    average_cost_before: Decimal,
    shares: Optional[Decimal] = None,
    price: Optional[Decimal] = None,
    ticker: Optional[str] = None,
) -> AverageCostResult:
    """
    Project one transaction onto the average-cost position.

    BUY blends the new shares into the average. SELL leaves the average
    unchanged and realizes shares * (price - average_cost_before).
    DIVIDEND changes nothing.
    """
    if tx_type == TransactionType.BUY:
        shares_after = shares_before + shares
        average_cost_after = (shares_before * average_cost_before + shares * price) / shares_after
        return AverageCostResult(shares_after, average_cost_after)

    if tx_type == TransactionType.SELL:
        if shares > shares_before:
            raise InsufficientShares(have=shares_before, need=shares, ticker=ticker)
        realized = shares * (price - average_cost_before)
        return AverageCostResult(shares_before - shares, average_cost_before, realized)

    if tx_type == TransactionType.DIVIDEND:
        return AverageCostResult(shares_before, average_cost_before)

    raise ValueError(f"{tx_type.value} does not affect a stock position")


def blended_cost(positions) -> Decimal:
    """Weighted average cost of (shares, cost) pairs. Zero when nothing is held."""
    total_shares = ZERO
    total_cost = ZERO
    for held, unit_cost in positions:
        total_shares += held
        total_cost += held * unit_cost
    if total_shares <= ZERO:
        return ZERO
    return total_cost / total_shares
