"""
Performance Calculator Service.

Return, rate and risk statistics over portfolio cash flows and daily
valuation series. All results are fractions (0.05 == 5%); callers convert
to percent for display.
"""
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from stockfolio.core.config import settings

SECONDS_PER_YEAR = 365 * 24 * 3600
DAYS_PER_YEAR = 365


@dataclass(frozen=True)
class CashFlow:
    """Investor-side flow: money in is negative, money out is positive."""
    when: datetime
    amount: float


@dataclass(frozen=True)
class RateResult:
    """Solved rate, or None with a diagnostic when the rate is undefined."""
    rate: Optional[float]
    iterations: int = 0
    reason: Optional[str] = None

    @property
    def defined(self) -> bool:
        return self.rate is not None


@dataclass(frozen=True)
class Drawdown:
    fraction: float = 0.0
    start: Optional[date] = None
    end: Optional[date] = None
    duration_days: int = 0


class PerformanceCalculator:
    """
    Calculates return, rate and risk metrics.

    IRR/XIRR use Newton's method:
        f(r)  = sum(flow_i / (1 + r) ** t_i)
        f'(r) = sum(-t_i * flow_i / (1 + r) ** (t_i + 1))
    with t_i in years since the first flow.
    """

    def __init__(
        self,
        trading_days_per_year: Optional[int] = None,
        max_iterations: Optional[int] = None,
        tolerance: Optional[float] = None,
        initial_guess: Optional[float] = None,
    ):
        self.trading_days_per_year = trading_days_per_year or settings.TRADING_DAYS_PER_YEAR
        self.max_iterations = max_iterations or settings.IRR_MAX_ITERATIONS
        self.tolerance = tolerance or settings.IRR_TOLERANCE
        self.initial_guess = initial_guess if initial_guess is not None else settings.IRR_INITIAL_GUESS

    # =========================================================================
    # Returns
    # =========================================================================

    def time_weighted_return(self, start_value: float, end_value: float, net_contributions: float) -> float:
        """(end - net) / start - 1; 0 when there is no starting value."""
        if start_value == 0:
            return 0.0
        return (end_value - net_contributions) / start_value - 1

    def money_weighted_return(self, start_value: float, end_value: float, net_contributions: float) -> float:
        """Modified Dietz: (end - start - net) / (start + net / 2)."""
        denominator = start_value + net_contributions / 2
        if denominator == 0:
            return 0.0
        return (end_value - start_value - net_contributions) / denominator

    def chained_return(self, daily_returns: pd.Series, since: date) -> Optional[float]:
        """Compound the daily returns dated after `since`. None when there are none."""
        if daily_returns.empty:
            return None
        window = daily_returns[daily_returns.index > pd.Timestamp(since)]
        if window.empty:
            return None
        return float((1 + window).prod() - 1)

    # =========================================================================
    # Internal rate of return
    # =========================================================================

    def solve_rate(self, times: Sequence[float], amounts: Sequence[float]) -> RateResult:
        """Newton iteration for the rate r where the flows' present value is zero."""
        t = np.asarray(times, dtype=float)
        flows = np.asarray(amounts, dtype=float)

        if len(flows) < 2:
            return RateResult(None, reason="at least two cash flows are required")
        if not (np.any(flows > 0) and np.any(flows < 0)):
            return RateResult(None, reason="cash flows do not change sign")

        rate = self.initial_guess
        with np.errstate(all="ignore"):
            for iteration in range(1, self.max_iterations + 1):
                base = 1.0 + rate
                value = float(np.sum(flows / base ** t))
                if not math.isfinite(value):
                    return RateResult(None, iteration, "present value overflowed")
                if abs(value) < self.tolerance:
                    return RateResult(rate, iteration)

                derivative = float(np.sum(-t * flows / base ** (t + 1)))
                if derivative == 0 or not math.isfinite(derivative):
                    return RateResult(None, iteration, "derivative vanished")

                step = value / derivative
                rate -= step
                if not math.isfinite(rate) or rate <= -1.0:
                    return RateResult(None, iteration, "rate left the domain (-100%, inf)")
                # float precision can keep |f| above tolerance on large balances
                if abs(step) < self.tolerance:
                    return RateResult(rate, iteration)

        return RateResult(
            None, self.max_iterations,
            f"did not converge within {self.max_iterations} iterations",
        )

    def irr(self, flows: List[CashFlow]) -> RateResult:
        """Rate over flows aggregated per calendar day, t = days / 365."""
        if not flows:
            return RateResult(None, reason="at least two cash flows are required")

        by_day: Dict[date, float] = {}
        for flow in flows:
            day = flow.when.date()
            by_day[day] = by_day.get(day, 0.0) + flow.amount

        days = sorted(by_day)
        first = days[0]
        times = [(day - first).days / DAYS_PER_YEAR for day in days]
        return self.solve_rate(times, [by_day[day] for day in days])

    def xirr(self, flows: List[CashFlow]) -> RateResult:
        """Rate over exact flow timestamps, t = hours / 24 / 365."""
        if not flows:
            return RateResult(None, reason="at least two cash flows are required")

        ordered = sorted(flows, key=lambda f: f.when)
        first = ordered[0].when
        times = [(f.when - first).total_seconds() / SECONDS_PER_YEAR for f in ordered]
        return self.solve_rate(times, [f.amount for f in ordered])

    # =========================================================================
    # Risk
    # =========================================================================

    def calculate_annualized_vol(self, daily_returns: pd.Series) -> float:
        """Sample standard deviation of daily returns, annualized."""
        returns = daily_returns.dropna()
        if len(returns) < 2:
            return 0.0
        return float(returns.std(ddof=1) * np.sqrt(self.trading_days_per_year))

    def calculate_max_drawdown(self, values: pd.Series) -> Drawdown:
        """
        Largest peak-to-trough decline of a date-indexed value series.

        Peaks at or below zero are ignored. Duration is calendar days from
        the peak to the trough.
        """
        worst = Drawdown()
        if values.empty:
            return worst

        peak = None
        peak_date = None
        for when, value in values.sort_index().items():
            value = float(value)
            if peak is None or value > peak:
                peak = value
                peak_date = when
                continue
            if peak <= 0:
                continue
            fraction = (peak - value) / peak
            if fraction > worst.fraction:
                worst = Drawdown(
                    fraction=fraction,
                    start=_as_date(peak_date),
                    end=_as_date(when),
                    duration_days=(_as_date(when) - _as_date(peak_date)).days,
                )
        return worst


def _as_date(value) -> date:
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, datetime):
        return value.date()
    return value


# Singleton instance for convenience
performance_calculator = PerformanceCalculator()
