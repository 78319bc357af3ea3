"""Tests for the average-cost and FIFO trackers and the ledger projection.

Properties tested:
- FIFO consumes lots oldest-first and is all-or-nothing
- Replayed lot remaining shares always equal the replayed position
- Cash after each step equals cash before plus the signed cash delta
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from hypothesis import given, settings, strategies as st

from stockfolio.accounting.average_cost import apply_average_cost
from stockfolio.accounting.fifo import (
    apply_fifo_sale,
    open_lots_in_order,
    plan_fifo_sale,
    remaining_cost_basis,
)
from stockfolio.accounting.projection import LedgerReplay, cash_delta, project_step
from stockfolio.core.exceptions import InsufficientFunds, InsufficientShares, ValidationError
from stockfolio.models.transaction import TransactionType

settings.register_profile("dev", max_examples=50, deadline=None)
settings.load_profile("dev")

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
D = Decimal


def lot(lot_id, shares, price, day):
    return SimpleNamespace(
        id=lot_id,
        transaction_id=lot_id,
        shares=D(shares),
        remaining_shares=D(shares),
        purchase_price=D(price),
        purchase_date=T0 + timedelta(days=day),
    )


def entry(entry_id, tx_type, amount, ticker=None, shares=None, price=None, fee=0, day=0):
    return SimpleNamespace(
        id=entry_id,
        type=tx_type,
        ticker=ticker,
        shares=D(str(shares)) if shares is not None else None,
        price=D(str(price)) if price is not None else None,
        amount=D(str(amount)),
        fee=D(str(fee)),
        effective_at=T0 + timedelta(days=day),
    )


# =============================================================================
# Average cost
# =============================================================================

class TestAverageCost:

    def test_buy_blends_cost(self):
        result = apply_average_cost(TransactionType.BUY, D("100000"), D("4.19"), D("50000"), D("4.15"))
        assert result.shares_after == D("150000")
        assert result.average_cost_after == pytest.approx(D("4.176666666"), abs=D("1e-8"))
        assert result.realized_gain is None

    def test_sell_keeps_cost_and_realizes_against_it(self):
        result = apply_average_cost(TransactionType.SELL, D("150"), D("10"), D("50"), D("12"))
        assert result.shares_after == D("100")
        assert result.average_cost_after == D("10")
        assert result.realized_gain == D("100")

    def test_dividend_changes_nothing(self):
        result = apply_average_cost(TransactionType.DIVIDEND, D("10"), D("3"))
        assert (result.shares_after, result.average_cost_after, result.realized_gain) == (D("10"), D("3"), None)

    def test_oversell(self):
        with pytest.raises(InsufficientShares) as exc_info:
            apply_average_cost(TransactionType.SELL, D("5"), D("1"), D("6"), D("1"), ticker="BBOB")
        assert exc_info.value.have == D("5")
        assert exc_info.value.need == D("6")


# =============================================================================
# FIFO lots
# =============================================================================

class TestFifo:

    def test_lots_ordered_by_purchase_date_then_id(self):
        lots = [lot(3, 10, 1, day=2), lot(2, 10, 1, day=1), lot(1, 10, 1, day=1)]
        assert [l.id for l in open_lots_in_order(lots)] == [1, 2, 3]

    def test_consumed_lots_are_skipped(self):
        lots = [lot(1, 10, 1, day=0), lot(2, 10, 1, day=1)]
        lots[0].remaining_shares = D("0")
        assert [l.id for l in open_lots_in_order(lots)] == [2]

    def test_sale_spanning_lots(self):
        lots = [lot(1, 100, "4.19", day=0), lot(2, 50, "4.15", day=1)]
        sale = plan_fifo_sale(lots, D("120"), D("4.25"))
        assert [(c.lot.id, c.shares) for c in sale.consumptions] == [(1, D("100")), (2, D("20"))]
        assert sale.cost_basis == D("100") * D("4.19") + D("20") * D("4.15")
        assert sale.realized_gain == D("100") * D("0.06") + D("20") * D("0.10")
        # planning alone mutates nothing
        assert lots[0].remaining_shares == D("100")

        apply_fifo_sale(sale)
        assert lots[0].remaining_shares == D("0")
        assert lots[1].remaining_shares == D("30")

    def test_insufficient_lots_leave_everything_untouched(self):
        lots = [lot(1, 10, 1, day=0), lot(2, 10, 1, day=1)]
        with pytest.raises(InsufficientShares) as exc_info:
            plan_fifo_sale(lots, D("25"), D("2"), ticker="BBOB")
        assert exc_info.value.have == D("20")
        assert [l.remaining_shares for l in lots] == [D("10"), D("10")]

    def test_remaining_cost_basis(self):
        lots = [lot(1, 100, "4.19", day=0), lot(2, 50, "4.15", day=1)]
        lots[0].remaining_shares = D("25")
        expected = (D("25") * D("4.19") + D("50") * D("4.15")) / D("75")
        assert remaining_cost_basis(lots) == expected
        assert remaining_cost_basis([]) == D("0")

    @given(
        buys=st.lists(
            st.tuples(st.integers(1, 1000), st.integers(1, 500)), min_size=1, max_size=8
        ),
        fraction=st.floats(min_value=0.0, max_value=1.0),
    )
    def test_fifo_sale_consumes_a_prefix_of_lots(self, buys, fraction):
        lots = [lot(i + 1, shares, price, day=i) for i, (shares, price) in enumerate(buys)]
        total = sum(shares for shares, _ in buys)
        to_sell = max(1, int(total * fraction))

        sale = plan_fifo_sale(lots, D(to_sell), D("10"))
        apply_fifo_sale(sale)

        remaining = [l.remaining_shares for l in lots]
        assert sum(remaining) == D(total - to_sell)
        # every lot before the last touched one is fully consumed
        touched = len(sale.consumptions)
        assert all(r == 0 for r in remaining[: touched - 1])
        assert all(l.remaining_shares == l.shares for l in lots[touched:])
        assert sale.realized_gain == sum(
            c.shares * (D("10") - c.lot.purchase_price) for c in sale.consumptions
        )


# =============================================================================
# Ledger projection
# =============================================================================

class TestProjectStep:

    @pytest.mark.parametrize("tx_type,expected", [
        (TransactionType.DEPOSIT, D("95")),
        (TransactionType.WITHDRAW, D("-105")),
        (TransactionType.BUY, D("-105")),
        (TransactionType.SELL, D("95")),
        (TransactionType.DIVIDEND, D("100")),
    ])
    def test_cash_delta(self, tx_type, expected):
        fee = D("0") if tx_type == TransactionType.DIVIDEND else D("5")
        assert cash_delta(tx_type, D("100"), fee) == expected

    def test_buy_with_fee(self):
        step = project_step(
            entry(1, "BUY", 419000, "BBOB", 100000, "4.19", fee=1000),
            cash_before=D("1000000"), shares_before=D("0"), average_cost_before=D("0"),
        )
        assert step.cash_after == D("580000.00")
        assert step.shares_after == D("100000")
        assert step.average_cost_after == D("4.19")
        assert step.fifo is None

    def test_overdraw_reports_have_and_need(self):
        with pytest.raises(InsufficientFunds) as exc_info:
            project_step(entry(1, "WITHDRAW", 150, fee=1), cash_before=D("100"))
        assert exc_info.value.have == D("100")
        assert exc_info.value.need == D("151")

    def test_sell_stamps_both_realized_gains(self):
        lots = [lot(1, 100000, "4.19", day=0), lot(2, 50000, "4.15", day=1)]
        step = project_step(
            entry(3, "SELL", 318750, "BBOB", 75000, "4.25", day=2),
            cash_before=D("372500"),
            shares_before=D("150000"),
            average_cost_before=D("4.17666667"),
            open_lots=lots,
        )
        assert step.realized_gain_fifo == D("4500")
        assert step.realized_gain_avg == pytest.approx(D("5500"), abs=D("0.01"))
        assert step.fifo_cost_basis == D("4.19")
        assert step.cash_after == D("691250")


class TestLedgerReplay:

    def test_replay_rebuilds_positions_and_lots(self):
        replay = LedgerReplay()
        replay.replay([
            entry(1, "DEPOSIT", 1000000, day=0),
            entry(2, "BUY", 419000, "BBOB", 100000, "4.19", fee=1000, day=1),
            entry(3, "BUY", 207500, "BBOB", 50000, "4.15", day=2),
            entry(4, "SELL", 318750, "BBOB", 75000, "4.25", day=3),
            entry(5, "DIVIDEND", 1200, "BBOB", day=4),
        ])
        position = replay.positions["BBOB"]
        assert replay.cash == D("692450")
        assert position.shares == D("75000")
        assert position.lot_shares == position.shares
        assert [l.remaining_shares for l in position.lots] == [D("25000"), D("50000")]
        assert position.realized_gain_fifo == D("4500")
        assert position.dividends == D("1200")

    def test_dividend_without_shares_names_the_row(self):
        replay = LedgerReplay()
        replay.apply(entry(1, "DEPOSIT", 100, day=0))
        with pytest.raises(ValidationError) as exc_info:
            replay.apply(entry(7, "DIVIDEND", 5, "BBOB", day=1))
        assert exc_info.value.detail["transaction_id"] == 7
        assert "transaction 7" in exc_info.value.message

    def test_overdraft_names_the_row(self):
        replay = LedgerReplay()
        replay.apply(entry(1, "DEPOSIT", 100, day=0))
        with pytest.raises(InsufficientFunds) as exc_info:
            replay.apply(entry(2, "WITHDRAW", 101, day=1))
        assert exc_info.value.detail["transaction_id"] == 2

    @given(st.lists(
        st.tuples(st.sampled_from(["BUY", "SELL"]), st.integers(1, 200), st.integers(1, 50)),
        min_size=1,
        max_size=25,
    ))
    def test_lots_always_cover_position(self, trades):
        replay = LedgerReplay()
        replay.apply(entry(0, "DEPOSIT", 10_000_000, day=0))
        for i, (side, shares, price) in enumerate(trades, start=1):
            held = replay.position("BBOB").shares
            if side == "SELL":
                if held == 0:
                    continue
                shares = min(shares, int(held))
            cash_before = replay.cash
            step = replay.apply(entry(i, side, shares * price, "BBOB", shares, price, day=i))
            assert step.cash_after == cash_before + cash_delta(step.type, D(shares * price), D("0"))

            position = replay.position("BBOB")
            assert position.lot_shares == position.shares
            assert position.shares >= 0
