"""Integration tests for the ledger write path against SQLite.

Covers the worked BBOB scenarios, the reconciliation / FIFO coverage /
cash continuity invariants, atomicity of rejected writes, concurrent
writers and backdated inserts.
"""
import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import at
from stockfolio.core.exceptions import (
    ConcurrencyConflict,
    InsufficientFunds,
    InsufficientShares,
    InvalidTicker,
    PortfolioNotFound,
    ValidationError,
)
from stockfolio.core.metrics import metrics
from stockfolio.models import Holding, StockLot, Transaction
from stockfolio.services.ledger_service import LedgerService

D = Decimal


async def table_counts(session_factory, portfolio_id):
    async with session_factory() as session:
        counts = []
        for model in (Transaction, StockLot, Holding):
            result = await session.execute(
                select(func.count()).select_from(model).where(model.portfolio_id == portfolio_id)
            )
            counts.append(result.scalar_one())
        return tuple(counts)


async def holding_map(portfolios, portfolio_id):
    return {h.ticker: h for h in await portfolios.get_holdings(portfolio_id)}


async def run_bbob_scenario(ledger, portfolio_id):
    """Scenarios A-D: deposit, two buys, a partial sell."""
    deposit = await ledger.create_transaction(
        portfolio_id, type="DEPOSIT", amount=1_000_000, effective_at=at(2024, 1, 2)
    )
    first_buy = await ledger.create_transaction(
        portfolio_id, type="BUY", ticker="BBOB", shares=100_000, price=4.19,
        amount=419_000, fee=1_000, effective_at=at(2024, 1, 3),
    )
    second_buy = await ledger.create_transaction(
        portfolio_id, type="BUY", ticker="BBOB", shares=50_000, price=4.15,
        amount=207_500, effective_at=at(2024, 1, 4),
    )
    sell = await ledger.create_transaction(
        portfolio_id, type="SELL", ticker="BBOB", shares=75_000, price=4.25,
        amount=318_750, effective_at=at(2024, 1, 5),
    )
    return deposit, first_buy, second_buy, sell


@pytest.mark.asyncio
class TestScenarios:

    async def test_a_deposit_funds_cash_holding(self, ledger, portfolios, portfolio):
        tx = await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=1_000_000)

        assert tx.cash_balance_before == D("0")
        assert tx.cash_balance_after == D("1000000")
        holdings = await holding_map(portfolios, portfolio.id)
        assert holdings["CASH"].shares == D("1000000")

    async def test_b_buy_with_fee(self, ledger, portfolios, portfolio):
        await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=1_000_000,
                                        effective_at=at(2024, 1, 2))
        tx = await ledger.create_transaction(
            portfolio.id, type="BUY", ticker="BBOB", shares=100_000, price=4.19,
            amount=419_000, fee=1_000, effective_at=at(2024, 1, 3),
        )

        assert tx.cash_balance_before == D("1000000")
        assert tx.cash_balance_after == D("580000")
        assert tx.average_cost_after == D("4.19")
        assert tx.total_amount == D("420000")
        lots = await portfolios.get_lots(portfolio.id, "BBOB")
        assert len(lots) == 1
        assert (lots[0].shares, lots[0].remaining_shares, lots[0].purchase_price) == (
            D("100000"), D("100000"), D("4.19")
        )

    async def test_c_second_buy_blends_average_cost(self, ledger, portfolios, portfolio):
        _, _, second_buy, _ = await run_bbob_scenario(ledger, portfolio.id)

        expected = (D("100000") * D("4.19") + D("50000") * D("4.15")) / D("150000")
        assert second_buy.average_cost_after == pytest.approx(expected, abs=D("1e-8"))
        assert second_buy.shares_count_after == D("150000")

    async def test_d_sell_realizes_fifo_and_average_gains(self, ledger, portfolios, portfolio):
        _, _, second_buy, sell = await run_bbob_scenario(ledger, portfolio.id)

        assert sell.realized_gain_fifo == D("4500")
        expected_avg_gain = D("75000") * (D("4.25") - second_buy.average_cost_after)
        assert sell.realized_gain_avg == pytest.approx(expected_avg_gain, abs=D("0.01"))
        assert sell.fifo_cost_basis == D("4.19")
        assert sell.average_cost_after == sell.average_cost_before

        lots = await portfolios.get_lots(portfolio.id, "BBOB")
        assert [lot.remaining_shares for lot in lots] == [D("25000"), D("50000")]
        holdings = await holding_map(portfolios, portfolio.id)
        assert holdings["BBOB"].shares == D("75000")
        assert holdings["BBOB"].fifo_cost == pytest.approx(
            (D("25000") * D("4.19") + D("50000") * D("4.15")) / D("75000"), abs=D("1e-8")
        )

    async def test_e_oversell_is_rejected_atomically(self, ledger, portfolios, session_factory, portfolio):
        await run_bbob_scenario(ledger, portfolio.id)
        before = await table_counts(session_factory, portfolio.id)
        lots_before = [lot.remaining_shares for lot in await portfolios.get_lots(portfolio.id)]

        with pytest.raises(InsufficientShares) as exc_info:
            await ledger.create_transaction(
                portfolio.id, type="SELL", ticker="BBOB", shares=80_000, price=4.25,
                amount=340_000, effective_at=at(2024, 1, 6),
            )

        assert exc_info.value.have == D("75000")
        assert exc_info.value.need == D("80000")
        assert await table_counts(session_factory, portfolio.id) == before
        assert [lot.remaining_shares for lot in await portfolios.get_lots(portfolio.id)] == lots_before
        holdings = await holding_map(portfolios, portfolio.id)
        assert holdings["BBOB"].shares == D("75000")

    async def test_f_dividend_before_shares_were_owned(self, ledger, portfolio):
        await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=10_000,
                                        effective_at=at(2024, 1, 1))
        await ledger.create_transaction(
            portfolio.id, type="BUY", ticker="AAPL", shares=10, price=150,
            amount=1_500, effective_at=at(2024, 3, 1),
        )

        with pytest.raises(ValidationError, match="no shares owned at 2024-02-01"):
            await ledger.create_transaction(
                portfolio.id, type="DIVIDEND", ticker="AAPL", amount=25,
                effective_at=at(2024, 2, 1),
            )

        tx = await ledger.create_transaction(
            portfolio.id, type="DIVIDEND", ticker="AAPL", amount=25, effective_at=at(2024, 3, 15),
        )
        assert tx.cash_balance_after == D("8525")
        assert tx.shares_count_after == D("10")


@pytest.mark.asyncio
class TestRejections:

    async def test_overdraw_reports_have_and_need(self, ledger, session_factory, portfolio):
        await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=500)
        before = await table_counts(session_factory, portfolio.id)

        with pytest.raises(InsufficientFunds) as exc_info:
            await ledger.create_transaction(
                portfolio.id, type="BUY", ticker="MSFT", shares=2, price=250, amount=500, fee=1,
            )

        assert exc_info.value.have == D("500")
        assert exc_info.value.need == D("501")
        assert await table_counts(session_factory, portfolio.id) == before

    async def test_unknown_ticker(self, ledger, portfolio):
        await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=500)
        with pytest.raises(InvalidTicker):
            await ledger.create_transaction(
                portfolio.id, type="BUY", ticker="NOPE", shares=1, price=1, amount=1,
            )

    async def test_unknown_portfolio(self, ledger):
        with pytest.raises(PortfolioNotFound):
            await ledger.create_transaction(9999, type="DEPOSIT", amount=1)

    async def test_rejections_are_counted(self, ledger, portfolio):
        with pytest.raises(ValidationError):
            await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=0)
        await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=5)

        summary = metrics.get_summary()
        assert summary["transactions_committed"] == 1
        assert summary["transactions_rejected"] == 1
        assert summary["rejected_by_code"] == {"validation_error": 1}


@pytest.mark.asyncio
class TestInvariants:

    async def test_replay_matches_caches(self, ledger, portfolio):
        await run_bbob_scenario(ledger, portfolio.id)
        await ledger.create_transaction(portfolio.id, type="DIVIDEND", ticker="BBOB",
                                        amount=1_200, effective_at=at(2024, 1, 8))
        await ledger.create_transaction(portfolio.id, type="WITHDRAW", amount=100_000, fee=10,
                                        effective_at=at(2024, 1, 9))

        report = await ledger.reconcile(portfolio.id)
        assert report.ok, report.issues
        assert report.transactions == 6

    async def test_cash_continuity(self, ledger, portfolios, portfolio):
        await run_bbob_scenario(ledger, portfolio.id)
        rows = list(reversed(await portfolios.get_transactions(portfolio.id)))
        for earlier, later in zip(rows, rows[1:]):
            assert later.cash_balance_before == earlier.cash_balance_after

    async def test_signed_share_sum_and_lots_match_holding(self, ledger, portfolios, portfolio):
        await run_bbob_scenario(ledger, portfolio.id)
        rows = await portfolios.get_transactions(portfolio.id, ticker="BBOB")
        signed = sum(
            (t.shares if t.type == "BUY" else -t.shares for t in rows if t.type in ("BUY", "SELL")),
            D("0"),
        )
        lots = await portfolios.get_lots(portfolio.id, "BBOB")
        holdings = await holding_map(portfolios, portfolio.id)

        assert signed == holdings["BBOB"].shares
        assert sum(lot.remaining_shares for lot in lots) == holdings["BBOB"].shares

    async def test_reads_are_idempotent(self, ledger, portfolios, portfolio):
        await run_bbob_scenario(ledger, portfolio.id)
        first = [(h.ticker, h.shares, h.average_cost) for h in await portfolios.get_holdings(portfolio.id)]
        second = [(h.ticker, h.shares, h.average_cost) for h in await portfolios.get_holdings(portfolio.id)]
        assert first == second


@pytest.mark.asyncio
class TestConcurrency:

    async def test_concurrent_sells_cannot_double_consume_a_lot(self, ledger, portfolios, portfolio):
        await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=10_000,
                                        effective_at=at(2024, 1, 1))
        await ledger.create_transaction(
            portfolio.id, type="BUY", ticker="MSFT", shares=10, price=100, amount=1_000,
            effective_at=at(2024, 1, 2),
        )

        sell = dict(type="SELL", ticker="MSFT", shares=10, price=110, amount=1_100,
                    effective_at=at(2024, 1, 3))
        results = await asyncio.gather(
            ledger.create_transaction(portfolio.id, **sell),
            ledger.create_transaction(portfolio.id, **sell),
            return_exceptions=True,
        )

        committed = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, Exception)]
        assert len(committed) == 1
        assert len(rejected) == 1
        assert isinstance(rejected[0], InsufficientShares)

        lots = await portfolios.get_lots(portfolio.id, "MSFT")
        assert lots[0].remaining_shares == D("0")
        assert (await ledger.reconcile(portfolio.id)).ok

    async def test_concurrent_deposits_all_land_in_order(self, ledger, portfolio):
        await asyncio.gather(*[
            ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=100,
                                      effective_at=at(2024, 1, 1))
            for _ in range(10)
        ])
        report = await ledger.reconcile(portfolio.id)
        assert report.ok, report.issues
        assert report.transactions == 10

    async def test_lock_wait_is_bounded(self, session_factory, portfolio):
        ledger = LedgerService(session_factory, lock_timeout=0.05)
        lock = ledger._lock_for(portfolio.id)
        await lock.acquire()
        try:
            with pytest.raises(ConcurrencyConflict):
                await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=1)
        finally:
            lock.release()

        tx = await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=1)
        assert tx.cash_balance_after == D("1")
        assert ledger._locks == {}

    async def test_separate_services_cannot_double_sell(self, session_factory, portfolios, portfolio):
        first = LedgerService(session_factory)
        second = LedgerService(session_factory)
        await first.create_transaction(portfolio.id, type="DEPOSIT", amount=10_000,
                                       effective_at=at(2024, 1, 1))
        await first.create_transaction(
            portfolio.id, type="BUY", ticker="MSFT", shares=10, price=100, amount=1_000,
            effective_at=at(2024, 1, 2),
        )

        sell = dict(type="SELL", ticker="MSFT", shares=10, price=110, amount=1_100,
                    effective_at=at(2024, 1, 3))
        results = await asyncio.gather(
            first.create_transaction(portfolio.id, **sell),
            second.create_transaction(portfolio.id, **sell),
            return_exceptions=True,
        )

        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert [type(r) for r in results if isinstance(r, Exception)] == [InsufficientShares]
        holdings = await holding_map(portfolios, portfolio.id)
        assert holdings["CASH"].shares == D("10100")
        assert holdings["MSFT"].shares == D("0")
        assert (await first.reconcile(portfolio.id)).ok

    async def test_separate_services_keep_cash_continuous(self, session_factory, portfolio):
        services = [LedgerService(session_factory) for _ in range(3)]
        await asyncio.gather(*[
            service.create_transaction(portfolio.id, type="DEPOSIT", amount=100,
                                       effective_at=at(2024, 1, 1))
            for service in services
            for _ in range(2)
        ])
        report = await services[0].reconcile(portfolio.id)
        assert report.ok, report.issues
        assert report.transactions == 6

    async def test_idle_locks_are_dropped(self, ledger, portfolios):
        created = [await portfolios.create_portfolio(f"P{i}") for i in range(3)]
        for portfolio in created:
            await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=1)
        with pytest.raises(PortfolioNotFound):
            await ledger.create_transaction(9999, type="DEPOSIT", amount=1)
        assert ledger._locks == {}

    async def test_timed_out_waiter_does_not_keep_the_lock(self, session_factory, portfolio):
        ledger = LedgerService(session_factory, lock_timeout=0.05)
        lock = ledger._lock_for(portfolio.id)
        await lock.acquire()
        waiters = [
            ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=1) for _ in range(3)
        ]
        results = await asyncio.gather(*waiters, return_exceptions=True)
        lock.release()

        assert all(isinstance(r, ConcurrencyConflict) for r in results)
        assert not lock.locked()
        tx = await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=1)
        assert tx.cash_balance_before == D("0")
        assert ledger._locks == {}


@pytest.mark.asyncio
class TestBackdating:

    async def test_backdated_deposit_restamps_later_rows(self, ledger, portfolios, portfolio):
        await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=1_000,
                                        effective_at=at(2024, 1, 1))
        buy = await ledger.create_transaction(
            portfolio.id, type="BUY", ticker="AAPL", shares=10, price=50, amount=500,
            effective_at=at(2024, 1, 3),
        )
        backdated = await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=200,
                                                    effective_at=at(2024, 1, 2))

        assert backdated.cash_balance_before == D("1000")
        assert backdated.cash_balance_after == D("1200")
        buy = await portfolios.get_transaction(portfolio.id, buy.id)
        assert buy.cash_balance_before == D("1200")
        assert buy.cash_balance_after == D("700")
        holdings = await holding_map(portfolios, portfolio.id)
        assert holdings["CASH"].shares == D("700")
        assert (await ledger.reconcile(portfolio.id)).ok
        assert metrics.get_summary()["by_event"]["ledger/backdated_recompute"] == 1

    async def test_backdated_buy_is_consumed_first(self, ledger, portfolios, portfolio):
        await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=10_000,
                                        effective_at=at(2024, 1, 1, 9))
        await ledger.create_transaction(portfolio.id, type="BUY", ticker="AAPL", shares=100,
                                        price=10, amount=1_000, effective_at=at(2024, 1, 2))
        await ledger.create_transaction(portfolio.id, type="BUY", ticker="AAPL", shares=100,
                                        price=20, amount=2_000, effective_at=at(2024, 1, 5))
        sell = await ledger.create_transaction(portfolio.id, type="SELL", ticker="AAPL", shares=50,
                                               price=30, amount=1_500, effective_at=at(2024, 1, 6))
        assert sell.realized_gain_fifo == D("1000")

        await ledger.create_transaction(portfolio.id, type="BUY", ticker="AAPL", shares=100,
                                        price=5, amount=500, effective_at=at(2024, 1, 1, 12))

        sell = await portfolios.get_transaction(portfolio.id, sell.id)
        assert sell.realized_gain_fifo == D("1250")
        assert sell.realized_gain_avg == pytest.approx(D("916.6667"), abs=D("0.0001"))
        lots = await portfolios.get_lots(portfolio.id, "AAPL")
        assert [(lot.purchase_price, lot.remaining_shares) for lot in lots] == [
            (D("5"), D("50")), (D("10"), D("100")), (D("20"), D("100")),
        ]
        holdings = await holding_map(portfolios, portfolio.id)
        assert holdings["AAPL"].shares == D("250")
        assert (await ledger.reconcile(portfolio.id)).ok

    async def test_backdate_that_breaks_a_later_row_is_rejected(self, ledger, session_factory, portfolio):
        await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=1_000,
                                        effective_at=at(2024, 1, 1))
        withdraw = await ledger.create_transaction(portfolio.id, type="WITHDRAW", amount=900,
                                                   effective_at=at(2024, 1, 5))
        before = await table_counts(session_factory, portfolio.id)

        with pytest.raises(InsufficientFunds) as exc_info:
            await ledger.create_transaction(portfolio.id, type="BUY", ticker="AAPL", shares=10,
                                            price=50, amount=500, effective_at=at(2024, 1, 3))

        assert exc_info.value.detail["transaction_id"] == withdraw.id
        assert await table_counts(session_factory, portfolio.id) == before
        assert (await ledger.reconcile(portfolio.id)).ok

    async def test_reject_policy(self, session_factory, portfolio):
        ledger = LedgerService(session_factory, backdate_policy="reject")
        await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=100,
                                        effective_at=at(2024, 1, 2))

        with pytest.raises(ValidationError, match="backdated"):
            await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=100,
                                            effective_at=at(2024, 1, 1))

        # same timestamp is not backdated
        tx = await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=100,
                                             effective_at=at(2024, 1, 2))
        assert tx.cash_balance_after == D("200")


@pytest.mark.asyncio
class TestReset:

    async def test_reset_clears_ledger_and_zeroes_cash(self, ledger, portfolios, session_factory, portfolio):
        await run_bbob_scenario(ledger, portfolio.id)

        deleted = await ledger.reset_portfolio(portfolio.id)

        assert deleted == 4
        assert await table_counts(session_factory, portfolio.id) == (0, 0, 1)
        holdings = await holding_map(portfolios, portfolio.id)
        assert holdings["CASH"].shares == D("0")
        assert (await ledger.reconcile(portfolio.id)).ok

        tx = await ledger.create_transaction(portfolio.id, type="DEPOSIT", amount=50)
        assert tx.cash_balance_before == D("0")
