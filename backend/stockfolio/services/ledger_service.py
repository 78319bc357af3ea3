"""
Ledger Service.

Writes transactions to the append-only ledger. Each write is one unit of
work that inserts the Transaction row with its balance snapshot, updates
the Holding cache for the ticker and for CASH, and creates or consumes
StockLots. Either all of it commits or none of it does.

Writers are serialized per portfolio (cash is shared by every ticker):
- in-process by an asyncio.Lock per portfolio, bounded by
  LEDGER_LOCK_TIMEOUT_SECONDS
- in the database by SELECT ... FOR UPDATE on the portfolio row (and on
  the lots a trade touches), bounded by lock_timeout on PostgreSQL. On
  SQLite every transaction begins IMMEDIATE (see core.database), which
  serializes writers across processes and service instances.
The whole unit is bounded by LEDGER_WRITE_TIMEOUT_SECONDS. Timeouts and
lock failures surface as ConcurrencyConflict; nothing is retried here.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import delete, select, text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stockfolio.accounting.fifo import apply_fifo_sale, remaining_cost_basis
from stockfolio.accounting.projection import LedgerReplay, project_step
from stockfolio.accounting.quantities import ONE, ZERO, cost, or_zero
from stockfolio.accounting.validator import TransactionRequest, TransactionValidator
from stockfolio.core.config import settings
from stockfolio.core.database import AsyncSessionLocal
from stockfolio.core.exceptions import (
    ConcurrencyConflict,
    LedgerError,
    PortfolioNotFound,
    StorageError,
    ValidationError,
)
from stockfolio.core.metrics import metrics
from stockfolio.models.holding import Holding
from stockfolio.models.portfolio import Portfolio
from stockfolio.models.stock_lot import StockLot
from stockfolio.models.ticker import Ticker
from stockfolio.models.transaction import Transaction, TransactionType
from stockfolio.services.balance_projector import BalanceSnapshot, balance_projector

logger = logging.getLogger(__name__)

# PostgreSQL serialization_failure, deadlock_detected, lock_not_available
LOCK_SQLSTATES = {"40001", "40P01", "55P03"}


@dataclass
class ReconcileReport:
    portfolio_id: int
    transactions: int = 0
    issues: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues


@dataclass
class _PortfolioLock:
    """A portfolio's write lock and the number of writes using it."""
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class LedgerService:
    """
    Single entry point for ledger mutations.

    Share one instance per process: the in-process locks live on the
    instance and idle ones are dropped. Separate instances and processes
    are serialized by the database lock alone.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        backdate_policy: Optional[str] = None,
        lock_timeout: Optional[float] = None,
        write_timeout: Optional[float] = None,
        cash_ticker: Optional[str] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.backdate_policy = backdate_policy or settings.LEDGER_BACKDATE_POLICY
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.LEDGER_LOCK_TIMEOUT_SECONDS
        self.write_timeout = write_timeout if write_timeout is not None else settings.LEDGER_WRITE_TIMEOUT_SECONDS
        self.cash_ticker = (cash_ticker or settings.CASH_TICKER).upper()
        self.validator = TransactionValidator(cash_ticker=self.cash_ticker)
        self.projector = balance_projector
        self._locks: Dict[int, _PortfolioLock] = {}

        if self.backdate_policy not in ("recompute", "reject"):
            raise ValueError(f"Unknown backdate policy: {self.backdate_policy}")

    # =========================================================================
    # Public operations
    # =========================================================================

    async def create_transaction(
        self,
        portfolio_id: int,
        type: Any,
        amount: Any,
        fee: Any = None,
        ticker: Optional[str] = None,
        shares: Any = None,
        price: Any = None,
        notes: Optional[str] = None,
        effective_at=None,
    ) -> Transaction:
        """
        Validate, project and commit one transaction.

        Returns:
            The committed Transaction with its before/after snapshot

        Raises:
            ValidationError, InvalidTicker, PortfolioNotFound,
            InsufficientFunds, InsufficientShares, ConcurrencyConflict,
            StorageError. Nothing is persisted when any of these is raised.
        """
        tx_type = str(type).upper()
        symbol = ticker.strip().upper() if ticker else None
        try:
            request = TransactionRequest.build(
                type=type,
                amount=amount,
                fee=fee,
                ticker=ticker,
                shares=shares,
                price=price,
                notes=notes,
                effective_at=effective_at,
                cash_ticker=self.cash_ticker,
            )
            self.validator.check_fields(request)
            transaction = await self._serialized(portfolio_id, self._record, request)
        except LedgerError as exc:
            logger.warning(
                "Rejected %s for portfolio %s (%s): [%s] %s",
                tx_type, portfolio_id, symbol or "-", exc.code, exc.message,
            )
            metrics.transaction_rejected(portfolio_id, tx_type, exc.code, symbol)
            raise

        logger.info(
            "Committed %s #%s for portfolio %s: ticker=%s amount=%s cash %s -> %s",
            transaction.type, transaction.id, portfolio_id, transaction.ticker,
            transaction.amount, transaction.cash_balance_before, transaction.cash_balance_after,
        )
        metrics.transaction_committed(
            portfolio_id, transaction.type, float(transaction.amount),
            transaction.ticker, transaction.id,
        )
        return transaction

    async def reset_portfolio(self, portfolio_id: int) -> int:
        """Delete the whole ledger, all lots and ticker holdings; zero the CASH holding."""
        deleted = await self._serialized(portfolio_id, self._reset)
        logger.info("Reset portfolio %s: %d transactions deleted", portfolio_id, deleted)
        metrics.portfolio_reset(portfolio_id, deleted)
        return deleted

    async def recompute(self, portfolio_id: int) -> int:
        """Rebuild every snapshot field, lot and holding from the ledger facts."""
        return await self._serialized(portfolio_id, self._recompute)

    async def reconcile(self, portfolio_id: int) -> ReconcileReport:
        """
        Replay the ledger and compare it with the stored snapshots and caches.

        Read-only. Reports broken cash continuity, snapshot fields that differ
        from the replay, holdings whose shares differ from the signed BUY/SELL
        sum, and lots whose remaining shares differ from FIFO consumption.
        """
        async with self.session_factory() as session:
            if await session.get(Portfolio, portfolio_id) is None:
                raise PortfolioNotFound(portfolio_id)
            transactions = await self._ordered_transactions(session, portfolio_id)
            lots = (await session.execute(
                select(StockLot).where(StockLot.portfolio_id == portfolio_id)
            )).scalars().all()
            holdings = {
                holding.ticker: holding
                for holding in (await session.execute(
                    select(Holding).where(Holding.portfolio_id == portfolio_id)
                )).scalars()
            }

        report = ReconcileReport(portfolio_id=portfolio_id, transactions=len(transactions))
        self._check_continuity(transactions, report)

        replay = LedgerReplay(lots)
        for transaction in transactions:
            try:
                step = replay.apply(transaction)
            except LedgerError as exc:
                report.issues.append(f"replay failed: {exc.message}")
                return self._finish_reconcile(report)
            for name, value in step.snapshot_fields().items():
                stored = getattr(transaction, name)
                if stored != value:
                    report.issues.append(
                        f"transaction {transaction.id}: {name} is {stored}, replay gives {value}"
                    )

        cash = holdings.get(self.cash_ticker)
        if cash is None:
            report.issues.append(f"{self.cash_ticker} holding is missing")
        elif cash.shares != replay.cash:
            report.issues.append(
                f"{self.cash_ticker} holding is {cash.shares}, ledger gives {replay.cash}"
            )

        lots_by_ticker: Dict[str, list] = {}
        for lot in lots:
            lots_by_ticker.setdefault(lot.ticker, []).append(lot)
            replayed = replay.remaining_for(lot)
            if replayed is None:
                report.issues.append(f"lot {lot.id} has no BUY transaction in the ledger")
            elif replayed != lot.remaining_shares:
                report.issues.append(
                    f"lot {lot.id} ({lot.ticker}) remaining is {lot.remaining_shares}, "
                    f"FIFO replay gives {replayed}"
                )

        tickers = set(replay.positions) | {t for t in holdings if t != self.cash_ticker}
        for ticker in sorted(tickers):
            position = replay.position(ticker)
            holding = holdings.get(ticker)
            held = holding.shares if holding is not None else ZERO
            if held != position.shares:
                report.issues.append(
                    f"{ticker} holding is {held} shares, ledger gives {position.shares}"
                )
            in_lots = sum((lot.remaining_shares for lot in lots_by_ticker.get(ticker, [])), ZERO)
            if in_lots != held:
                report.issues.append(
                    f"{ticker} lots hold {in_lots} shares, holding has {held}"
                )

        return self._finish_reconcile(report)

    # =========================================================================
    # Unit of work
    # =========================================================================

    def _lock_for(self, portfolio_id: int) -> asyncio.Lock:
        entry = self._locks.get(portfolio_id)
        if entry is None:
            entry = self._locks[portfolio_id] = _PortfolioLock()
        return entry.lock

    async def _serialized(
        self,
        portfolio_id: int,
        operation: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        lock = self._lock_for(portfolio_id)
        entry = self._locks[portfolio_id]
        entry.users += 1
        try:
            await self._acquire(lock, portfolio_id)
            try:
                return await asyncio.wait_for(
                    self._run_unit(portfolio_id, operation, *args),
                    timeout=self.write_timeout,
                )
            except asyncio.TimeoutError as exc:
                raise ConcurrencyConflict(
                    f"write to portfolio {portfolio_id} timed out after {self.write_timeout}s; "
                    "nothing was persisted",
                    portfolio_id=portfolio_id,
                ) from exc
            finally:
                lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0 and not lock.locked() and self._locks.get(portfolio_id) is entry:
                del self._locks[portfolio_id]

    async def _acquire(self, lock: asyncio.Lock, portfolio_id: int) -> None:
        acquiring = asyncio.ensure_future(lock.acquire())
        try:
            await asyncio.wait_for(asyncio.shield(acquiring), timeout=self.lock_timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError) as exc:
            if acquiring.done() and not acquiring.cancelled():
                # granted while the wait was giving up
                lock.release()
            else:
                acquiring.cancel()
            if isinstance(exc, asyncio.CancelledError):
                raise
            raise ConcurrencyConflict(
                f"portfolio {portfolio_id} is locked by another write; retry",
                portfolio_id=portfolio_id,
            ) from exc

    async def _run_unit(
        self,
        portfolio_id: int,
        operation: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    await self._lock_portfolio(session, portfolio_id)
                    return await operation(session, portfolio_id, *args)
            except LedgerError:
                raise
            except DBAPIError as exc:
                if _is_lock_failure(exc):
                    raise ConcurrencyConflict(
                        f"portfolio {portfolio_id} is locked by another writer; retry",
                        portfolio_id=portfolio_id,
                    ) from exc
                logger.exception("Storage failure writing portfolio %s", portfolio_id)
                raise StorageError(f"storage failure: {exc.__class__.__name__}") from exc
            except SQLAlchemyError as exc:
                logger.exception("Storage failure writing portfolio %s", portfolio_id)
                raise StorageError(f"storage failure: {exc.__class__.__name__}") from exc

    async def _lock_portfolio(self, session: AsyncSession, portfolio_id: int) -> Portfolio:
        if session.bind.dialect.name == "postgresql":
            timeout_ms = int(self.lock_timeout * 1000)
            await session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))

        result = await session.execute(
            select(Portfolio).where(Portfolio.id == portfolio_id).with_for_update()
        )
        portfolio = result.scalar_one_or_none()
        if portfolio is None:
            raise PortfolioNotFound(portfolio_id)
        return portfolio

    # =========================================================================
    # Operations (run inside the unit of work)
    # =========================================================================

    async def _record(
        self,
        session: AsyncSession,
        portfolio_id: int,
        request: TransactionRequest,
    ) -> Transaction:
        ticker_known = True
        shares_held = None
        if request.ticker and request.ticker != self.cash_ticker:
            ticker_known = await session.get(Ticker, request.ticker) is not None
            if ticker_known and request.type == TransactionType.DIVIDEND:
                shares_held = await self.projector.shares_held_at(
                    session, portfolio_id, request.ticker, request.effective_at
                )
        self.validator.check_references(request, ticker_known=ticker_known, shares_held=shares_held)

        snapshot = await self.projector.latest(session, portfolio_id, request.ticker)
        if snapshot.effective_at is not None and request.effective_at < snapshot.effective_at:
            if self.backdate_policy == "reject":
                raise ValidationError(
                    f"effective_at {request.effective_at.isoformat()} precedes the latest "
                    f"transaction at {snapshot.effective_at.isoformat()}; "
                    "backdated transactions are not accepted",
                    field="effective_at",
                    latest_effective_at=snapshot.effective_at.isoformat(),
                )
            return await self._insert_and_recompute(session, portfolio_id, request)

        return await self._append(session, portfolio_id, request, snapshot)

    async def _append(
        self,
        session: AsyncSession,
        portfolio_id: int,
        request: TransactionRequest,
        snapshot: BalanceSnapshot,
    ) -> Transaction:
        lots: list = []
        if request.type.is_trade:
            lots = await self._open_lots(session, portfolio_id, request.ticker)

        step = project_step(
            request,
            cash_before=snapshot.cash_balance,
            shares_before=snapshot.shares if request.ticker else None,
            average_cost_before=snapshot.average_cost if request.ticker else None,
            open_lots=lots,
        )

        transaction = self._new_transaction(portfolio_id, request)
        step.stamp(transaction)
        session.add(transaction)
        await session.flush()

        if step.fifo is not None:
            apply_fifo_sale(step.fifo)
        if request.type == TransactionType.BUY:
            lot = self._new_lot(transaction)
            session.add(lot)
            lots.append(lot)

        await self._set_holding(session, portfolio_id, self.cash_ticker, step.cash_after, ONE, ONE)
        if request.ticker:
            await self._set_holding(
                session,
                portfolio_id,
                request.ticker,
                step.shares_after,
                step.average_cost_after,
                cost(remaining_cost_basis(lots)) if request.type.is_trade else None,
            )
        await session.flush()
        return transaction

    async def _insert_and_recompute(
        self,
        session: AsyncSession,
        portfolio_id: int,
        request: TransactionRequest,
    ) -> Transaction:
        transaction = self._new_transaction(portfolio_id, request)
        # Placeholders; the replay stamps the real snapshot
        transaction.cash_balance_before = ZERO
        transaction.cash_balance_after = ZERO
        session.add(transaction)
        await session.flush()
        if request.type == TransactionType.BUY:
            session.add(self._new_lot(transaction))
            await session.flush()

        rows = await self._recompute(session, portfolio_id)
        logger.info(
            "Backdated %s #%s into portfolio %s at %s; recomputed %d rows",
            transaction.type, transaction.id, portfolio_id,
            request.effective_at.isoformat(), rows,
        )
        metrics.backdated_recompute(portfolio_id, rows)
        return transaction

    async def _recompute(self, session: AsyncSession, portfolio_id: int) -> int:
        transactions = await self._ordered_transactions(session, portfolio_id)
        lots = (await session.execute(
            select(StockLot).where(StockLot.portfolio_id == portfolio_id).with_for_update()
        )).scalars().all()

        replay = LedgerReplay(lots)
        for transaction, step in zip(transactions, replay.replay(transactions)):
            step.stamp(transaction)

        for lot in lots:
            remaining = replay.remaining_for(lot)
            lot.remaining_shares = remaining if remaining is not None else lot.shares

        holdings = (await session.execute(
            select(Holding).where(Holding.portfolio_id == portfolio_id)
        )).scalars().all()
        for holding in holdings:
            if holding.ticker != self.cash_ticker and holding.ticker not in replay.positions:
                holding.shares = ZERO

        await self._set_holding(session, portfolio_id, self.cash_ticker, replay.cash, ONE, ONE)
        for ticker, position in replay.positions.items():
            await self._set_holding(
                session, portfolio_id, ticker,
                position.shares, position.average_cost, position.fifo_cost,
            )
        await session.flush()
        return replay.rows

    async def _reset(self, session: AsyncSession, portfolio_id: int) -> int:
        await session.execute(delete(StockLot).where(StockLot.portfolio_id == portfolio_id))
        result = await session.execute(
            delete(Transaction).where(Transaction.portfolio_id == portfolio_id)
        )
        await session.execute(
            delete(Holding).where(
                Holding.portfolio_id == portfolio_id,
                Holding.ticker != self.cash_ticker,
            )
        )
        await self._set_holding(session, portfolio_id, self.cash_ticker, ZERO, ONE, ONE)
        await session.flush()
        return result.rowcount or 0

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _ordered_transactions(self, session: AsyncSession, portfolio_id: int) -> list:
        result = await session.execute(
            select(Transaction)
            .where(Transaction.portfolio_id == portfolio_id)
            .order_by(Transaction.effective_at, Transaction.id)
        )
        return list(result.scalars().all())

    async def _open_lots(self, session: AsyncSession, portfolio_id: int, ticker: str) -> list:
        result = await session.execute(
            select(StockLot)
            .where(
                StockLot.portfolio_id == portfolio_id,
                StockLot.ticker == ticker,
                StockLot.remaining_shares > 0,
            )
            .order_by(StockLot.purchase_date, StockLot.id)
            .with_for_update()
        )
        return list(result.scalars().all())

    async def _set_holding(
        self,
        session: AsyncSession,
        portfolio_id: int,
        ticker: str,
        shares,
        average_cost,
        fifo_cost=None,
    ) -> Holding:
        result = await session.execute(
            select(Holding).where(Holding.portfolio_id == portfolio_id, Holding.ticker == ticker)
        )
        holding = result.scalar_one_or_none()
        if holding is None:
            holding = Holding(portfolio_id=portfolio_id, ticker=ticker, fifo_cost=ZERO)
            session.add(holding)
        holding.shares = shares
        holding.average_cost = or_zero(average_cost)
        if fifo_cost is not None:
            holding.fifo_cost = fifo_cost
        return holding

    def _new_transaction(self, portfolio_id: int, request: TransactionRequest) -> Transaction:
        return Transaction(
            portfolio_id=portfolio_id,
            type=request.type.value,
            ticker=request.ticker,
            shares=request.shares,
            price=request.price,
            amount=request.amount,
            fee=request.fee,
            notes=request.notes,
            effective_at=request.effective_at,
        )

    def _new_lot(self, transaction: Transaction) -> StockLot:
        return StockLot(
            portfolio_id=transaction.portfolio_id,
            transaction_id=transaction.id,
            ticker=transaction.ticker,
            shares=transaction.shares,
            remaining_shares=transaction.shares,
            purchase_price=transaction.price,
            purchase_date=transaction.effective_at,
        )

    def _check_continuity(self, transactions: list, report: ReconcileReport) -> None:
        previous_after = ZERO
        for transaction in transactions:
            if transaction.cash_balance_before != previous_after:
                report.issues.append(
                    f"transaction {transaction.id}: cash_balance_before is "
                    f"{transaction.cash_balance_before}, previous cash_balance_after is {previous_after}"
                )
            previous_after = transaction.cash_balance_after

    def _finish_reconcile(self, report: ReconcileReport) -> ReconcileReport:
        if report.ok:
            logger.info(
                "Portfolio %s reconciles (%d transactions)", report.portfolio_id, report.transactions
            )
        else:
            logger.warning(
                "Portfolio %s has %d reconcile issues: %s",
                report.portfolio_id, len(report.issues), "; ".join(report.issues[:5]),
            )
        return report


def _is_lock_failure(exc: DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in LOCK_SQLSTATES:
        return True
    message = str(orig).lower()
    return "database is locked" in message or "lock timeout" in message or "deadlock" in message
