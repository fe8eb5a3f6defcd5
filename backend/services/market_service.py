"""
Market service: the application-level owner of one market session.

Ties the pure core to the outside world. It runs the clock, settles every
loaded account after each tick, publishes snapshots to stream subscribers
and persists the session and ledgers through SQLAlchemy.
"""
import asyncio
import logging
import uuid
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config import Settings
from models.account import Account
from models.market_state import MarketState, MARKET_STATE_ID
from schemas.account import (
    AccountState,
    ExecutedOrderNotice,
    LiquidationNotice,
    OrderResult,
    PortfolioValuation,
    RejectReason,
    SettlementReport,
)
from schemas.market import InstrumentDetail, MarketSnapshot, NewsEvent, SessionStatus
from services.market.clock import SessionClock
from services.market.params import MarketParams
from services.market.session import MarketSession, TickReport
from services.market.settlement import SettlementEngine
from services.market.sync import build_snapshot, news_feed, quote_for

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 10


class AccountNotFound(LookupError):
    pass


class MarketService:
    def __init__(
        self,
        params: MarketParams | None = None,
        session: MarketSession | None = None,
        session_factory: Optional[Callable[[], Session]] = None,
        tick_interval: float = 1.0,
        max_batch_seconds: Optional[float] = None,
        persist_every_ticks: int = 15,
    ):
        self.params = params or MarketParams()
        self.session = session or MarketSession(self.params)
        self.session_factory = session_factory
        self.persist_every_ticks = persist_every_ticks
        self.lock = asyncio.Lock()
        self.settlement = SettlementEngine(self.params, self.session)
        self.clock = SessionClock(
            self.session,
            self.lock,
            on_tick=self._on_tick,
            tick_interval=tick_interval,
            max_batch_seconds=max_batch_seconds,
        )
        self.accounts: dict[str, AccountState] = {}
        self._executed: dict[str, list[ExecutedOrderNotice]] = {}
        self._liquidations: dict[str, list[LiquidationNotice]] = {}
        self._subscribers: set[asyncio.Queue] = set()
        self.latest_snapshot: MarketSnapshot = build_snapshot(self.session)

    @classmethod
    def from_settings(cls, settings: Settings, session_factory=None) -> "MarketService":
        params = MarketParams.from_settings(settings)
        return cls(
            params=params,
            session=MarketSession(params, seed=settings.rng_seed),
            session_factory=session_factory,
            tick_interval=settings.tick_interval_seconds,
            max_batch_seconds=settings.max_batch_seconds,
            persist_every_ticks=settings.persist_every_ticks,
        )

    # ── Persistence ──────────────────────────────────────────────────

    def load(self) -> bool:
        """Restore the session and all ledgers. Returns whether the clock was running."""
        if self.session_factory is None:
            return False
        db = self.session_factory()
        try:
            row = db.query(MarketState).filter(MarketState.id == MARKET_STATE_ID).first()
            was_running = False
            if row is not None:
                if self.session.restore(row.state):
                    logger.info("Restored market at day %d tick %d", self.session.day, self.session.tick)
                was_running = bool(row.is_running)
            for account_row in db.query(Account).all():
                account = self._account_from_row(account_row)
                if account is not None:
                    self.accounts[account.id] = account
        finally:
            db.close()
        self.latest_snapshot = build_snapshot(self.session)
        return was_running

    def _account_from_row(self, row: Account) -> Optional[AccountState]:
        try:
            return AccountState(
                id=str(row.id),
                name=row.name,
                cash=row.cash,
                realized_pnl=row.realized_pnl or 0.0,
                positions=row.positions or [],
                pending_orders=row.pending_orders or [],
                transactions=row.transactions or [],
                last_applied_tick=row.last_applied_tick,
            )
        except ValueError as e:
            logger.warning("Skipping malformed account %s: %s", row.id, e)
            return None

    def persist_market(self, is_running: Optional[bool] = None) -> None:
        if self.session_factory is None:
            return
        db = self.session_factory()
        try:
            row = db.query(MarketState).filter(MarketState.id == MARKET_STATE_ID).first()
            if row is None:
                row = MarketState(id=MARKET_STATE_ID)
                db.add(row)
            state = self.session.to_state()
            row.epoch = self.session.epoch
            row.is_running = self.clock.running if is_running is None else is_running
            row.game_tick = self.session.tick
            row.current_day = self.session.day
            row.state = state
            row.news = state["news"]
            db.commit()
        finally:
            db.close()

    def persist_accounts(self, accounts: list[AccountState]) -> None:
        if self.session_factory is None or not accounts:
            return
        db = self.session_factory()
        try:
            for account in accounts:
                row = db.query(Account).filter(Account.id == uuid.UUID(account.id)).first()
                if row is None:
                    row = Account(id=uuid.UUID(account.id))
                    db.add(row)
                row.name = account.name
                row.cash = account.cash
                row.realized_pnl = account.realized_pnl
                row.positions = [p.model_dump(mode="json") for p in account.positions]
                row.pending_orders = [o.model_dump(mode="json") for o in account.pending_orders]
                row.transactions = [t.model_dump(mode="json") for t in account.transactions]
                row.last_applied_tick = account.last_applied_tick
            db.commit()
        finally:
            db.close()

    # ── Tick handling and publishing ─────────────────────────────────

    async def _on_tick(self, report: TickReport) -> None:
        """Runs under the service lock, right after ``MarketSession.advance()``."""
        changed = []
        if report.phase == "open":
            for account in self.accounts.values():
                settled = self.settlement.settle(account)
                account.last_applied_tick = self.session.tick
                if settled.changed:
                    self._remember(account.id, settled)
                    changed.append(account)

        self.publish()
        self.persist_accounts(changed)
        if report.phase != "closed" and (
            report.phase != "open" or self.session.tick % self.persist_every_ticks == 0
        ):
            self.persist_market()

    def _remember(self, account_id: str, report: SettlementReport) -> None:
        self._executed.setdefault(account_id, []).extend(report.executed_orders)
        self._liquidations.setdefault(account_id, []).extend(report.liquidations)

    def publish(self) -> MarketSnapshot:
        snapshot = build_snapshot(self.session)
        self.latest_snapshot = snapshot
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot)
        return snapshot

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        queue.put_nowait(self.latest_snapshot)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    # ── Read side ────────────────────────────────────────────────────

    def news(self, limit: Optional[int] = None) -> list[NewsEvent]:
        return news_feed(self.session, limit)

    def instrument_detail(self, instrument_id: str) -> Optional[InstrumentDetail]:
        instrument = self.session.instruments.get(instrument_id)
        config = self.session.configs.get(instrument_id)
        if instrument is None or config is None:
            return None
        return InstrumentDetail(
            instrument=config,
            quote=quote_for(instrument),
            change_percent=instrument.change_percent,
            price_history=instrument.price_history,
            order_book=instrument.order_book,
        )

    # ── Accounts ─────────────────────────────────────────────────────

    def create_account(self, name: str = "player") -> AccountState:
        account = AccountState(
            id=str(uuid.uuid4()),
            name=name,
            cash=self.params.initial_cash,
            last_applied_tick=self.session.tick,
        )
        self.accounts[account.id] = account
        self.persist_accounts([account])
        logger.info("Opened account %s with %d cash", account.id, account.cash)
        return account

    def get_account(self, account_id: str) -> AccountState:
        account = self.accounts.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def portfolio(self, account_id: str) -> PortfolioValuation:
        return self.settlement.portfolio_valuation(self.get_account(account_id))

    def drain_notifications(self, account_id: str) -> tuple[list[ExecutedOrderNotice], list[LiquidationNotice]]:
        self.get_account(account_id)
        return self._executed.pop(account_id, []), self._liquidations.pop(account_id, [])

    # ── Orders (serialized with ticks) ───────────────────────────────

    async def _mutate(self, account_id: str, operation: Callable[[AccountState], OrderResult]) -> OrderResult:
        async with self.lock:
            account = self.get_account(account_id)
            result = operation(account)
            if result.success:
                self.persist_accounts([account])
            return result

    async def place_market_order(
        self, account_id: str, stock_id: str, side: str, quantity: int, leverage: int = 1,
    ) -> OrderResult:
        if side == "buy":
            return await self._mutate(
                account_id, lambda a: self.settlement.buy_leveraged(a, stock_id, quantity, leverage)
            )
        if side == "sell":
            return await self._mutate(
                account_id, lambda a: self.settlement.sell(a, stock_id, quantity, leverage=leverage)
            )
        return OrderResult.reject(RejectReason.INVALID_QUANTITY, f"Unknown side {side!r}")

    async def place_leveraged_buy(self, account_id: str, stock_id: str, quantity: int, leverage: int) -> OrderResult:
        return await self._mutate(
            account_id, lambda a: self.settlement.buy_leveraged(a, stock_id, quantity, leverage)
        )

    async def place_limit_order(
        self, account_id: str, stock_id: str, side: str, quantity: int, target_price: int,
    ) -> OrderResult:
        return await self._mutate(
            account_id, lambda a: self.settlement.place_limit_order(a, stock_id, side, quantity, target_price)
        )

    async def cancel_limit_order(self, account_id: str, order_id: str) -> OrderResult:
        return await self._mutate(account_id, lambda a: self.settlement.cancel_limit_order(a, order_id))

    async def sell_all(self, account_id: str) -> OrderResult:
        return await self._mutate(account_id, self.settlement.sell_all)

    # ── Session control ──────────────────────────────────────────────

    def status(self) -> SessionStatus:
        return SessionStatus(
            is_running=self.clock.running,
            epoch=self.session.epoch,
            tick=self.session.tick,
            day=self.session.day,
            day_tick=self.session.day_tick,
            is_market_closed=self.session.is_market_closed,
            closing_countdown=self.session.closing_countdown,
            closing_message=self.session.closing_message,
        )

    async def start(self) -> SessionStatus:
        if not self.clock.running:
            self.clock.start()
            self.persist_market()
        return self.status()

    async def stop(self) -> SessionStatus:
        await self.clock.stop()
        async with self.lock:
            self.persist_market()
        return self.status()

    async def run_batch(self, max_ticks: int) -> int:
        """Run a bounded batch of ticks for scheduled-job deployments."""
        ticks = await self.clock.run_batch(max_ticks)
        if ticks:
            async with self.lock:
                self.persist_market()
            logger.info("Batch ran %d ticks, now at tick %d", ticks, self.session.tick)
        return ticks

    async def reset(self) -> SessionStatus:
        """Restore every instrument and counter to the initial configuration."""
        async with self.lock:
            self.session.reset()
            for account in self.accounts.values():
                account.last_applied_tick = None
            self.publish()
            self.persist_market()
        logger.info("Market reset to initial configuration (epoch %d)", self.session.epoch)
        return self.status()

    async def shutdown(self) -> None:
        """Cancel the clock but remember whether it should resume on the next start."""
        was_running = self.clock.running
        await self.clock.shutdown()
        self.persist_market(is_running=was_running)
