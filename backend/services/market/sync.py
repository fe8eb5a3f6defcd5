"""
Snapshot boundary between the authoritative session and its readers.

``build_snapshot`` produces the immutable outbound view after a tick.
``SnapshotConsumer`` is the downstream side: it mirrors prices from published
snapshots into local instruments and settles one account against them.
Execution and liquidation are decided only by comparing current state to the
snapshot's prices, so delivering the same snapshot twice changes nothing.
"""
import logging
import random
from typing import Any, Optional, Union

from pydantic import ValidationError

from schemas.account import AccountState, SettlementReport
from schemas.market import Instrument, InstrumentConfig, InstrumentQuote, MarketSnapshot, NewsEvent
from services.market.instruments import initial_instruments, load_instrument_configs
from services.market.params import MarketParams
from services.market.pricing import generate_order_book
from services.market.session import MarketSession
from services.market.settlement import SettlementEngine

logger = logging.getLogger(__name__)


def quote_for(instrument: Instrument) -> InstrumentQuote:
    return InstrumentQuote(
        current_price=instrument.current_price,
        previous_close=instrument.previous_close,
        open_price=instrument.open_price,
        upper_limit=instrument.upper_limit,
        lower_limit=instrument.lower_limit,
        trading_halted=instrument.trading_halted,
        halted_until_tick=instrument.halted_until_tick,
        halted_at_tick=instrument.halted_at_tick,
        halt_reason=instrument.frozen_at_limit if instrument.trading_halted else None,
        is_delisted=instrument.is_delisted,
        delisted_at_day=instrument.delisted_at_day,
        delisting_warning=instrument.delisting_warning,
    )


def build_snapshot(session: MarketSession) -> MarketSnapshot:
    return MarketSnapshot(
        tick=session.tick,
        day=session.day,
        is_market_closed=session.is_market_closed,
        closing_message=session.closing_message,
        day_progress_percent=session.day_progress_percent,
        prices={i.id: quote_for(i) for i in session.instruments.values()},
    )


def news_feed(session: MarketSession, limit: Optional[int] = None) -> list[NewsEvent]:
    """Newest first. Events still waiting for their jump are included."""
    items = session.news
    return list(items if limit is None else items[:limit])


class SnapshotConsumer:
    """Downstream replica of the market that settles a single account."""

    def __init__(
        self,
        account: AccountState,
        params: MarketParams | None = None,
        configs: tuple[InstrumentConfig, ...] | list[InstrumentConfig] | None = None,
        rng: random.Random | None = None,
    ):
        self.account = account
        self.params = params or MarketParams()
        self.configs = list(configs if configs is not None else load_instrument_configs())
        self.rng = rng or random.Random()
        self.instruments: dict[str, Instrument] = {}
        self.tick = 0
        self.day = 1
        self.is_market_closed = False
        self.closing_message: Optional[str] = None
        self.settlement = SettlementEngine(self.params, self)
        self._reset_instruments()

    def _reset_instruments(self) -> None:
        self.instruments = initial_instruments(self.configs, self.params, self.rng)

    def _coerce(self, snapshot: Union[MarketSnapshot, dict, None]) -> Optional[MarketSnapshot]:
        if snapshot is None or isinstance(snapshot, MarketSnapshot):
            return snapshot
        try:
            return MarketSnapshot.model_validate(snapshot)
        except ValidationError as e:
            logger.warning("Ignoring malformed market snapshot: %s", e.error_count())
            return None

    def _is_server_reset(self, snapshot: MarketSnapshot) -> bool:
        return snapshot.tick == 0 and snapshot.day == 1 and (self.tick > 0 or self.day > 1)

    def apply(self, snapshot: Union[MarketSnapshot, dict[str, Any], None]) -> SettlementReport:
        """Mirror a published snapshot and settle the account against it."""
        snapshot = self._coerce(snapshot)
        if snapshot is None:
            # no data yet: keep trading against fresh instruments
            if not self.instruments:
                self._reset_instruments()
            return SettlementReport()

        if self._is_server_reset(snapshot):
            logger.info("Market was reset upstream, regenerating local instruments")
            self._reset_instruments()
            self.account.last_applied_tick = None
        elif self.account.last_applied_tick is not None and snapshot.tick < self.account.last_applied_tick:
            return SettlementReport()

        for instrument_id, quote in snapshot.prices.items():
            instrument = self.instruments.get(instrument_id)
            if instrument is None:
                continue
            self._mirror(instrument, quote)

        self.tick = snapshot.tick
        self.day = snapshot.day
        self.is_market_closed = snapshot.is_market_closed
        self.closing_message = snapshot.closing_message

        report = self.settlement.settle(self.account)
        self.account.last_applied_tick = snapshot.tick
        return report

    def _mirror(self, instrument: Instrument, quote: InstrumentQuote) -> None:
        moved = instrument.current_price != quote.current_price
        instrument.current_price = quote.current_price
        instrument.previous_close = quote.previous_close
        instrument.open_price = quote.open_price
        instrument.upper_limit = quote.upper_limit
        instrument.lower_limit = quote.lower_limit
        instrument.trading_halted = quote.trading_halted
        instrument.halted_until_tick = quote.halted_until_tick
        instrument.halted_at_tick = quote.halted_at_tick
        instrument.frozen_at_limit = quote.halt_reason
        instrument.price_frozen = quote.trading_halted or quote.is_delisted
        instrument.is_delisted = quote.is_delisted
        instrument.delisted_at_day = quote.delisted_at_day
        instrument.delisting_warning = quote.delisting_warning
        if moved and instrument.is_tradable:
            instrument.order_book = generate_order_book(instrument.current_price, instrument.is_bluechip, self.rng)
