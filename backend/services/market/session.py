"""
Market session: the explicitly owned simulation state and its tick pipeline.

One call to ``advance()`` is one unit of simulated time:

    OPEN:   release halts -> trend refresh -> OU price step -> news emission
            -> due news jumps -> warning/delisting/band evaluation
            -> candles and order book
    CLOSED: closing countdown, then the new-day reset and reopen
"""
import logging
import random
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from schemas.market import Instrument, InstrumentConfig, NewsEvent
from services.market.instruments import initial_instruments, load_instrument_configs, load_news_templates
from services.market.limits import evaluate_limits, release_halt, reset_for_new_day
from services.market.news import NewsGenerator, resolve_due_news
from services.market.params import MarketParams
from services.market.pricing import next_price, record_candle, refresh_trend, update_order_book

logger = logging.getLogger(__name__)

STATE_VERSION = 1
CLOSING_MESSAGE = "The market is closed. The next session opens in about {minutes} minute(s)."

MarketStatus = Literal["OPEN", "CLOSED"]
TickPhase = Literal["open", "closed", "day_closed", "day_opened"]


class TickReport(BaseModel):
    """What happened during one ``advance()`` call."""
    phase: TickPhase
    tick: int
    day: int
    news_emitted: list[NewsEvent] = Field(default_factory=list)
    news_applied: list[str] = Field(default_factory=list)
    halted: list[str] = Field(default_factory=list)
    resumed: list[str] = Field(default_factory=list)
    delisted: list[str] = Field(default_factory=list)
    relisted: list[str] = Field(default_factory=list)


class MarketSession:
    """Owns every instrument and the session counters. No module-level state."""

    def __init__(
        self,
        params: MarketParams | None = None,
        configs: tuple[InstrumentConfig, ...] | list[InstrumentConfig] | None = None,
        templates: dict | None = None,
        rng: random.Random | None = None,
        seed: int | None = None,
    ):
        self.params = params or MarketParams()
        self.configs: dict[str, InstrumentConfig] = {
            c.id: c for c in (configs if configs is not None else load_instrument_configs())
        }
        self.templates = templates or load_news_templates()
        self.rng = rng or random.Random(seed)
        self.news_generator = NewsGenerator(self.params, self.templates, self.rng)
        self.epoch = 0
        self.reset()

    def reset(self) -> None:
        """Restore every instrument and counter to the initial configuration."""
        self.instruments: dict[str, Instrument] = initial_instruments(
            list(self.configs.values()), self.params, self.rng
        )
        self.news: list[NewsEvent] = []
        self.pending_news: list[NewsEvent] = []
        self.tick = 0
        self.day = 1
        self.day_tick = 0
        self.status: MarketStatus = "OPEN"
        self.closing_countdown = 0
        self.closing_message: Optional[str] = None

    # ── Derived state ────────────────────────────────────────────────

    @property
    def is_market_closed(self) -> bool:
        return self.status == "CLOSED"

    @property
    def day_progress_percent(self) -> int:
        if self.is_market_closed:
            return 100
        return round(self.day_tick / self.params.ticks_per_day * 100)

    # ── Clock transitions ────────────────────────────────────────────

    def advance(self) -> TickReport:
        """One clock step.

        The closing and the reopening transitions each take a step of their
        own, so a closed interval spans ``closing_duration_ticks + 2`` steps:
        ``day_closed``, the countdown, then ``day_opened``.
        """
        if self.is_market_closed:
            if self.closing_countdown > 0:
                self.closing_countdown -= 1
                return TickReport(phase="closed", tick=self.tick, day=self.day)
            return self._open_new_day()

        if self.day_tick >= self.params.ticks_per_day:
            return self._close_market()

        return self._open_tick()

    def run_ticks(self, count: int) -> list[TickReport]:
        return [self.advance() for _ in range(count)]

    def _close_market(self) -> TickReport:
        self.status = "CLOSED"
        self.closing_countdown = self.params.closing_duration_ticks
        minutes = max(1, round(self.params.closing_duration_ticks / 60))
        self.closing_message = CLOSING_MESSAGE.format(minutes=minutes)
        logger.info("Day %d market closed at tick %d", self.day, self.tick)
        return TickReport(phase="day_closed", tick=self.tick, day=self.day)

    def _open_new_day(self) -> TickReport:
        self.day += 1
        self.day_tick = 0
        report = TickReport(phase="day_opened", tick=self.tick, day=self.day)
        for instrument in self.instruments.values():
            event = reset_for_new_day(
                instrument, self.configs.get(instrument.id), self.day, self.params, self.rng
            )
            if event == "relisted":
                report.relisted.append(instrument.id)
        self.status = "OPEN"
        self.closing_countdown = 0
        self.closing_message = None
        logger.info("Day %d market open", self.day)
        return report

    def _open_tick(self) -> TickReport:
        now = self.tick
        report = TickReport(phase="open", tick=now, day=self.day)
        previous_prices = {i.id: i.current_price for i in self.instruments.values()}

        active = []
        for instrument in self.instruments.values():
            if instrument.is_delisted:
                continue
            if release_halt(instrument, now):
                report.resumed.append(instrument.id)
            if instrument.trading_halted:
                continue
            active.append(instrument)

        for instrument in active:
            refresh_trend(instrument, self.day_tick, self.params, self.rng)
            instrument.current_price = next_price(instrument, self.params, self.rng)

        emitted = self.news_generator.generate(self.instruments.values(), now, self.day_tick, self.day)
        if emitted:
            self.pending_news.extend(emitted)
            self.news = (list(reversed(emitted)) + self.news)[:self.params.max_news]
            report.news_emitted = emitted
        applied = resolve_due_news(self.pending_news, self.instruments, now)
        report.news_applied = [e.id for e in applied]
        self.pending_news = [e for e in self.pending_news if not e.resolved]

        for instrument in active:
            event = evaluate_limits(instrument, now, self.day, self.params)
            if event == "halted":
                report.halted.append(instrument.id)
            elif event == "delisted":
                report.delisted.append(instrument.id)

            old_price = previous_prices[instrument.id]
            record_candle(instrument, old_price, instrument.current_price, now, self.day_tick, self.params, self.rng)
            if instrument.is_tradable and not instrument.price_frozen:
                instrument.order_book = update_order_book(
                    instrument.order_book,
                    instrument.current_price,
                    instrument.current_price - old_price,
                    instrument.is_bluechip,
                    self.rng,
                )

        self.tick += 1
        self.day_tick += 1
        return report

    # ── Persistence ──────────────────────────────────────────────────

    def to_state(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "tick": self.tick,
            "day": self.day,
            "day_tick": self.day_tick,
            "status": self.status,
            "closing_countdown": self.closing_countdown,
            "closing_message": self.closing_message,
            "epoch": self.epoch,
            "instruments": [i.model_dump(mode="json") for i in self.instruments.values()],
            "pending_news": [e.model_dump(mode="json") for e in self.pending_news],
            "news": [e.model_dump(mode="json") for e in self.news],
        }

    def restore(self, state: dict[str, Any] | None) -> bool:
        """Resume from a persisted state. Malformed data leaves a fresh market."""
        if not state:
            return False
        try:
            instruments = {
                row["id"]: Instrument.model_validate(row) for row in state["instruments"]
            }
            news = [NewsEvent.model_validate(row) for row in state.get("news", [])]
            pending = [NewsEvent.model_validate(row) for row in state.get("pending_news", [])]
            tick = int(state["tick"])
            day = int(state["day"])
            day_tick = int(state.get("day_tick", tick % self.params.ticks_per_day))
            status = state.get("status", "OPEN")
            if status not in ("OPEN", "CLOSED"):
                raise ValueError(f"unknown market status {status!r}")
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning("Persisted market state is malformed, starting fresh: %s", e)
            self.reset()
            return False

        # instruments added to the config table since the state was saved
        for config_id, instrument in self.instruments.items():
            instruments.setdefault(config_id, instrument)

        self.instruments = instruments
        self.news = news
        self.pending_news = pending
        self.tick = tick
        self.day = day
        self.day_tick = day_tick
        self.status = status
        self.closing_countdown = int(state.get("closing_countdown", 0))
        self.closing_message = state.get("closing_message")
        self.epoch = int(state.get("epoch", 0))
        return True
