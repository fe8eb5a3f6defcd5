"""
Tests for news generation, the two-stage decoy transform and delayed jumps.
"""
import random

import pytest

from schemas.market import Instrument
from services.market.instruments import initial_instruments, load_instrument_configs, load_news_templates
from services.market.news import NewsGenerator, applied_jump, apply_news_jump, declared_jump, resolve_due_news
from services.market.params import MarketParams


class _ScriptedRandom(random.Random):
    """Returns queued values from ``random()``."""

    def __init__(self, values):
        super().__init__(0)
        self.values = list(values)

    def random(self):
        return self.values.pop(0)


def _make_instrument(**overrides) -> Instrument:
    fields = dict(
        id="9",
        name="AI Solutions",
        symbol="900020",
        kind="theme",
        initial_price=15200,
        current_price=15200,
        open_price=15200,
        previous_close=15200,
        upper_limit=19750,
        lower_limit=10650,
        mean_price=12000,
        kappa=0.06,
        sigma=0.18,
        jump_intensity=0.7,
    )
    fields.update(overrides)
    return Instrument(**fields)


def _make_instruments(params: MarketParams) -> dict[str, Instrument]:
    return initial_instruments(load_instrument_configs(), params, random.Random(0))


class TestJumpStages:
    def test_declared_jump_bands(self):
        rng = random.Random(3)
        theme = _make_instrument()
        bluechip = _make_instrument(kind="bluechip", jump_intensity=0.1)
        for _ in range(100):
            theme_jump = declared_jump(theme, True, rng)
            assert 20 * 0.7 <= theme_jump <= 60 * 0.7
            blue_jump = declared_jump(bluechip, False, rng)
            assert -20 * 0.1 <= blue_jump <= -5 * 0.1

    def test_genuine_news_applies_declared_jump(self):
        assert applied_jump(12.5, False, random.Random(0)) == 12.5

    def test_decoy_reversal(self):
        # first draw < 0.5 picks reversal, second sets strength 0.3 + 0.5 * 0.5
        actual = applied_jump(10.0, True, _ScriptedRandom([0.2, 0.5]))
        assert actual == pytest.approx(-5.5)

    def test_decoy_fizzle(self):
        actual = applied_jump(10.0, True, _ScriptedRandom([0.7, 0.5]))
        assert actual == pytest.approx(1.0)

    def test_decoy_keeps_declared_fields(self):
        params = MarketParams(fake_news_probability=1.0)
        generator = NewsGenerator(params, load_news_templates(), random.Random(11))
        event = generator.build_event(_make_instrument(), tick=120, day=1)
        assert event.is_decoy
        assert (event.declared_jump_percent > 0) == (event.effect == "GOOD")
        assert event.jump_percent != event.declared_jump_percent
        assert abs(event.jump_percent) < abs(event.declared_jump_percent)


class TestNewsGenerator:
    def setup_method(self):
        self.params = MarketParams()
        self.instruments = _make_instruments(self.params)
        self.generator = NewsGenerator(self.params, load_news_templates(), random.Random(21))

    def test_interval_policy_only_fires_on_interval(self):
        assert self.generator.generate(self.instruments.values(), 0, 0, 1) == []
        assert self.generator.generate(self.instruments.values(), 61, 61, 1) == []
        events = self.generator.generate(self.instruments.values(), 60, 60, 1)
        assert 1 <= len(events) <= self.params.news_max_targets

    def test_event_fields(self):
        events = self.generator.generate(self.instruments.values(), 60, 60, 1)
        for event in events:
            name = self.instruments[event.target_instrument_id].name
            assert name in event.title
            assert "{name}" not in event.title
            assert event.apply_at_tick == 60 + self.params.news_delay_ticks
            assert not event.resolved

    def test_delisted_instruments_are_never_targeted(self):
        for instrument in self.instruments.values():
            instrument.is_delisted = instrument.id != "5"
        for tick in range(60, 60 * 20, 60):
            for event in self.generator.generate(self.instruments.values(), tick, tick, 1):
                assert event.target_instrument_id == "5"

    def test_per_tick_policy(self):
        params = MarketParams(news_policy="per_tick", news_probability_per_day=1800 * 10)
        generator = NewsGenerator(params, load_news_templates(), random.Random(2))
        events = generator.generate(self.instruments.values(), 7, 7, 1)
        assert {e.target_instrument_id for e in events} == set(self.instruments)

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            MarketParams(news_policy="sometimes")


class TestNewsApplication:
    def setup_method(self):
        self.params = MarketParams()
        self.generator = NewsGenerator(self.params, load_news_templates(), random.Random(4))

    def _event_for(self, instrument: Instrument, jump: float, tick: int = 100):
        event = self.generator.build_event(instrument, tick=tick, day=1)
        event.jump_percent = jump
        return event

    def test_jump_lands_on_tick_and_inside_band(self):
        instrument = _make_instrument()
        assert apply_news_jump(instrument, 10.0) == 16700
        assert apply_news_jump(instrument, 100.0) == instrument.upper_limit
        assert apply_news_jump(instrument, -100.0) == instrument.lower_limit

    def test_event_waits_for_its_tick(self):
        instrument = _make_instrument()
        event = self._event_for(instrument, 10.0)
        pending = [event]

        assert resolve_due_news(pending, {instrument.id: instrument}, 102) == []
        assert instrument.current_price == 15200
        assert not event.resolved

        assert resolve_due_news(pending, {instrument.id: instrument}, 103) == [event]
        assert instrument.current_price == 16700
        assert event.resolved

        # already resolved events never apply twice
        assert resolve_due_news(pending, {instrument.id: instrument}, 104) == []
        assert instrument.current_price == 16700

    def test_halted_target_absorbs_jump(self):
        instrument = _make_instrument(trading_halted=True, price_frozen=True)
        event = self._event_for(instrument, 10.0)
        assert resolve_due_news([event], {instrument.id: instrument}, 103) == []
        assert event.resolved and event.skipped
        assert instrument.current_price == 15200

    def test_missing_target_is_skipped(self):
        event = self._event_for(_make_instrument(), 10.0)
        assert resolve_due_news([event], {}, 103) == []
        assert event.skipped
