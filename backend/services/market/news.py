"""
News generator.

Events are built in two explicit stages: the declared sentiment and magnitude
(what the headline says) and the applied magnitude (what the price does).
Decoys are events whose applied magnitude is inverted or dampened.
"""
import logging
import random
from typing import Iterable

from schemas.market import Instrument, NewsEvent
from services.market.params import MarketParams
from services.market.pricing import clamp_to_band, round_to_tick

logger = logging.getLogger(__name__)

# Declared jump bands as fractions, scaled by jump_intensity
BLUECHIP_JUMP_BAND = (0.05, 0.20)
THEME_JUMP_BAND = (0.20, 0.60)


def declared_jump(instrument: Instrument, good: bool, rng: random.Random) -> float:
    """Stage 1: signed jump in percent that the headline implies."""
    low, high = BLUECHIP_JUMP_BAND if instrument.is_bluechip else THEME_JUMP_BAND
    magnitude = (low + rng.random() * (high - low)) * instrument.jump_intensity
    return (magnitude if good else -magnitude) * 100


def applied_jump(declared: float, is_decoy: bool, rng: random.Random) -> float:
    """Stage 2: signed jump in percent that actually lands on the price."""
    if not is_decoy:
        return declared
    if rng.random() < 0.5:
        # reversal at 30%~80% strength
        return -declared * (0.3 + rng.random() * 0.5)
    # fizzle at 0%~20% strength
    return declared * (rng.random() * 0.2)


class NewsGenerator:
    """Emits news events under one deployment-wide triggering policy."""

    def __init__(self, params: MarketParams, templates: dict, rng: random.Random):
        self.params = params
        self.templates = templates
        self.rng = rng

    def build_event(self, instrument: Instrument, tick: int, day: int) -> NewsEvent:
        good = self.rng.random() > 0.5
        effect = "GOOD" if good else "BAD"
        title = self.rng.choice(self.templates[effect]).replace("{name}", instrument.name)
        description = self.templates.get("descriptions", {}).get(effect, "").replace("{name}", instrument.name)

        declared = declared_jump(instrument, good, self.rng)
        is_decoy = self.rng.random() < self.params.fake_news_probability
        actual = applied_jump(declared, is_decoy, self.rng)

        return NewsEvent(
            id=f"news-{tick}-{instrument.id}",
            tick=tick,
            day=day,
            title=title,
            description=description,
            effect=effect,
            target_instrument_id=instrument.id,
            declared_jump_percent=declared,
            jump_percent=actual,
            is_decoy=is_decoy,
            apply_at_tick=tick + self.params.news_delay_ticks,
        )

    def generate(self, instruments: Iterable[Instrument], tick: int, day_tick: int, day: int) -> list[NewsEvent]:
        candidates = [i for i in instruments if not i.is_delisted]
        if not candidates:
            return []

        if self.params.news_policy == "per_tick":
            targets = []
            base = self.params.news_probability_per_tick
            for instrument in candidates:
                probability = base * 2 if instrument.kind == "theme" else base
                if self.rng.random() < probability:
                    targets.append(instrument)
        else:
            if day_tick == 0 or day_tick % self.params.news_interval_ticks != 0:
                return []
            count = self.rng.randint(1, min(self.params.news_max_targets, len(candidates)))
            targets = self.rng.sample(candidates, count)

        events = [self.build_event(instrument, tick, day) for instrument in targets]
        for event in events:
            logger.info(
                "News %s on %s: declared %+.2f%% applied %+.2f%% at tick %d",
                event.effect, event.target_instrument_id,
                event.declared_jump_percent, event.jump_percent, event.apply_at_tick,
            )
        return events


def apply_news_jump(instrument: Instrument, jump_percent: float) -> int:
    """New price after a news jump, on a valid tick and inside the band."""
    if instrument.is_delisted or instrument.trading_halted or instrument.price_frozen:
        return instrument.current_price
    price = round_to_tick(instrument.current_price * (1 + jump_percent / 100))
    return clamp_to_band(max(price, 1), instrument)


def resolve_due_news(
    pending: list[NewsEvent],
    instruments: dict[str, Instrument],
    tick: int,
) -> list[NewsEvent]:
    """Apply every unresolved event whose time has come. Returns those applied."""
    applied = []
    for event in pending:
        if event.resolved or event.apply_at_tick > tick:
            continue
        event.resolved = True
        instrument = instruments.get(event.target_instrument_id)
        if instrument is None or instrument.is_delisted or instrument.trading_halted or instrument.price_frozen:
            event.skipped = True
            continue
        instrument.current_price = apply_news_jump(instrument, event.jump_percent)
        applied.append(event)
    return applied
