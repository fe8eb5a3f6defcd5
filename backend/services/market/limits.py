"""
Limit & halt state machine.

Per tick, after the price and news steps:
  warning flag -> delisting floor -> daily band (freeze + halt)
Per day boundary:
  relisting first, then the band reset of active instruments.
"""
import logging
import random
from typing import Literal

from schemas.market import Instrument, InstrumentConfig
from services.market.params import MarketParams
from services.market.pricing import daily_limits, random_trend

logger = logging.getLogger(__name__)

LimitEvent = Literal["halted", "delisted", "resumed", "relisted"]


def release_halt(instrument: Instrument, now: int) -> bool:
    """Resume trading once the halt window has elapsed."""
    if not instrument.trading_halted:
        return False
    if instrument.halted_until_tick is not None and now < instrument.halted_until_tick:
        return False
    instrument.trading_halted = False
    instrument.halted_until_tick = None
    instrument.halted_at_tick = None
    instrument.price_frozen = False
    instrument.frozen_at_limit = None
    return True


def evaluate_limits(instrument: Instrument, now: int, day: int, params: MarketParams) -> LimitEvent | None:
    """Apply warning, delisting and band rules to the freshly moved price."""
    if instrument.is_delisted:
        return None

    price = instrument.current_price
    instrument.delisting_warning = params.delisting_price <= price <= params.delisting_warning_price

    if price < params.delisting_price:
        instrument.current_price = params.delisting_price
        instrument.is_delisted = True
        instrument.delisted_at_day = day
        instrument.delisting_warning = False
        instrument.price_frozen = True
        instrument.trading_halted = False
        instrument.halted_until_tick = None
        instrument.halted_at_tick = None
        instrument.frozen_at_limit = None
        logger.info("Instrument %s delisted on day %d", instrument.id, day)
        return "delisted"

    if price >= instrument.upper_limit:
        side = "upper"
        instrument.current_price = instrument.upper_limit
    elif price <= instrument.lower_limit:
        side = "lower"
        instrument.current_price = instrument.lower_limit
    else:
        return None

    if instrument.price_frozen:
        return None
    instrument.price_frozen = True
    instrument.frozen_at_limit = side
    instrument.trading_halted = True
    instrument.halted_at_tick = now
    instrument.halted_until_tick = now + params.trading_halt_duration
    logger.info(
        "Instrument %s hit %s limit %d at tick %d, halted until %d",
        instrument.id, side, instrument.current_price, now, instrument.halted_until_tick,
    )
    return "halted"


def relist(instrument: Instrument, config: InstrumentConfig, params: MarketParams, rng: random.Random) -> None:
    price = config.initial_price
    upper, lower = daily_limits(price, params)
    instrument.current_price = price
    instrument.previous_close = price
    instrument.open_price = price
    instrument.upper_limit = upper
    instrument.lower_limit = lower
    instrument.price_frozen = False
    instrument.frozen_at_limit = None
    instrument.trading_halted = False
    instrument.halted_until_tick = None
    instrument.halted_at_tick = None
    instrument.is_delisted = False
    instrument.delisted_at_day = None
    instrument.delisting_warning = False
    instrument.trend_noise = random_trend(rng)
    instrument.trend_noise_last_update = 0


def reset_for_new_day(
    instrument: Instrument,
    config: InstrumentConfig | None,
    day: int,
    params: MarketParams,
    rng: random.Random,
) -> LimitEvent | None:
    """Day-open transition. Relisting takes precedence over the band reset."""
    if instrument.is_delisted:
        delisted_at = instrument.delisted_at_day if instrument.delisted_at_day is not None else day
        if config is not None and day - delisted_at >= params.relisting_days:
            relist(instrument, config, params, rng)
            logger.info("Instrument %s relisted on day %d at %d", instrument.id, day, instrument.current_price)
            return "relisted"
        return None

    previous_close = instrument.current_price
    upper, lower = daily_limits(previous_close, params)
    instrument.previous_close = previous_close
    instrument.open_price = previous_close
    instrument.upper_limit = upper
    instrument.lower_limit = lower
    instrument.price_frozen = False
    instrument.frozen_at_limit = None
    instrument.trading_halted = False
    instrument.halted_until_tick = None
    instrument.halted_at_tick = None
    instrument.trend_noise = random_trend(rng)
    instrument.trend_noise_last_update = 0
    return None
