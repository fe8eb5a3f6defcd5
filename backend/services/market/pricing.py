"""
Stochastic price process: Ornstein-Uhlenbeck random walk in log-price space,
tick-size rounding, and the cosmetic candle/order-book refresh that follows
every price move.
"""
import math
import random

from schemas.market import Instrument, InstrumentConfig, OrderBook, OrderLevel, PriceCandle
from services.market.params import MarketParams

# (lower bound, tick size), highest band first
TICK_SIZE_TABLE: list[tuple[int, int]] = [
    (500_000, 1000),
    (100_000, 500),
    (50_000, 100),
    (10_000, 50),
    (5_000, 10),
    (1_000, 5),
    (0, 1),
]

ORDER_BOOK_DEPTH = 5
WARMUP_CANDLES = 30


def tick_size(price: float) -> int:
    for lower_bound, size in TICK_SIZE_TABLE:
        if price >= lower_bound:
            return size
    return 1


def _half_up(value: float) -> int:
    return math.floor(value + 0.5)


def round_to_tick(price: float) -> int:
    size = tick_size(price)
    return _half_up(price / size) * size


def floor_to_tick(price: float) -> int:
    size = tick_size(price)
    return math.floor(price / size) * size


def ceil_to_tick(price: float) -> int:
    size = tick_size(price)
    return math.ceil(price / size) * size


def is_valid_tick(price: int) -> bool:
    return price % tick_size(price) == 0


def daily_limits(previous_close: int, params: MarketParams) -> tuple[int, int]:
    """Band around the previous close, snapped inward to tradable prices."""
    upper = floor_to_tick(previous_close * params.daily_upper_limit)
    lower = ceil_to_tick(previous_close * params.daily_lower_limit)
    return upper, lower


def gaussian(rng: random.Random) -> float:
    """Standard normal sample via Box-Muller."""
    u = 0.0
    v = 0.0
    while u == 0.0:
        u = rng.random()
    while v == 0.0:
        v = rng.random()
    return math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)


def random_trend(rng: random.Random) -> float:
    return (rng.random() - 0.5) * 2


def clamp_to_band(price: int, instrument: Instrument) -> int:
    if price >= instrument.upper_limit:
        return instrument.upper_limit
    if price <= instrument.lower_limit:
        return instrument.lower_limit
    return price


def next_price(instrument: Instrument, params: MarketParams, rng: random.Random) -> int:
    """One OU step for an active instrument; inactive ones keep their price."""
    if instrument.is_delisted or instrument.trading_halted or instrument.price_frozen:
        return instrument.current_price

    tick_cap = params.bluechip_tick_cap if instrument.is_bluechip else params.theme_tick_cap
    dt = params.dt
    tick_sigma = instrument.sigma * math.sqrt(dt)

    log_price = math.log(max(instrument.current_price, params.min_price))
    log_mean = math.log(instrument.mean_price)

    mean_reversion = instrument.kappa * (log_mean - log_price) * dt
    noise = tick_sigma * gaussian(rng)
    trend_contribution = instrument.trend_noise * tick_sigma * 0.3

    log_cap = math.log(1 + tick_cap)
    log_return = max(-log_cap, min(log_cap, mean_reversion + noise + trend_contribution))

    price = round_to_tick(math.exp(log_price + log_return))
    price = max(price, params.min_price)
    return clamp_to_band(price, instrument)


def refresh_trend(instrument: Instrument, day_tick: int, params: MarketParams, rng: random.Random) -> None:
    """Blend the trend bias toward a fresh random direction every interval."""
    if day_tick - instrument.trend_noise_last_update < params.trend_noise_update_interval:
        return
    target = random_trend(rng)
    instrument.trend_noise = instrument.trend_noise * 0.3 + target * 0.7
    instrument.trend_noise_last_update = day_tick


# ── Candles ──────────────────────────────────────────────────────────


def warmup_candles(config: InstrumentConfig, params: MarketParams, rng: random.Random) -> list[PriceCandle]:
    """Synthetic history so charts are not empty on day one."""
    candles = []
    price = config.initial_price
    for i in range(WARMUP_CANDLES):
        volatility = config.sigma * (0.5 + rng.random() * 0.5)
        open_ = price
        price = max(round_to_tick(price + gaussian(rng) * volatility * price), params.min_price)
        high = round_to_tick(max(open_, price) * (1 + rng.random() * 0.02))
        low = round_to_tick(min(open_, price) * (1 - rng.random() * 0.02))
        candles.append(PriceCandle(
            time=i - WARMUP_CANDLES,
            open=open_,
            high=high,
            low=low,
            close=price,
            volume=int(rng.random() * 500000 + 100000),
        ))
    return candles


def record_candle(
    instrument: Instrument,
    old_price: int,
    new_price: int,
    tick: int,
    day_tick: int,
    params: MarketParams,
    rng: random.Random,
) -> None:
    history = instrument.price_history
    if day_tick % params.candle_interval_ticks == 0 or not history:
        history.append(PriceCandle(
            time=tick,
            open=old_price,
            high=max(old_price, new_price),
            low=min(old_price, new_price),
            close=new_price,
            volume=int(rng.random() * 50000 + 10000),
        ))
        if len(history) > params.max_candles:
            del history[:len(history) - params.max_candles]
        return

    last = history[-1]
    last.high = max(last.high, new_price)
    last.low = min(last.low, new_price)
    last.close = new_price
    last.volume += int(rng.random() * 2000)


# ── Order book (display only) ────────────────────────────────────────


def generate_order_book(price: int, bluechip: bool, rng: random.Random) -> OrderBook:
    """Fresh book around ``price``: asks from one tick above, bids from price down."""
    size = tick_size(price)
    multiplier = 5 if bluechip else 1
    asks = []
    bids = []
    for i in range(1, ORDER_BOOK_DEPTH + 1):
        asks.append(OrderLevel(
            price=round_to_tick(price + size * i),
            volume=int((rng.random() * 30000 + 5000) * multiplier),
        ))
    for i in range(ORDER_BOOK_DEPTH):
        bid_price = round_to_tick(price - size * i)
        if bid_price > 0:
            bids.append(OrderLevel(
                price=bid_price,
                volume=int((rng.random() * 30000 + 5000) * multiplier),
            ))
    asks.reverse()
    return OrderBook(asks=asks, bids=bids)


def update_order_book(book: OrderBook, price: int, change: int, bluechip: bool, rng: random.Random) -> OrderBook:
    """Shift the book to the new price, thinning the side the price moved into."""
    size = tick_size(price)
    multiplier = 5 if bluechip else 1
    change_ratio = 0.85 if change > 0 else 1.15
    opposite_ratio = 1.15 if change > 0 else 0.85

    def _existing(levels: list[OrderLevel], level_price: int) -> OrderLevel | None:
        for level in levels:
            if abs(level.price - level_price) < size:
                return level
        return None

    asks = []
    bids = []
    for i in range(1, ORDER_BOOK_DEPTH + 1):
        ask_price = round_to_tick(price + size * i)
        bid_price = round_to_tick(price - size * (i - 1))

        ask = _existing(book.asks, ask_price)
        bid = _existing(book.bids, bid_price)
        if ask:
            ask_volume = int(ask.volume * change_ratio + (rng.random() - 0.5) * 10000 * multiplier)
        else:
            ask_volume = int((rng.random() * 20000 + 3000) * multiplier)
        if bid:
            bid_volume = int(bid.volume * opposite_ratio + (rng.random() - 0.5) * 10000 * multiplier)
        else:
            bid_volume = int((rng.random() * 20000 + 3000) * multiplier)

        asks.append(OrderLevel(price=ask_price, volume=max(500, ask_volume)))
        if bid_price > 0:
            bids.append(OrderLevel(price=bid_price, volume=max(500, bid_volume)))

    asks.reverse()
    return OrderBook(asks=asks, bids=bids)
