"""Static instrument table and fresh-instrument factory."""
import json
import random
from functools import lru_cache
from pathlib import Path

from schemas.market import Instrument, InstrumentConfig
from services.market.params import MarketParams
from services.market.pricing import daily_limits, generate_order_book, random_trend, warmup_candles

DATA_DIR = Path(__file__).parent.parent.parent / "data"


@lru_cache()
def load_instrument_configs(path: str | None = None) -> tuple[InstrumentConfig, ...]:
    """Load the instrument configuration table from JSON."""
    data_path = Path(path) if path else DATA_DIR / "instruments.json"
    with open(data_path, encoding="utf-8") as f:
        rows = json.load(f)
    return tuple(InstrumentConfig(**row) for row in rows)


@lru_cache()
def load_news_templates(path: str | None = None) -> dict:
    data_path = Path(path) if path else DATA_DIR / "news_templates.json"
    with open(data_path, encoding="utf-8") as f:
        return json.load(f)


def create_instrument(config: InstrumentConfig, params: MarketParams, rng: random.Random) -> Instrument:
    price = config.initial_price
    upper, lower = daily_limits(price, params)
    return Instrument(
        id=config.id,
        name=config.name,
        symbol=config.symbol,
        kind=config.kind,
        initial_price=price,
        current_price=price,
        open_price=price,
        previous_close=price,
        upper_limit=upper,
        lower_limit=lower,
        mean_price=config.mean_price,
        kappa=config.kappa,
        sigma=config.sigma,
        jump_intensity=config.jump_intensity,
        trend_noise=random_trend(rng),
        trend_noise_last_update=0,
        price_history=warmup_candles(config, params, rng),
        order_book=generate_order_book(price, config.kind == "bluechip", rng),
    )


def initial_instruments(
    configs: tuple[InstrumentConfig, ...] | list[InstrumentConfig],
    params: MarketParams,
    rng: random.Random,
) -> dict[str, Instrument]:
    return {config.id: create_instrument(config, params, rng) for config in configs}
