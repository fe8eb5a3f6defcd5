"""Simulation constants carried into the pure market core."""
from pydantic import BaseModel, Field

from config import Settings


class MarketParams(BaseModel):
    """Tunable constants for one market deployment.

    Defaults mirror ``Settings`` so tests can build sessions without any
    environment configuration.
    """
    ticks_per_day: int = Field(1800, gt=0)
    closing_duration_ticks: int = Field(180, ge=0)

    bluechip_tick_cap: float = 0.02
    theme_tick_cap: float = 0.08
    min_price: int = 100
    trend_noise_update_interval: int = 180

    daily_upper_limit: float = 1.30
    daily_lower_limit: float = 0.70
    trading_halt_duration: int = 300
    delisting_price: int = 500
    delisting_warning_price: int = 1000
    relisting_days: int = 7

    news_policy: str = Field("interval", pattern="^(interval|per_tick)$")
    news_interval_ticks: int = Field(60, gt=0)
    news_max_targets: int = Field(2, ge=1)
    news_probability_per_day: float = 1.5
    news_delay_ticks: int = Field(3, ge=0)
    fake_news_probability: float = Field(0.3, ge=0, le=1)

    initial_cash: int = 10_000_000
    transaction_fee_rate: float = 0.001
    allowed_leverage: list[int] = [1, 2, 5, 10, 25, 50]

    max_candles: int = 200
    candle_interval_ticks: int = 10
    max_news: int = 30
    max_transactions: int = 100

    @property
    def dt(self) -> float:
        return 1 / self.ticks_per_day

    @property
    def news_probability_per_tick(self) -> float:
        return self.news_probability_per_day / self.ticks_per_day

    @classmethod
    def from_settings(cls, settings: Settings) -> "MarketParams":
        return cls(**{
            name: getattr(settings, name)
            for name in cls.model_fields
            if hasattr(settings, name)
        })
