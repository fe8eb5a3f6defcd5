from pydantic import BaseModel, Field
from typing import Optional, Literal


InstrumentKind = Literal["bluechip", "theme"]
LimitSide = Literal["upper", "lower"]
NewsEffect = Literal["GOOD", "BAD"]


class InstrumentConfig(BaseModel):
    """Static row of the instrument configuration table."""
    id: str
    name: str
    symbol: str
    kind: InstrumentKind
    initial_price: int = Field(..., gt=0)
    mean_price: int = Field(..., gt=0)
    kappa: float  # mean reversion speed (per day)
    sigma: float  # daily volatility
    jump_intensity: float = Field(..., ge=0, le=1)


class PriceCandle(BaseModel):
    time: int
    open: int
    high: int
    low: int
    close: int
    volume: int


class OrderLevel(BaseModel):
    price: int
    volume: int


class OrderBook(BaseModel):
    """Cosmetic book: asks sorted high to low, bids high to low."""
    asks: list[OrderLevel] = Field(default_factory=list)
    bids: list[OrderLevel] = Field(default_factory=list)


class Instrument(BaseModel):
    """Live state of one simulated security."""
    id: str
    name: str
    symbol: str
    kind: InstrumentKind

    # Price state
    initial_price: int
    current_price: int
    open_price: int
    previous_close: int
    upper_limit: int
    lower_limit: int

    # OU parameters
    mean_price: int
    kappa: float
    sigma: float
    jump_intensity: float
    trend_noise: float = 0.0  # -1 ~ 1
    trend_noise_last_update: int = 0

    # Limit/halt/delisting flags
    price_frozen: bool = False
    frozen_at_limit: Optional[LimitSide] = None
    trading_halted: bool = False
    halted_until_tick: Optional[int] = None
    halted_at_tick: Optional[int] = None
    is_delisted: bool = False
    delisted_at_day: Optional[int] = None
    delisting_warning: bool = False

    price_history: list[PriceCandle] = Field(default_factory=list)
    order_book: OrderBook = Field(default_factory=OrderBook)

    @property
    def is_bluechip(self) -> bool:
        return self.kind == "bluechip"

    @property
    def is_tradable(self) -> bool:
        return not (self.is_delisted or self.trading_halted)

    @property
    def change_percent(self) -> float:
        if not self.previous_close:
            return 0.0
        return (self.current_price - self.previous_close) / self.previous_close * 100


class NewsEvent(BaseModel):
    """One market-moving announcement.

    ``effect`` and ``declared_jump_percent`` are what readers see;
    ``jump_percent`` is what actually lands on the price.
    """
    id: str
    tick: int
    day: int
    title: str
    description: str
    effect: NewsEffect
    target_instrument_id: str
    declared_jump_percent: float
    jump_percent: float
    is_decoy: bool = False
    apply_at_tick: int
    resolved: bool = False
    skipped: bool = False


class InstrumentQuote(BaseModel):
    """Per-instrument part of the outbound snapshot."""
    current_price: int
    previous_close: int
    open_price: int
    upper_limit: int
    lower_limit: int
    trading_halted: bool = False
    halted_until_tick: Optional[int] = None
    halted_at_tick: Optional[int] = None
    halt_reason: Optional[LimitSide] = None
    is_delisted: bool = False
    delisted_at_day: Optional[int] = None
    delisting_warning: bool = False


class MarketSnapshot(BaseModel):
    """Immutable view published after every tick."""
    tick: int
    day: int
    is_market_closed: bool
    closing_message: Optional[str] = None
    day_progress_percent: int
    prices: dict[str, InstrumentQuote]

    model_config = {"frozen": True}


class InstrumentDetail(BaseModel):
    """Chart and order book view for one instrument."""
    instrument: InstrumentConfig
    quote: InstrumentQuote
    change_percent: float
    price_history: list[PriceCandle]
    order_book: OrderBook


class SessionStatus(BaseModel):
    is_running: bool
    epoch: int
    tick: int
    day: int
    day_tick: int
    is_market_closed: bool
    closing_countdown: int
    closing_message: Optional[str] = None


class BatchRunResponse(BaseModel):
    ticks_run: int
    session: SessionStatus
