from enum import Enum
from pydantic import BaseModel, Field
from datetime import datetime
from uuid import UUID
from typing import NamedTuple, Optional, Literal


OrderSide = Literal["buy", "sell"]


class PositionKey(NamedTuple):
    """Positions are keyed by instrument and leverage tier; tiers never merge."""
    stock_id: str
    leverage: int


class Position(BaseModel):
    stock_id: str
    quantity: int = Field(..., gt=0)
    average_price: float  # cost basis per unit (margin per unit when leveraged)
    leverage: int = Field(1, ge=1)
    entry_price: float
    liquidation_price: Optional[int] = None  # only set when leverage > 1

    @property
    def key(self) -> PositionKey:
        return PositionKey(self.stock_id, self.leverage)

    @property
    def is_leveraged(self) -> bool:
        return self.leverage > 1

    @property
    def margin(self) -> float:
        return self.quantity * self.average_price


class PendingOrder(BaseModel):
    id: str
    stock_id: str
    side: OrderSide
    quantity: int
    target_price: int
    created_tick: int
    created_day: int


class TransactionType(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TransactionRecord(BaseModel):
    id: str
    tick: int
    day: int
    type: TransactionType
    stock_id: str
    stock_name: str
    quantity: int
    price: int
    total: int
    fee: int
    leverage: int = 1


class ExecutedOrderNotice(BaseModel):
    order_id: str
    instrument_id: str
    instrument_name: str
    side: OrderSide
    quantity: int
    price: int
    filled: bool = True
    reason: Optional[str] = None  # set when a triggered order could not fill


class LiquidationNotice(BaseModel):
    instrument_id: str
    instrument_name: str
    leverage: int
    quantity: int
    entry_price: float
    liquidation_price: int
    current_price: int
    loss_amount: float


class AccountState(BaseModel):
    """Externally owned ledger that the settlement engine mutates."""
    id: str
    name: str = "player"
    cash: int
    realized_pnl: float = 0.0
    positions: list[Position] = Field(default_factory=list)
    pending_orders: list[PendingOrder] = Field(default_factory=list)
    transactions: list[TransactionRecord] = Field(default_factory=list)
    last_applied_tick: Optional[int] = None

    def find_position(self, key: PositionKey) -> Optional[Position]:
        for position in self.positions:
            if position.key == key:
                return position
        return None


class RejectReason(str, Enum):
    INVALID_QUANTITY = "invalid_quantity"
    INVALID_PRICE = "invalid_price"
    INVALID_LEVERAGE = "invalid_leverage"
    UNKNOWN_INSTRUMENT = "unknown_instrument"
    INSTRUMENT_DELISTED = "instrument_delisted"
    TRADING_HALTED = "trading_halted"
    MARKET_CLOSED = "market_closed"
    INSUFFICIENT_CASH = "insufficient_cash"
    INSUFFICIENT_HOLDINGS = "insufficient_holdings"
    ORDER_NOT_FOUND = "order_not_found"


class OrderResult(BaseModel):
    """Outcome of an order call. Rejections are results, never exceptions."""
    success: bool
    reason: Optional[RejectReason] = None
    message: str = ""
    price: Optional[int] = None
    quantity: int = 0
    fee: int = 0
    total: int = 0
    realized_pnl: Optional[float] = None
    order_id: Optional[str] = None
    results: list["OrderResult"] = Field(default_factory=list)  # sell-all breakdown

    @classmethod
    def reject(cls, reason: RejectReason, message: str = "") -> "OrderResult":
        return cls(success=False, reason=reason, message=message or reason.value)


class SettlementReport(BaseModel):
    """Notifications produced while settling one tick or one snapshot."""
    executed_orders: list[ExecutedOrderNotice] = Field(default_factory=list)
    dropped_order_ids: list[str] = Field(default_factory=list)
    liquidations: list[LiquidationNotice] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.executed_orders or self.dropped_order_ids or self.liquidations)


class PositionValuation(BaseModel):
    stock_id: str
    stock_name: str
    leverage: int
    quantity: int
    average_price: float
    current_price: int
    evaluated_value: float
    unrealized_pnl: float
    unrealized_pnl_percent: float
    liquidation_price: Optional[int] = None


class PortfolioValuation(BaseModel):
    cash: int
    holdings_value: float
    total_value: float
    unrealized_pnl: float
    realized_pnl: float
    positions: list[PositionValuation]


# ── Request / response bodies ───────────────────────────────────────


class AccountCreate(BaseModel):
    name: str = Field("player", max_length=100)


class MarketOrderRequest(BaseModel):
    stock_id: str
    side: OrderSide
    quantity: int = Field(..., gt=0)
    leverage: int = Field(1, ge=1, description="Leverage tier to buy into or sell from")


class LeveragedBuyRequest(BaseModel):
    stock_id: str
    quantity: int = Field(..., gt=0)
    leverage: int = Field(..., ge=1)


class LimitOrderRequest(BaseModel):
    stock_id: str
    side: OrderSide
    quantity: int = Field(..., gt=0)
    target_price: int = Field(..., gt=0)


class AccountResponse(BaseModel):
    id: UUID
    name: str
    cash: int
    realized_pnl: float
    positions: list[Position]
    pending_orders: list[PendingOrder]
    transactions: list[TransactionRecord]
    created_at: Optional[datetime] = None


class NotificationsResponse(BaseModel):
    executed_orders: list[ExecutedOrderNotice]
    liquidations: list[LiquidationNotice]
