from schemas.market import (
    InstrumentConfig,
    Instrument,
    InstrumentQuote,
    InstrumentDetail,
    MarketSnapshot,
    NewsEvent,
    OrderBook,
    PriceCandle,
    SessionStatus,
    BatchRunResponse
)
from schemas.account import (
    AccountState,
    AccountCreate,
    AccountResponse,
    Position,
    PositionKey,
    PendingOrder,
    TransactionRecord,
    OrderResult,
    RejectReason,
    SettlementReport,
    ExecutedOrderNotice,
    LiquidationNotice,
    PortfolioValuation
)

__all__ = [
    "InstrumentConfig",
    "Instrument",
    "InstrumentQuote",
    "InstrumentDetail",
    "MarketSnapshot",
    "NewsEvent",
    "OrderBook",
    "PriceCandle",
    "SessionStatus",
    "BatchRunResponse",
    "AccountState",
    "AccountCreate",
    "AccountResponse",
    "Position",
    "PositionKey",
    "PendingOrder",
    "TransactionRecord",
    "OrderResult",
    "RejectReason",
    "SettlementReport",
    "ExecutedOrderNotice",
    "LiquidationNotice",
    "PortfolioValuation",
]
