from models.market_state import MarketState, MARKET_STATE_ID
from models.account import Account

__all__ = [
    "MarketState",
    "MARKET_STATE_ID",
    "Account",
]
