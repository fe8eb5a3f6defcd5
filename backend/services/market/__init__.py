"""Market simulation core: price process, news, limits, session clock, settlement."""

from services.market.params import MarketParams
from services.market.session import MarketSession, TickReport
from services.market.clock import SessionClock
from services.market.settlement import SettlementEngine
from services.market.sync import SnapshotConsumer, build_snapshot, news_feed

__all__ = [
    "MarketParams",
    "MarketSession",
    "TickReport",
    "SessionClock",
    "SettlementEngine",
    "SnapshotConsumer",
    "build_snapshot",
    "news_feed",
]
