from datetime import datetime
from sqlalchemy import Column, DateTime, Integer, Boolean
from database import Base, JSONType

MARKET_STATE_ID = 1


class MarketState(Base):
    """Singleton row holding the authoritative market session."""
    __tablename__ = "market_state"

    id = Column(Integer, primary_key=True, default=MARKET_STATE_ID)

    # Session control
    epoch = Column(Integer, default=0, nullable=False)
    is_running = Column(Boolean, default=False, nullable=False)

    # Clock counters, duplicated out of ``state`` for quick inspection
    game_tick = Column(Integer, default=0, nullable=False)
    current_day = Column(Integer, default=1, nullable=False)

    state = Column(JSONType, nullable=True)  # instruments, pending news, counters
    news = Column(JSONType, default=list)  # newest first, capped

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
