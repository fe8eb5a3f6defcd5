import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, BigInteger, Float
from sqlalchemy.dialects.postgresql import UUID
from database import Base, JSONType


class Account(Base):
    __tablename__ = "accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False, default="player")

    # Ledger
    cash = Column(BigInteger, nullable=False)
    realized_pnl = Column(Float, default=0.0, nullable=False)
    positions = Column(JSONType, default=list)  # keyed by (stock_id, leverage)
    pending_orders = Column(JSONType, default=list)
    transactions = Column(JSONType, default=list)  # newest first, capped
    last_applied_tick = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
