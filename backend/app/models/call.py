from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Call(Base):
    """Durable record of one call signaling exchange.

    The live state machine is held in memory (app.services.calls); this row is
    written on every transition and may lag behind it if a write fails.
    """

    __tablename__ = "calls"

    id = Column(String(36), primary_key=True)
    caller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    channel_id = Column(Integer, ForeignKey("channels.id"), nullable=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id"), nullable=True)
    call_type = Column(String(20), nullable=False, default="audio")
    # "ringing" | "connected" | "ended" | "missed" | "rejected"
    status = Column(String(20), nullable=False, default="ringing")
    end_reason = Column(String(50), nullable=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now())
    connected_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration = Column(Integer, nullable=True)

    caller = relationship("User", foreign_keys=[caller_id])
    recipient = relationship("User", foreign_keys=[recipient_id])
