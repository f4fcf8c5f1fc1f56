"""
Order history model: the append-only audit trail of order mutations
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey
from app.database import Base

ACTION_TYPES = ("status_change", "medications_update", "medication_add", "medication_remove")
CURRENT_SCHEMA_VERSION = 2


class OrderHistory(Base):
    """One immutable audit entry per order mutation"""
    __tablename__ = "order_history"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=False, index=True)
    action_type = Column(String(30), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    user_id = Column(String(100), nullable=True)
    reason = Column(Text, nullable=True)
    previous_data = Column(Text, nullable=True)
    new_data = Column(Text, nullable=True)
    schema_version = Column(Integer, nullable=False, default=CURRENT_SCHEMA_VERSION)

    def __repr__(self):
        return f"<OrderHistory(id={self.id}, order_id='{self.order_id}', action='{self.action_type}')>"
