"""
Order group model for batching orders into one processing run
"""

from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.sql import func
from app.database import Base


class OrderGroup(Base):
    """Named processing group; members reference it through orders.group_id"""
    __tablename__ = "order_groups"

    id = Column(Integer, primary_key=True, index=True)
    group_number = Column(String(50), unique=True, index=True, nullable=False)
    notes = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<OrderGroup(id={self.id}, group_number='{self.group_number}')>"
