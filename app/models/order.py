"""
Order models for medication orders, their patient details and line items
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from app.database import Base

ORDER_TYPES = ("patient", "ward-stock")
URGENCY_LEVELS = ("emergency", "urgent", "routine")


class Order(Base):
    """Medication order entity"""
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, index=True)
    type = Column(String(20), nullable=False)
    ward_id = Column(Integer, nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    status = Column(String(30), default="pending", nullable=False, index=True)
    urgency = Column(String(20), default="routine", nullable=True)
    requester_name = Column(String(100), nullable=False)
    requester_role = Column(String(50), nullable=False)
    notes = Column(Text, nullable=True)  # encrypted
    processed_by = Column(String(100), nullable=True)
    checked_by = Column(String(100), nullable=True)
    processing_notes = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(100), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    group_id = Column(Integer, ForeignKey("order_groups.id", ondelete="SET NULL"), nullable=True, index=True)
    is_duplicate = Column(Boolean, default=False, nullable=False)

    patient = relationship("OrderPatient", uselist=False, back_populates="order", cascade="all, delete-orphan")
    medications = relationship(
        "OrderMedication",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderMedication.id",
    )

    def append_processing_note(self, line: str):
        self.processing_notes = line if not self.processing_notes else f"{self.processing_notes}\n{line}"

    def __repr__(self):
        return f"<Order(id='{self.id}', type='{self.type}', status='{self.status}')>"


class OrderPatient(Base):
    """Patient details for a patient order; name and dob are stored encrypted"""
    __tablename__ = "order_patients"

    order_id = Column(String(64), ForeignKey("orders.id", ondelete="CASCADE"), primary_key=True)
    patient_name = Column(Text, nullable=False)
    patient_dob = Column(Text, nullable=True)
    patient_nhs = Column(String(20), nullable=True, index=True)
    patient_hospital_id = Column(String(50), nullable=False, index=True)

    order = relationship("Order", back_populates="patient")


class OrderMedication(Base):
    """Medication line item"""
    __tablename__ = "order_medications"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    form = Column(String(100), nullable=True)
    strength = Column(String(100), nullable=True)
    quantity = Column(String(50), nullable=False)
    dose = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    order = relationship("Order", back_populates="medications")

    def to_snapshot(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "form": self.form,
            "strength": self.strength,
            "quantity": self.quantity,
            "dose": self.dose,
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<OrderMedication(id={self.id}, order_id='{self.order_id}', name='{self.name}')>"
