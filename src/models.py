import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Text, ForeignKey, Numeric, JSON, Enum, Index, text
from sqlalchemy.orm import relationship
from src.database import Base
from src.reservations.schemas import ReservationStatus, StatusChangeSource
from src.payments.schemas import PaymentStatus


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())

# ================================
# Reservations
# ================================
class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(String(64), nullable=True, index=True)
    from_location = Column(String(255), nullable=False)
    to_location = Column(String(255), nullable=False)
    bus_number_plate = Column(String(32), nullable=True)
    departure_time = Column(DateTime, nullable=True)
    estimated_time = Column(String(32), nullable=True)
    total_price = Column(Numeric(10, 2), nullable=False)
    passenger_names = Column(JSON, nullable=False)
    status = Column(Enum(ReservationStatus, native_enum=False, length=16), nullable=False,
                    default=ReservationStatus.PENDING, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    payments = relationship("Payment", back_populates="reservation")
    status_history = relationship(
        "ReservationStatusChange",
        back_populates="reservation",
        order_by="ReservationStatusChange.id",
    )

class ReservationStatusChange(Base):
    __tablename__ = "reservation_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reservation_id = Column(String(36), ForeignKey("reservations.id"), nullable=False, index=True)
    from_status = Column(Enum(ReservationStatus, native_enum=False, length=16), nullable=True)
    to_status = Column(Enum(ReservationStatus, native_enum=False, length=16), nullable=False)
    source = Column(Enum(StatusChangeSource, native_enum=False, length=16), nullable=False)
    actor_id = Column(String(64), nullable=True)
    transaction_id = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    reservation = relationship("Reservation", back_populates="status_history")

# ================================
# Payments
# ================================
class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    transaction_id = Column(String(128), unique=True, nullable=False, index=True)
    purchase_order_id = Column(String(64), nullable=True)
    owner_id = Column(String(64), nullable=True, index=True)
    amount_minor = Column(BigInteger, nullable=True)
    paid_amount_minor = Column(BigInteger, nullable=True)
    status = Column(Enum(PaymentStatus, native_enum=False, length=32), nullable=False,
                    default=PaymentStatus.INITIATED)
    gateway_status = Column(String(64), nullable=True)
    reservation_id = Column(String(36), ForeignKey("reservations.id"), nullable=True, index=True)
    pending_details = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    reservation = relationship("Reservation", back_populates="payments")

    __table_args__ = (
        # A reservation can be settled by one completed payment only
        Index(
            "uq_payments_completed_reservation",
            "reservation_id",
            unique=True,
            sqlite_where=text("status = 'COMPLETED'"),
            postgresql_where=text("status = 'COMPLETED'"),
        ),
    )
