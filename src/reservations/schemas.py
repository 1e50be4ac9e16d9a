from pydantic import BaseModel, Field, validator
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum

from src.config import settings

class ReservationStatus(str, Enum):
    """Reservation status enumeration"""
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (ReservationStatus.PAID, ReservationStatus.CANCELLED)

    def can_transition_to(self, target: "ReservationStatus") -> bool:
        """PENDING may move to PAID or CANCELLED; PAID and CANCELLED are final"""
        if self is ReservationStatus.PENDING:
            return target in (ReservationStatus.PAID, ReservationStatus.CANCELLED)
        if self.is_terminal:
            return False
        raise ValueError(f"Unknown reservation status: {self}")

class StatusChangeSource(str, Enum):
    """Who or what drove a reservation status transition"""
    BOOKING = "BOOKING"
    RECONCILIATION = "RECONCILIATION"
    CANCEL = "CANCEL"
    MANUAL = "MANUAL"

# Request Models
class ReservationDetails(BaseModel):
    """Route, price and passengers of a reservation.

    Also used as the pending-reservation payload stashed on a payment when the
    rider pays before a reservation row exists. In that case the price may be
    omitted and is taken from the payment amount.
    """
    from_location: str = Field(..., alias="from")
    to_location: str = Field(..., alias="to")
    bus_number_plate: Optional[str] = None
    departure_time: Optional[datetime] = None
    estimated_time: Optional[str] = Field(None, description="Estimated duration, e.g. '2h 30m'")
    total_price: Optional[Decimal] = None
    passenger_names: List[str] = Field(..., alias="passengers")

    @validator('from_location', 'to_location')
    def validate_location(cls, v):
        v = (v or "").strip()
        if not v:
            raise ValueError('Route origin and destination are required')
        return v

    @validator('total_price')
    def validate_price(cls, v):
        if v is not None and v <= 0:
            raise ValueError('Total price must be positive')
        return v

    @validator('passenger_names')
    def validate_passengers(cls, v):
        names = [name.strip() for name in v]
        if not names:
            raise ValueError('At least one passenger is required')
        if any(not name for name in names):
            raise ValueError('Passenger names cannot be blank')
        if len(names) > settings.MAX_PASSENGERS_PER_RESERVATION:
            raise ValueError(f'Maximum {settings.MAX_PASSENGERS_PER_RESERVATION} passengers per reservation')
        return names

    class Config:
        populate_by_name = True

class ReservationCreateRequest(ReservationDetails):
    """Request to reserve seats; the price is mandatory here"""
    total_price: Decimal

class ReservationStatusUpdate(BaseModel):
    """Administrative status override"""
    status: ReservationStatus
    note: Optional[str] = None

# Response Models
class ReservationRecord(BaseModel):
    id: str
    owner_id: Optional[str] = None
    from_location: str
    to_location: str
    bus_number_plate: Optional[str] = None
    departure_time: Optional[datetime] = None
    estimated_time: Optional[str] = None
    total_price: Decimal
    passenger_names: List[str]
    status: ReservationStatus
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class ReservationResponse(ReservationRecord):
    """Reservation plus the computed payment-window view"""
    expires_at: datetime
    is_expired: bool

class StatusChange(BaseModel):
    """Outcome of a guarded status transition"""
    reservation_id: str
    from_status: ReservationStatus
    to_status: ReservationStatus
    applied: bool
    conflict: bool = False

class StatusHistoryEntry(BaseModel):
    from_status: Optional[ReservationStatus] = None
    to_status: ReservationStatus
    source: StatusChangeSource
    actor_id: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
