from pydantic import BaseModel, Field, validator
from typing import Any, Dict, Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum

from src.reservations.schemas import ReservationDetails

class PaymentStatus(str, Enum):
    """Payment status enumeration, mirrored from the gateway"""
    INITIATED = "INITIATED"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    USER_CANCELED = "USER_CANCELED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        """Money moved and the attempt can no longer change on its own"""
        return self in (
            PaymentStatus.COMPLETED,
            PaymentStatus.REFUNDED,
            PaymentStatus.PARTIALLY_REFUNDED,
        )

class ReconciliationOutcome(str, Enum):
    PAID = "PAID"
    NOT_COMPLETED = "NOT_COMPLETED"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"

# Gateway Models
class GatewayInitiation(BaseModel):
    """What the gateway hands back when a payment is started"""
    payment_url: str
    transaction_id: str
    expires_at: Optional[datetime] = None

class GatewayLookup(BaseModel):
    """Authoritative payment state as reported by the gateway"""
    transaction_id: str
    status: PaymentStatus
    raw_status: str
    amount_minor: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)

# Request Models
class PaymentInitiateRequest(BaseModel):
    """Start a payment for an existing reservation or for pending details"""
    amount: Decimal = Field(..., description="Amount in major currency units")
    reservation_id: Optional[str] = None
    pending_details: Optional[ReservationDetails] = None
    return_url: str

    @validator('amount')
    def validate_amount(cls, v):
        if v <= 0:
            raise ValueError('Amount must be positive')
        return v

class PaymentVerifyRequest(BaseModel):
    """Only the transaction identifier is read; any status a client sends is ignored"""
    transaction_id: str = Field(..., alias="pidx", min_length=1)

    class Config:
        populate_by_name = True

# Response Models
class PaymentInitiateResponse(BaseModel):
    payment_url: str
    transaction_id: str
    reservation_id: Optional[str] = None

class ReconciliationResult(BaseModel):
    """Outcome of one reconciliation run"""
    success: bool
    outcome: ReconciliationOutcome
    transaction_id: str
    reservation_id: Optional[str] = None
    payment_status: PaymentStatus
    gateway_status: Optional[str] = None
    reason: str

class PaymentRecord(BaseModel):
    id: str
    transaction_id: str
    purchase_order_id: Optional[str] = None
    owner_id: Optional[str] = None
    amount_minor: Optional[int] = None
    paid_amount_minor: Optional[int] = None
    status: PaymentStatus
    gateway_status: Optional[str] = None
    reservation_id: Optional[str] = None
    pending_details: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
