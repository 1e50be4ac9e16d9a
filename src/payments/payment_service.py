import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from src.exceptions import ConflictError, ExpiredReservationError, NotFoundError, ValidationError
from src.models import Payment
from src.payments.gateway import GatewayClient, to_minor_units
from src.payments.ledger import PaymentLedger
from src.payments.reconciliation import ReconciliationEngine
from src.payments.schemas import PaymentInitiateResponse, ReconciliationResult
from src.reservations.expiry import is_expired
from src.reservations.schemas import ReservationDetails, ReservationStatus
from src.reservations.store import ReservationStore

logger = logging.getLogger(__name__)

class PaymentService:
    """Starts gateway payments and records them in the ledger"""

    def __init__(self, db: Session, gateway: GatewayClient):
        self.db = db
        self.gateway = gateway
        self.ledger = PaymentLedger(db)
        self.reservations = ReservationStore(db)

    def initiate_payment(
        self,
        amount: Decimal,
        return_url: str,
        owner_id: Optional[str] = None,
        reservation_id: Optional[str] = None,
        pending_details: Optional[ReservationDetails] = None,
        now: Optional[datetime] = None,
    ) -> PaymentInitiateResponse:
        """Start a payment for a reservation, or for details not yet reserved.

        Exactly one of ``reservation_id`` and ``pending_details`` is accepted.
        Pending details are held on the payment row so the reservation can be
        built server-side once the gateway confirms the money.
        """
        if (reservation_id is None) == (pending_details is None):
            raise ValidationError("Provide exactly one of reservation_id or pending_details")
        if amount is None or Decimal(amount) <= 0:
            raise ValidationError("Amount must be positive")
        if not return_url:
            raise ValidationError("return_url is required")

        amount = Decimal(amount)
        stashed = None

        if reservation_id is not None:
            reservation = self.reservations.get(reservation_id)
            if owner_id is not None and reservation.owner_id != owner_id:
                raise NotFoundError(f"Reservation {reservation_id} not found")
            if reservation.status != ReservationStatus.PENDING:
                raise ConflictError(f"Reservation is {reservation.status.value} and cannot be paid")
            if is_expired(reservation, now):
                raise ExpiredReservationError("Reservation payment window has expired; please book again")
            if to_minor_units(amount) != to_minor_units(reservation.total_price):
                raise ValidationError(
                    f"Amount {amount} does not match reservation price {reservation.total_price}"
                )
            order_ref = reservation.id
            order_name = f"Bus ticket {reservation.from_location} - {reservation.to_location}"
        else:
            if pending_details.total_price is None:
                pending_details = pending_details.model_copy(update={"total_price": amount})
            elif to_minor_units(pending_details.total_price) != to_minor_units(amount):
                raise ValidationError(
                    f"Amount {amount} does not match reservation price {pending_details.total_price}"
                )
            stashed = pending_details.model_dump(mode="json")
            order_ref = f"pending-{uuid.uuid4()}"
            order_name = f"Bus ticket {pending_details.from_location} - {pending_details.to_location}"

        amount_minor = to_minor_units(amount)
        initiation = self.gateway.initiate(amount_minor, return_url, order_ref, order_name)

        self.ledger.record_initiation(
            initiation.transaction_id,
            amount_minor=amount_minor,
            owner_id=owner_id,
            purchase_order_id=order_ref,
            reservation_id=reservation_id,
            pending_details=stashed,
        )
        return PaymentInitiateResponse(
            payment_url=initiation.payment_url,
            transaction_id=initiation.transaction_id,
            reservation_id=reservation_id,
        )

    def get_payment(self, transaction_id: str, owner_id: Optional[str] = None) -> Payment:
        """Ledger row for a transaction, scoped to ``owner_id`` when given.

        Payments first seen during reconciliation have no owner and are only
        visible to unscoped (operator) callers.
        """
        payment = self.ledger.get(transaction_id)
        if owner_id is not None and payment.owner_id != owner_id:
            raise NotFoundError(f"Payment for transaction {transaction_id} not found")
        return payment

    def repair_pending_details(
        self,
        transaction_id: str,
        details: ReservationDetails,
        owner_id: Optional[str] = None,
        assign_owner_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """Replace a bad pending payload, then retry settlement of the same transaction.

        ``assign_owner_id`` lets an operator hand an unowned payment to the
        rider who paid, so the reservation it settles into belongs to them.
        """
        self.get_payment(transaction_id, owner_id)
        if assign_owner_id is not None and owner_id is not None:
            raise ValidationError("Only operators can assign a payment owner")
        self.ledger.replace_pending_details(
            transaction_id, details.model_dump(mode="json"), owner_id=assign_owner_id
        )
        return ReconciliationEngine(self.db, self.gateway).reconcile(transaction_id, trigger="repair")
