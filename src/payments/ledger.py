import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.exceptions import ConflictError, NotFoundError
from src.models import Payment, new_id, utcnow
from src.payments.schemas import PaymentStatus

logger = logging.getLogger(__name__)

class PaymentLedger:
    """Payment attempts keyed by the gateway transaction identifier.

    The unique constraint on ``transaction_id`` makes inserts insert-or-fetch,
    and completion is a conditional update so a row reaches COMPLETED once.
    """

    def __init__(self, db: Session):
        self.db = db

    def find(self, transaction_id: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.transaction_id == transaction_id).first()

    def get(self, transaction_id: str) -> Payment:
        payment = self.find(transaction_id)
        if not payment:
            raise NotFoundError(f"Payment for transaction {transaction_id} not found")
        return payment

    def get_or_create(self, transaction_id: str, defaults: Optional[Dict[str, Any]] = None):
        """Return ``(payment, created)``, inserting the row only if absent.

        A concurrent insert of the same transaction id loses on the unique
        constraint; the savepoint is rolled back and the winner's row returned.
        """
        payment = self.find(transaction_id)
        if payment:
            return payment, False

        payment = Payment(id=new_id(), transaction_id=transaction_id, **(defaults or {}))
        try:
            with self.db.begin_nested():
                self.db.add(payment)
        except IntegrityError:
            logger.info("Payment for transaction %s inserted concurrently, reusing it", transaction_id)
            return self.get(transaction_id), False
        return payment, True

    def record_initiation(
        self,
        transaction_id: str,
        amount_minor: int,
        owner_id: Optional[str],
        purchase_order_id: str,
        reservation_id: Optional[str] = None,
        pending_details: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        payment, created = self.get_or_create(transaction_id, {
            "amount_minor": amount_minor,
            "owner_id": owner_id,
            "purchase_order_id": purchase_order_id,
            "reservation_id": reservation_id,
            "pending_details": pending_details,
            "status": PaymentStatus.INITIATED,
        })
        if not created:
            # The gateway never reuses a transaction id for a new attempt
            raise ConflictError(f"Transaction {transaction_id} is already recorded")
        self.db.commit()
        logger.info(
            "Payment %s initiated for %s minor units (reservation=%s, order=%s)",
            transaction_id, amount_minor, reservation_id, purchase_order_id,
        )
        return payment

    def mirror_status(self, payment: Payment, status: PaymentStatus, raw_status: str, amount_minor: int = None):
        """Copy a non-completed gateway status onto the row.

        A COMPLETED row is never downgraded; later gateway states such as a
        refund are still recorded in ``gateway_status``.
        """
        if status == PaymentStatus.COMPLETED:
            raise ValueError("Use complete() to settle a payment")

        payment.gateway_status = raw_status
        if amount_minor:
            payment.paid_amount_minor = amount_minor
        if payment.status != PaymentStatus.COMPLETED:
            payment.status = status
        self.db.flush()

    def complete(
        self,
        payment_id: str,
        reservation_id: str,
        paid_amount_minor: int,
        raw_status: str,
    ) -> bool:
        """Mark COMPLETED and link the reservation, unless already COMPLETED.

        Returns True when this call performed the transition.
        """
        now = utcnow()
        updated = (
            self.db.query(Payment)
            .filter(Payment.id == payment_id, Payment.status != PaymentStatus.COMPLETED)
            .update({
                "status": PaymentStatus.COMPLETED,
                "reservation_id": reservation_id,
                "paid_amount_minor": paid_amount_minor,
                "gateway_status": raw_status,
                "last_error": None,
                "completed_at": now,
                "updated_at": now,
            }, synchronize_session=False)
        )
        self.db.flush()
        return updated == 1

    def completed_for_reservation(self, reservation_id: str) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.reservation_id == reservation_id, Payment.status == PaymentStatus.COMPLETED)
            .first()
        )

    def record_failure(self, transaction_id: str, reason: str, raw_status: str = None, amount_minor: int = None):
        """Remember why a captured payment could not be settled"""
        payment = self.find(transaction_id)
        if not payment:
            return None
        payment.last_error = reason
        if raw_status:
            payment.gateway_status = raw_status
        if amount_minor:
            payment.paid_amount_minor = amount_minor
        self.db.commit()
        return payment

    def replace_pending_details(
        self,
        transaction_id: str,
        pending_details: Dict[str, Any],
        owner_id: Optional[str] = None,
    ) -> Payment:
        """Swap the stashed reservation payload of a payment that has not settled yet"""
        payment = self.get(transaction_id)
        if payment.status == PaymentStatus.COMPLETED or payment.reservation_id:
            raise ConflictError("Payment is already linked to a reservation")
        if owner_id is not None:
            if payment.owner_id not in (None, owner_id):
                raise ConflictError("Payment already belongs to another rider")
            payment.owner_id = owner_id
        payment.pending_details = pending_details
        self.db.commit()
        logger.info("Pending reservation details replaced for transaction %s", transaction_id)
        return payment
