"""
Payment to reservation reconciliation.

Every entry point (the rider polling "verify", the gateway redirect) funnels
into ``ReconciliationEngine.reconcile`` with nothing but a transaction id. The
engine asks the gateway for the authoritative status, then converges the
payment row and its reservation in one database transaction:

* the payment row is insert-or-fetch on the unique transaction id;
* the reservation moves PENDING -> PAID with a compare-and-swap;
* the payment moves to COMPLETED with a compare-and-swap that also links the
  reservation. Whoever loses that last swap rolls back its own work and
  reports the winner's reservation, so duplicate deliveries converge no
  matter which order they run in.

Reservation expiry is deliberately not consulted here: a payment that the
gateway confirms is always honored.

When the gateway says COMPLETED but the reservation cannot be settled, the
run ends in PARTIAL_FAILURE. The payment row keeps the reason in
``last_error`` and the same transaction id can be reconciled again later.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.exceptions import NotFoundError, PartialFailure, ValidationError
from src.models import Payment, Reservation
from src.payments.gateway import GatewayClient, to_minor_units
from src.payments.ledger import PaymentLedger
from src.payments.schemas import GatewayLookup, PaymentStatus, ReconciliationOutcome, ReconciliationResult
from src.reservations.schemas import ReservationStatus, StatusChangeSource
from src.reservations.store import ReservationStore

logger = logging.getLogger(__name__)

class ReconciliationEngine:
    """Converges local payment and reservation state to the gateway's truth"""

    def __init__(self, db: Session, gateway: GatewayClient):
        self.db = db
        self.gateway = gateway
        self.ledger = PaymentLedger(db)
        self.reservations = ReservationStore(db)

    def verify_payment(self, transaction_id: str) -> ReconciliationResult:
        """Client-driven poll; safe to call any number of times"""
        return self.reconcile(transaction_id, trigger="verify")

    def handle_gateway_callback(self, transaction_id: str) -> ReconciliationResult:
        """Gateway redirect; identical to a verify call"""
        return self.reconcile(transaction_id, trigger="callback")

    def reconcile(self, transaction_id: str, trigger: str = "verify") -> ReconciliationResult:
        # Always ask the gateway; nothing a caller claims about the status is trusted
        lookup = self.gateway.verify(transaction_id)
        logger.info(
            "Reconciling transaction %s (trigger=%s): gateway reports %s",
            transaction_id, trigger, lookup.raw_status,
        )
        completed = lookup.status == PaymentStatus.COMPLETED

        try:
            payment = self._load_payment(transaction_id, lookup)
        except SQLAlchemyError as e:
            self.db.rollback()
            if completed:
                return self._partial_failure(transaction_id, lookup, f"payment could not be recorded: {e}")
            raise

        if not completed:
            return self._record_not_completed(payment, lookup)

        if payment.status == PaymentStatus.COMPLETED and payment.reservation_id:
            return self._paid(payment.transaction_id, payment.reservation_id, lookup, "Payment already settled")

        try:
            reservation_id = self._settle(payment, lookup)
        except PartialFailure as e:
            self.db.rollback()
            return self._partial_failure(transaction_id, lookup, e.reason)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Persisting settlement of transaction %s failed", transaction_id)
            return self._partial_failure(transaction_id, lookup, f"local persistence failed: {e}")

        return self._paid(transaction_id, reservation_id, lookup, "Payment completed")

    def _load_payment(self, transaction_id: str, lookup: GatewayLookup) -> Payment:
        """Fetch the ledger row, creating it on first sighting of the transaction"""
        # COMPLETED is only ever written together with the reservation link
        status = lookup.status if lookup.status != PaymentStatus.COMPLETED else PaymentStatus.PENDING
        payment, created = self.ledger.get_or_create(transaction_id, {
            "status": status,
            "gateway_status": lookup.raw_status,
            "amount_minor": lookup.amount_minor or None,
            "paid_amount_minor": lookup.amount_minor or None,
            "reservation_id": self._known_reservation(lookup.metadata.get("reservation_id")),
            "pending_details": lookup.metadata.get("pending_details"),
        })
        if created:
            self.db.commit()
            logger.warning("Transaction %s was not initiated locally; recorded on first sighting", transaction_id)
        return payment

    def _known_reservation(self, reservation_id: Optional[str]) -> Optional[str]:
        if not reservation_id:
            return None
        exists = self.db.query(Reservation.id).filter(Reservation.id == reservation_id).first()
        return reservation_id if exists else None

    def _record_not_completed(self, payment: Payment, lookup: GatewayLookup) -> ReconciliationResult:
        self.ledger.mirror_status(payment, lookup.status, lookup.raw_status, lookup.amount_minor)
        self.db.commit()
        logger.info("Transaction %s not completed at gateway (%s)", payment.transaction_id, lookup.raw_status)
        return ReconciliationResult(
            success=False,
            outcome=ReconciliationOutcome.NOT_COMPLETED,
            transaction_id=payment.transaction_id,
            reservation_id=payment.reservation_id,
            payment_status=payment.status,
            gateway_status=lookup.raw_status,
            reason=f"Gateway reports payment status '{lookup.raw_status}'",
        )

    def _settle(self, payment: Payment, lookup: GatewayLookup) -> str:
        if payment.reservation_id:
            return self._settle_existing(payment, lookup)
        return self._settle_pending(payment, lookup)

    def _settle_existing(self, payment: Payment, lookup: GatewayLookup) -> str:
        """Pay-after-reserve: move the linked reservation to PAID"""
        transaction_id = payment.transaction_id
        try:
            reservation = self.reservations.get(payment.reservation_id)
        except NotFoundError as e:
            raise PartialFailure(transaction_id, str(e))

        other = self.ledger.completed_for_reservation(reservation.id)
        if other and other.id != payment.id:
            raise PartialFailure(
                transaction_id,
                f"reservation {reservation.id} was already paid by transaction {other.transaction_id}",
            )

        self._check_amount(transaction_id, lookup.amount_minor, reservation.total_price)

        change = self.reservations.set_status(
            reservation.id,
            ReservationStatus.PAID,
            StatusChangeSource.RECONCILIATION,
            transaction_id=transaction_id,
            commit=False,
        )
        if change.conflict:
            raise PartialFailure(
                transaction_id,
                f"reservation {reservation.id} is {change.from_status.value} and cannot be marked paid",
            )
        return self._finalize(payment, reservation.id, lookup)

    def _settle_pending(self, payment: Payment, lookup: GatewayLookup) -> str:
        """Pay-first: build the reservation, already PAID, from the stashed payload"""
        transaction_id = payment.transaction_id
        if not payment.pending_details:
            raise PartialFailure(transaction_id, "no reservation or pending reservation details for this payment")

        raw = dict(payment.pending_details)
        if raw.get("total_price") is None and lookup.amount_minor:
            raw["total_price"] = str(Decimal(lookup.amount_minor) / 100)

        try:
            details = ReservationStore.parse_details(raw)
            self._check_amount(transaction_id, lookup.amount_minor, details.total_price)
            reservation = self.reservations.create(
                details,
                owner_id=payment.owner_id,
                status=ReservationStatus.PAID,
                source=StatusChangeSource.RECONCILIATION,
                transaction_id=transaction_id,
                commit=False,
            )
        except ValidationError as e:
            raise PartialFailure(transaction_id, f"pending reservation details unusable: {e}")

        return self._finalize(payment, reservation.id, lookup)

    def _finalize(self, payment: Payment, reservation_id: str, lookup: GatewayLookup) -> str:
        """Swap the payment to COMPLETED; on a lost race adopt the winner's reservation"""
        won = self.ledger.complete(payment.id, reservation_id, lookup.amount_minor, lookup.raw_status)
        if not won:
            self.db.rollback()
            winner = self.ledger.get(payment.transaction_id)
            logger.info(
                "Transaction %s was settled concurrently; converged on reservation %s",
                payment.transaction_id, winner.reservation_id,
            )
            return winner.reservation_id

        self.db.commit()
        logger.info("Transaction %s settled; reservation %s is PAID", payment.transaction_id, reservation_id)
        return reservation_id

    @staticmethod
    def _check_amount(transaction_id: str, paid_minor: int, price: Optional[Decimal]):
        if price is None:
            raise PartialFailure(transaction_id, "reservation price is unknown")
        expected = to_minor_units(price)
        if paid_minor != expected:
            raise PartialFailure(
                transaction_id,
                f"gateway reported {paid_minor} minor units but the reservation costs {expected}",
            )

    def _paid(self, transaction_id: str, reservation_id: str, lookup: GatewayLookup, reason: str) -> ReconciliationResult:
        return ReconciliationResult(
            success=True,
            outcome=ReconciliationOutcome.PAID,
            transaction_id=transaction_id,
            reservation_id=reservation_id,
            payment_status=PaymentStatus.COMPLETED,
            gateway_status=lookup.raw_status,
            reason=reason,
        )

    def _partial_failure(self, transaction_id: str, lookup: GatewayLookup, reason: str) -> ReconciliationResult:
        logger.critical(
            "PARTIAL FAILURE: transaction %s captured %s minor units at the gateway but was not settled: %s",
            transaction_id, lookup.amount_minor, reason,
        )
        payment = None
        try:
            payment = self.ledger.record_failure(transaction_id, reason, lookup.raw_status, lookup.amount_minor)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Could not record partial failure for transaction %s", transaction_id)

        return ReconciliationResult(
            success=False,
            outcome=ReconciliationOutcome.PARTIAL_FAILURE,
            transaction_id=transaction_id,
            reservation_id=payment.reservation_id if payment else None,
            payment_status=payment.status if payment else lookup.status,
            gateway_status=lookup.raw_status,
            reason=reason,
        )
