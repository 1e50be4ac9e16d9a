import logging
from datetime import datetime
from typing import List, Optional, Union

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session

from src.exceptions import ConflictError, ExpiredReservationError, NotFoundError, ValidationError
from src.models import Payment, Reservation, ReservationStatusChange, new_id, utcnow
from src.payments.schemas import PaymentStatus
from src.reservations.expiry import is_expired
from src.reservations.schemas import ReservationDetails, ReservationStatus, StatusChange, StatusChangeSource

logger = logging.getLogger(__name__)

class ReservationStore:
    """Durable reservation records and their guarded status machine.

    Every write goes through ``set_status`` which performs a compare-and-swap
    on the current status, so concurrent writers can never move a reservation
    out of a terminal state. Methods that write accept ``commit=False`` so the
    reconciliation engine can fold them into its own unit of work.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        details: Union[ReservationDetails, dict],
        owner_id: Optional[str] = None,
        status: ReservationStatus = ReservationStatus.PENDING,
        source: StatusChangeSource = StatusChangeSource.BOOKING,
        transaction_id: Optional[str] = None,
        commit: bool = True,
    ) -> Reservation:
        """Create a reservation, PENDING unless settled at creation"""
        details = self.parse_details(details)
        if details.total_price is None:
            raise ValidationError("Total price is required")

        reservation = Reservation(
            id=new_id(),
            owner_id=owner_id,
            from_location=details.from_location,
            to_location=details.to_location,
            bus_number_plate=details.bus_number_plate,
            departure_time=details.departure_time,
            estimated_time=details.estimated_time,
            total_price=details.total_price,
            passenger_names=list(details.passenger_names),
            status=status,
        )
        self.db.add(reservation)
        self.db.flush()
        self._record_change(reservation.id, None, status, source, owner_id, transaction_id)

        if commit:
            self.db.commit()
            self.db.refresh(reservation)

        logger.info(
            "Reservation %s created in %s (source=%s, owner=%s, transaction=%s)",
            reservation.id, status.value, source.value, owner_id, transaction_id,
        )
        return reservation

    def get(self, reservation_id: str) -> Reservation:
        reservation = self.db.query(Reservation).filter(Reservation.id == reservation_id).first()
        if not reservation:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        return reservation

    def list_for_owner(
        self,
        owner_id: str,
        status: Optional[ReservationStatus] = None,
    ) -> List[Reservation]:
        """Reservations belonging to a rider, newest first"""
        query = self.db.query(Reservation).filter(Reservation.owner_id == owner_id)
        if status:
            query = query.filter(Reservation.status == status)
        return query.order_by(Reservation.created_at.desc()).all()

    def history(self, reservation_id: str) -> List[ReservationStatusChange]:
        self.get(reservation_id)
        return (
            self.db.query(ReservationStatusChange)
            .filter(ReservationStatusChange.reservation_id == reservation_id)
            .order_by(ReservationStatusChange.id)
            .all()
        )

    def set_status(
        self,
        reservation_id: str,
        new_status: ReservationStatus,
        source: StatusChangeSource,
        actor_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        commit: bool = True,
    ) -> StatusChange:
        """Move a reservation to ``new_status`` if the state machine allows it.

        Re-applying the current status is a no-op. An illegal transition is
        reported through ``StatusChange.conflict`` rather than raised.
        """
        reservation = self.get(reservation_id)
        current = reservation.status

        if current == new_status:
            return StatusChange(
                reservation_id=reservation_id, from_status=current, to_status=new_status, applied=False
            )

        if not current.can_transition_to(new_status):
            logger.warning(
                "Rejected reservation %s transition %s -> %s (source=%s, actor=%s)",
                reservation_id, current.value, new_status.value, source.value, actor_id,
            )
            return StatusChange(
                reservation_id=reservation_id, from_status=current, to_status=new_status,
                applied=False, conflict=True,
            )

        updated = (
            self.db.query(Reservation)
            .filter(Reservation.id == reservation_id, Reservation.status == current)
            .update({"status": new_status, "updated_at": utcnow()}, synchronize_session=False)
        )
        self.db.expire(reservation)

        if updated == 0:
            # Another writer moved it first; judge against what they left behind
            winner = self.get(reservation_id).status
            return StatusChange(
                reservation_id=reservation_id, from_status=winner, to_status=new_status,
                applied=False, conflict=winner != new_status,
            )

        self._record_change(reservation_id, current, new_status, source, actor_id, transaction_id)
        if commit:
            self.db.commit()

        logger.info(
            "Reservation %s %s -> %s (source=%s, actor=%s, transaction=%s)",
            reservation_id, current.value, new_status.value, source.value, actor_id, transaction_id,
        )
        return StatusChange(
            reservation_id=reservation_id, from_status=current, to_status=new_status, applied=True
        )

    def cancel(
        self,
        reservation_id: str,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StatusChange:
        """Cancel an unpaid reservation"""
        reservation = self.get(reservation_id)

        if reservation.status == ReservationStatus.PAID:
            raise ConflictError("Reservation is already paid and cannot be cancelled")

        completed = (
            self.db.query(Payment)
            .filter(Payment.reservation_id == reservation_id, Payment.status == PaymentStatus.COMPLETED)
            .first()
        )
        if completed:
            raise ConflictError(
                f"Reservation is settled by payment {completed.transaction_id} and cannot be cancelled"
            )

        if is_expired(reservation, now) and self._has_terminal_payment(reservation_id):
            raise ExpiredReservationError("Reservation has expired after payment was processed")

        change = self.set_status(reservation_id, ReservationStatus.CANCELLED, StatusChangeSource.CANCEL, actor_id)
        if change.conflict:
            raise ConflictError(f"Reservation cannot be cancelled from status {change.from_status.value}")
        return change

    @staticmethod
    def parse_details(details: Union[ReservationDetails, dict]) -> ReservationDetails:
        """Validate raw reservation details, raising ValidationError on bad input"""
        if isinstance(details, ReservationDetails):
            return details
        if not isinstance(details, dict):
            raise ValidationError("Reservation details must be an object")
        try:
            return ReservationDetails(**details)
        except SchemaValidationError as e:
            messages = "; ".join(error["msg"] for error in e.errors())
            raise ValidationError(f"Invalid reservation details: {messages}")

    def _has_terminal_payment(self, reservation_id: str) -> bool:
        payments = self.db.query(Payment).filter(Payment.reservation_id == reservation_id).all()
        return any(payment.status.is_terminal for payment in payments)

    def _record_change(
        self,
        reservation_id: str,
        from_status: Optional[ReservationStatus],
        to_status: ReservationStatus,
        source: StatusChangeSource,
        actor_id: Optional[str],
        transaction_id: Optional[str],
    ):
        self.db.add(ReservationStatusChange(
            reservation_id=reservation_id,
            from_status=from_status,
            to_status=to_status,
            source=source,
            actor_id=actor_id,
            transaction_id=transaction_id,
        ))
        self.db.flush()
