from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from src.auth.dependencies import get_current_user, require_admin
from src.auth.schemas import CurrentUser
from src.database import get_db
from src.exceptions import NotFoundError, ReservationSystemError, http_error
from src.models import Reservation
from src.reservations.expiry import expires_at, is_expired
from src.reservations.schemas import (
    ReservationCreateRequest, ReservationRecord, ReservationResponse, ReservationStatus,
    ReservationStatusUpdate, StatusChange, StatusChangeSource, StatusHistoryEntry
)
from src.reservations.store import ReservationStore

router = APIRouter()

def to_response(reservation: Reservation) -> ReservationResponse:
    """Reservation with its computed payment window"""
    record = ReservationRecord.model_validate(reservation)
    return ReservationResponse(
        **record.model_dump(),
        expires_at=expires_at(reservation),
        is_expired=is_expired(reservation),
    )

def _get_owned(store: ReservationStore, reservation_id: str, user: CurrentUser) -> Reservation:
    reservation = store.get(reservation_id)
    if not user.is_admin and reservation.owner_id != user.id:
        raise NotFoundError(f"Reservation {reservation_id} not found")
    return reservation

@router.post("", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
def create_reservation(
    request: ReservationCreateRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Reserve seats; the reservation stays PENDING until its payment settles"""
    store = ReservationStore(db)
    try:
        reservation = store.create(request, owner_id=current_user.id)
    except ReservationSystemError as e:
        raise http_error(e)
    return to_response(reservation)

@router.get("", response_model=List[ReservationResponse])
def list_my_reservations(
    reservation_status: Optional[ReservationStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(50, ge=1, le=100, description="Maximum results"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get the caller's reservations, newest first"""
    reservations = ReservationStore(db).list_for_owner(current_user.id, reservation_status)
    return [to_response(r) for r in reservations[:limit]]

@router.get("/{reservation_id}", response_model=ReservationResponse)
def get_reservation(
    reservation_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get reservation details by ID"""
    try:
        reservation = _get_owned(ReservationStore(db), reservation_id, current_user)
    except ReservationSystemError as e:
        raise http_error(e)
    return to_response(reservation)

@router.get("/{reservation_id}/history", response_model=List[StatusHistoryEntry])
def get_reservation_history(
    reservation_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Status transitions of a reservation and what drove each one"""
    store = ReservationStore(db)
    try:
        _get_owned(store, reservation_id, current_user)
        return store.history(reservation_id)
    except ReservationSystemError as e:
        raise http_error(e)

@router.post("/{reservation_id}/cancel", response_model=ReservationResponse)
def cancel_reservation(
    reservation_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Cancel an unpaid reservation"""
    store = ReservationStore(db)
    try:
        _get_owned(store, reservation_id, current_user)
        store.cancel(reservation_id, actor_id=current_user.id)
        return to_response(store.get(reservation_id))
    except ReservationSystemError as e:
        raise http_error(e)

@router.put("/{reservation_id}/status", response_model=StatusChange)
def set_reservation_status(
    reservation_id: str,
    update: ReservationStatusUpdate,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Operator override of a reservation status; recorded as a MANUAL transition"""
    store = ReservationStore(db)
    try:
        change = store.set_status(
            reservation_id, update.status, StatusChangeSource.MANUAL, actor_id=admin.id
        )
    except ReservationSystemError as e:
        raise http_error(e)

    if change.conflict:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot change reservation from {change.from_status.value} to {change.to_status.value}"
        )
    return change
