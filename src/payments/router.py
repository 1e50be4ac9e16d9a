from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Optional

from src.auth.dependencies import get_current_user
from src.auth.schemas import CurrentUser
from src.database import get_db
from src.exceptions import ReservationSystemError, http_error
from src.payments.gateway import GatewayClient, get_gateway
from src.payments.payment_service import PaymentService
from src.payments.reconciliation import ReconciliationEngine
from src.payments.schemas import (
    PaymentInitiateRequest, PaymentInitiateResponse, PaymentRecord, PaymentVerifyRequest,
    ReconciliationResult
)
from src.reservations.schemas import ReservationDetails

router = APIRouter()

@router.post("/initiate", response_model=PaymentInitiateResponse)
def initiate_payment(
    request: PaymentInitiateRequest,
    current_user: CurrentUser = Depends(get_current_user),
    gateway: GatewayClient = Depends(get_gateway),
    db: Session = Depends(get_db)
):
    """Start a gateway payment for a reservation or for not-yet-reserved details"""
    payment_service = PaymentService(db, gateway)
    try:
        return payment_service.initiate_payment(
            amount=request.amount,
            return_url=request.return_url,
            owner_id=current_user.id,
            reservation_id=request.reservation_id,
            pending_details=request.pending_details,
        )
    except ReservationSystemError as e:
        raise http_error(e)

@router.post("/verify", response_model=ReconciliationResult)
def verify_payment(
    request: PaymentVerifyRequest,
    current_user: CurrentUser = Depends(get_current_user),
    gateway: GatewayClient = Depends(get_gateway),
    db: Session = Depends(get_db)
):
    """Re-check a transaction with the gateway and settle it; safe to repeat"""
    engine = ReconciliationEngine(db, gateway)
    try:
        return engine.verify_payment(request.transaction_id)
    except ReservationSystemError as e:
        raise http_error(e)

@router.get("/callback", response_model=ReconciliationResult)
def handle_gateway_callback(
    pidx: str = Query(..., min_length=1, description="Gateway transaction identifier"),
    gateway: GatewayClient = Depends(get_gateway),
    db: Session = Depends(get_db)
):
    """Gateway return redirect. Status and amount query parameters are ignored."""
    engine = ReconciliationEngine(db, gateway)
    try:
        return engine.handle_gateway_callback(pidx)
    except ReservationSystemError as e:
        raise http_error(e)

@router.get("/{transaction_id}", response_model=PaymentRecord)
def get_payment(
    transaction_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    gateway: GatewayClient = Depends(get_gateway),
    db: Session = Depends(get_db)
):
    """Ledger entry for a transaction"""
    payment_service = PaymentService(db, gateway)
    try:
        return payment_service.get_payment(
            transaction_id, owner_id=None if current_user.is_admin else current_user.id
        )
    except ReservationSystemError as e:
        raise http_error(e)

@router.put("/{transaction_id}/pending-details", response_model=ReconciliationResult)
def repair_pending_details(
    transaction_id: str,
    details: ReservationDetails,
    owner_id: Optional[str] = Query(None, description="Operators only: rider to own an unowned payment"),
    current_user: CurrentUser = Depends(get_current_user),
    gateway: GatewayClient = Depends(get_gateway),
    db: Session = Depends(get_db)
):
    """Fix the reservation payload of a captured payment and retry its settlement"""
    if owner_id is not None and not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions"
        )

    payment_service = PaymentService(db, gateway)
    try:
        return payment_service.repair_pending_details(
            transaction_id,
            details,
            owner_id=None if current_user.is_admin else current_user.id,
            assign_owner_id=owner_id,
        )
    except ReservationSystemError as e:
        raise http_error(e)
