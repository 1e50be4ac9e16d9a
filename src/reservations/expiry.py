"""
Reservation payment-window policy.

A reservation expires ``RESERVATION_TTL_HOURS`` after it was created. Expiry is
a view-level predicate: it is never written back as a status. It gates new
actions only (starting a payment, cancelling once money has moved) and never
reconciliation, so a payment started in time is honored even when it
completes after the window closed.
"""

from datetime import datetime, timedelta
from typing import Optional

from src.config import settings
from src.models import utcnow

def reservation_ttl() -> timedelta:
    return timedelta(hours=settings.RESERVATION_TTL_HOURS)

def expires_at(reservation) -> datetime:
    """Moment the reservation's payment window lapses"""
    return reservation.created_at + reservation_ttl()

def is_expired(reservation, now: Optional[datetime] = None) -> bool:
    if now is None:
        now = utcnow()
    return now > expires_at(reservation)
