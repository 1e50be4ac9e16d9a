"""
Reservation Module

Seat reservations for bus journeys and their status machine.

Key Components:
- store.py: Reservation persistence with guarded PENDING -> PAID / CANCELLED transitions
- expiry.py: Payment-window policy (view-level, never persisted)
- router.py: FastAPI endpoints for riders and operators
- schemas.py: Pydantic models and status enumerations
"""
