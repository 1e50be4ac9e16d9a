"""
Payment Module

Gateway payments and their reconciliation against reservations.

Key Components:
- gateway.py: Gateway client contract and the Khalti implementation
- ledger.py: Payment rows keyed by the gateway transaction identifier
- reconciliation.py: Exactly-once settlement of confirmed payments
- payment_service.py: Payment initiation for reservations or pending details
- router.py: FastAPI endpoints for initiation, verification and the gateway callback
- schemas.py: Pydantic models and status enumerations
"""
