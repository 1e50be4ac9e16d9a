"""
Error taxonomy shared by the reservation and payment modules.

Routers translate these into HTTP responses; services raise them. GatewayError
and PartialFailure are recoverable by retrying the same operation with the same
transaction identifier. ValidationError and ConflictError are terminal for the
call and are reported to the caller verbatim.
"""

from fastapi import HTTPException, status

class ReservationSystemError(Exception):
    """Base class for all domain errors"""

class ValidationError(ReservationSystemError, ValueError):
    """Missing or malformed input"""

class NotFoundError(ReservationSystemError):
    """Unknown reservation or transaction"""

class ConflictError(ReservationSystemError):
    """Illegal state transition, e.g. cancel after paid"""

class ExpiredReservationError(ReservationSystemError):
    """New payment or cancel attempted against a lapsed reservation"""

class GatewayError(ReservationSystemError):
    """Network or provider failure talking to the payment gateway"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code

class PartialFailure(ReservationSystemError):
    """The gateway captured the money but the reservation could not be settled"""

    def __init__(self, transaction_id: str, reason: str):
        super().__init__(f"Payment {transaction_id} captured but not settled: {reason}")
        self.transaction_id = transaction_id
        self.reason = reason

def http_error(error: ReservationSystemError):
    """Translate a domain error into the HTTPException a router raises"""
    status_codes = {
        ValidationError: status.HTTP_400_BAD_REQUEST,
        NotFoundError: status.HTTP_404_NOT_FOUND,
        ConflictError: status.HTTP_409_CONFLICT,
        ExpiredReservationError: status.HTTP_410_GONE,
        GatewayError: status.HTTP_502_BAD_GATEWAY,
        PartialFailure: status.HTTP_500_INTERNAL_SERVER_ERROR,
    }
    for error_type, status_code in status_codes.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
