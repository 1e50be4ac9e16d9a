import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Protocol, runtime_checkable

import httpx

from src.config import settings
from src.exceptions import GatewayError, NotFoundError
from src.payments.schemas import GatewayInitiation, GatewayLookup, PaymentStatus

logger = logging.getLogger(__name__)

# Khalti lookup statuses; anything unrecognised is treated as still pending
KHALTI_STATUS_MAP = {
    "Completed": PaymentStatus.COMPLETED,
    "Pending": PaymentStatus.PENDING,
    "Initiated": PaymentStatus.INITIATED,
    "User canceled": PaymentStatus.USER_CANCELED,
    "Expired": PaymentStatus.EXPIRED,
    "Refunded": PaymentStatus.REFUNDED,
    "Partially Refunded": PaymentStatus.PARTIALLY_REFUNDED,
    "Failed": PaymentStatus.FAILED,
}

def to_minor_units(amount: Decimal) -> int:
    """Rupees to paisa"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def map_gateway_status(raw_status: Optional[str]) -> PaymentStatus:
    return KHALTI_STATUS_MAP.get((raw_status or "").strip(), PaymentStatus.PENDING)

@runtime_checkable
class GatewayClient(Protocol):
    """Narrow contract with the external payment provider.

    Implementations are untrusted and at-least-once: ``verify`` is the only
    source of truth about a payment and must be called on every reconciliation.
    """

    def initiate(
        self,
        amount_minor: int,
        return_url: str,
        order_ref: str,
        order_name: str,
    ) -> GatewayInitiation: ...

    def verify(self, transaction_id: str) -> GatewayLookup: ...

class KhaltiGateway:
    """Khalti ePayment v2 client"""

    def __init__(
        self,
        secret_key: str = None,
        base_url: str = None,
        timeout: float = None,
        website_url: str = None,
        transport: httpx.BaseTransport = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.KHALTI_SECRET_KEY
        self.base_url = (base_url or settings.KHALTI_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.KHALTI_TIMEOUT_SECONDS
        self.website_url = website_url or settings.WEBSITE_URL
        self.transport = transport

    def initiate(self, amount_minor: int, return_url: str, order_ref: str, order_name: str) -> GatewayInitiation:
        payload = {
            "return_url": return_url,
            "website_url": self.website_url,
            "amount": amount_minor,
            "purchase_order_id": order_ref,
            "purchase_order_name": order_name,
        }
        response = self._post("/epayment/initiate/", payload)
        if response.status_code != 200:
            raise GatewayError(
                f"Payment initiation rejected by gateway: {self._error_detail(response)}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            raise GatewayError("Gateway returned an unreadable initiation response", status_code=response.status_code)
        if not isinstance(data, dict) or not data.get("pidx") or not data.get("payment_url"):
            raise GatewayError("Gateway response is missing pidx or payment_url")

        logger.info("Khalti payment %s initiated for order %s", data["pidx"], order_ref)
        return GatewayInitiation(
            payment_url=data["payment_url"],
            transaction_id=data["pidx"],
            expires_at=data.get("expires_at"),
        )

    def verify(self, transaction_id: str) -> GatewayLookup:
        response = self._post("/epayment/lookup/", {"pidx": transaction_id})
        if response.status_code == 404:
            raise NotFoundError(f"Transaction {transaction_id} is unknown to the gateway")

        try:
            data = response.json()
        except ValueError:
            data = {}

        # Khalti answers some terminal states (expired, canceled) with 400 plus a status body
        if "status" not in data:
            raise GatewayError(
                f"Payment lookup failed: {self._error_detail(response)}",
                status_code=response.status_code,
            )

        raw_status = str(data["status"])
        return GatewayLookup(
            transaction_id=data.get("pidx") or transaction_id,
            status=map_gateway_status(raw_status),
            raw_status=raw_status,
            amount_minor=int(data.get("total_amount") or 0),
            metadata={
                key: data[key]
                for key in ("transaction_id", "fee", "refunded")
                if data.get(key) is not None
            },
        )

    def _post(self, path: str, payload: dict) -> httpx.Response:
        headers = {
            "Authorization": f"Key {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                return client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("Khalti request to %s timed out", path)
            raise GatewayError(f"Payment gateway timed out: {e}")
        except httpx.HTTPError as e:
            logger.warning("Khalti request to %s failed: %s", path, e)
            raise GatewayError(f"Payment gateway unreachable: {e}")

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            return str(body.get("detail") or body)
        return str(body)

def get_gateway() -> GatewayClient:
    """FastAPI dependency; tests override it with a fake"""
    return KhaltiGateway()
