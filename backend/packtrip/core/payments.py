"""
Payment gateway adapter.

The booking service only sees ``PaymentGateway.create_session``; the Midtrans
Snap client below is the production implementation and can be swapped for
any other hosted checkout.
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import requests
from fastapi.concurrency import run_in_threadpool

from packtrip.core.errors import GatewayError
from packtrip.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentCustomer:
    name: str
    email: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class LineItem:
    id: str
    name: str
    price: Decimal
    quantity: int = 1


@dataclass(frozen=True)
class PaymentSession:
    session_token: str
    redirect_url: str


class PaymentGateway(ABC):
    """Creates a remote payment session for an order reference"""

    @abstractmethod
    async def create_session(
        self,
        order_reference: str,
        amount: Decimal,
        customer: PaymentCustomer,
        items: Optional[List[LineItem]] = None,
    ) -> PaymentSession:
        """Raises GatewayError on network or validation failure"""


def to_minor_units(amount: Decimal) -> int:
    """Snap expects whole rupiah"""
    return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class MidtransSnapGateway(PaymentGateway):
    SNAP_PATH = "/snap/v1/transactions"

    def __init__(
        self,
        server_key: str,
        base_url: str,
        timeout: float = 15.0,
        http: Optional[requests.Session] = None,
    ):
        self.server_key = server_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()

    def build_payload(
        self,
        order_reference: str,
        amount: Decimal,
        customer: PaymentCustomer,
        items: Optional[List[LineItem]] = None,
    ) -> Dict[str, Any]:
        gross_amount = to_minor_units(amount)
        payload: Dict[str, Any] = {
            "transaction_details": {
                "order_id": order_reference,
                "gross_amount": gross_amount,
            },
            "customer_details": {
                "first_name": customer.name,
                "email": customer.email,
                "phone": customer.phone or "",
            },
        }
        if items:
            item_details = [
                {
                    "id": item.id,
                    "name": item.name[:50],
                    "price": to_minor_units(item.price),
                    "quantity": item.quantity,
                }
                for item in items
            ]
            # Snap rejects item lists that do not add up to gross_amount
            if sum(i["price"] * i["quantity"] for i in item_details) == gross_amount:
                payload["item_details"] = item_details
            else:
                logger.warning(f"Item details for {order_reference} do not sum to gross amount, omitting them")
        return payload

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{self.SNAP_PATH}"
        try:
            response = self.http.post(
                url,
                json=payload,
                auth=(self.server_key, ""),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise GatewayError(f"Payment gateway unreachable: {e}") from e

        if response.status_code >= 400:
            raise GatewayError(
                f"Payment gateway rejected the request ({response.status_code})",
                status=response.status_code,
                body=response.text[:1000],
            )
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError("Payment gateway returned a non-JSON response", status=response.status_code) from e

    async def create_session(
        self,
        order_reference: str,
        amount: Decimal,
        customer: PaymentCustomer,
        items: Optional[List[LineItem]] = None,
    ) -> PaymentSession:
        if not self.server_key:
            raise GatewayError("Payment gateway is not configured")
        payload = self.build_payload(order_reference, amount, customer, items)
        body = await run_in_threadpool(self._post, payload)

        token = body.get("token")
        redirect_url = body.get("redirect_url")
        if not token or not redirect_url:
            raise GatewayError("Payment gateway response is missing token or redirect_url")
        logger.info(f"Payment session created for order {order_reference}")
        return PaymentSession(session_token=token, redirect_url=redirect_url)


def notification_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


def verify_notification_signature(
    order_id: str,
    status_code: Optional[str],
    gross_amount: Optional[str],
    signature_key: Optional[str],
    server_key: str,
) -> bool:
    if not signature_key or status_code is None or gross_amount is None:
        return False
    expected = notification_signature(order_id, status_code, gross_amount, server_key)
    return hmac.compare_digest(expected, signature_key)


_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    """FastAPI dependency returning the configured gateway"""
    global _gateway
    if _gateway is None:
        settings: Settings = get_settings()
        _gateway = MidtransSnapGateway(
            server_key=settings.MIDTRANS_SERVER_KEY,
            base_url=settings.midtrans_base_url,
            timeout=settings.MIDTRANS_TIMEOUT_SECONDS,
        )
    return _gateway
