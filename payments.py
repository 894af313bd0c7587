"""Stripe PaymentIntents over plain HTTP."""

import logging
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx

import config
from exceptions import PaymentException
from models import Booking

logger = logging.getLogger(__name__)

PAYMENT_ID = re.compile(r"pi_[A-Za-z0-9]+")


@dataclass
class PaymentHandle:
    payment_id: str
    client_secret: str


@dataclass
class PaymentStatus:
    payment_id: str
    status: str
    booking_id: Optional[str]

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway:
    def __init__(
        self,
        secret_key: Optional[str] = None,
        api_base: Optional[str] = None,
        currency: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.secret_key = secret_key if secret_key is not None else config.STRIPE_SECRET_KEY
        self.api_base = (api_base or config.STRIPE_API_BASE).rstrip("/")
        self.currency = currency or config.PAYMENT_CURRENCY
        self.timeout = timeout if timeout is not None else config.PAYMENT_TIMEOUT_SECONDS

    async def _request(
        self, method: str, path: str, data: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        if not self.secret_key:
            raise PaymentException("Stripe secret key not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    f"{self.api_base}{path}",
                    data=data,
                    headers={"Authorization": f"Bearer {self.secret_key}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Stripe request {method} {path} failed: {e}")
            raise PaymentException("Payment provider unreachable") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            message = (body.get("error") or {}).get("message") or "Payment provider error"
            logger.error(f"Stripe error {response.status_code} on {path}: {message}")
            raise PaymentException(message, details={"provider_status": response.status_code})
        return body

    async def create_payment_intent(self, booking: Booking, description: str) -> PaymentHandle:
        body = await self._request(
            "POST",
            "/payment_intents",
            data={
                "amount": str(to_minor_units(booking.total_amount)),
                "currency": self.currency,
                "metadata[booking_id]": str(booking.id),
                "description": description,
            },
        )
        return PaymentHandle(payment_id=body["id"], client_secret=body["client_secret"])

    async def retrieve_payment_intent(self, payment_id: str) -> PaymentStatus:
        if not PAYMENT_ID.fullmatch(payment_id):
            raise PaymentException("Invalid payment reference", details={"payment_id": payment_id})
        body = await self._request("GET", f"/payment_intents/{payment_id}")
        return PaymentStatus(
            payment_id=body.get("id", payment_id),
            status=body.get("status", "unknown"),
            booking_id=(body.get("metadata") or {}).get("booking_id"),
        )
