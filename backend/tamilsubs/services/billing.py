from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from tamilsubs.core.errors import InvalidSignature, UpstreamFailure
from tamilsubs.core.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayOrder:
    order_id: str
    amount: int
    currency: str
    receipt: str | None = None
    status: str | None = None
    notes: dict[str, Any] = field(default_factory=dict)

    def public(self) -> dict[str, Any]:
        return {
            "id": self.order_id,
            "amount": self.amount,
            "currency": self.currency,
            "receipt": self.receipt,
        }


def compute_payment_signature(secret: str, order_id: str, payment_id: str) -> str:
    return hmac.new(
        key=str(secret).encode("utf-8"),
        msg=f"{order_id}|{payment_id}".encode("utf-8"),
        digestmod=hashlib.sha256,
    ).hexdigest()


def _order_from_payload(data: dict[str, Any]) -> GatewayOrder:
    notes = data.get("notes") or {}
    if not isinstance(notes, dict):
        notes = {}
    return GatewayOrder(
        order_id=str(data.get("id") or ""),
        amount=int(data.get("amount") or 0),
        currency=str(data.get("currency") or ""),
        receipt=(str(data["receipt"]) if data.get("receipt") else None),
        status=(str(data["status"]) if data.get("status") else None),
        notes=notes,
    )


class RazorpayGateway:
    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        api_base: str = "https://api.razorpay.com",
        timeout_s: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._key_id = (key_id or "").strip()
        self._key_secret = (key_secret or "").strip()
        self._api_base = (api_base or "").rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport

    @property
    def key_id(self) -> str:
        return self._key_id

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._api_base,
            auth=(self._key_id, self._key_secret),
            timeout=httpx.Timeout(self._timeout_s),
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, failure: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("billing.request_failed path=%s error=%s", path, type(exc).__name__)
            raise UpstreamFailure("Payment gateway unavailable", provider="razorpay") from exc
        if resp.status_code >= 400:
            logger.warning("billing.gateway_error path=%s status=%s", path, resp.status_code)
            raise UpstreamFailure(failure, provider="razorpay")
        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamFailure("Payment gateway returned an invalid response", provider="razorpay") from exc
        if not isinstance(data, dict):
            raise UpstreamFailure("Payment gateway returned an invalid response", provider="razorpay")
        return data

    async def create_order(
        self,
        *,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> GatewayOrder:
        payload = {
            "amount": int(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        data = await self._request("POST", "/v1/orders", "Failed to create order", json=payload)
        order = _order_from_payload(data)
        if not order.order_id:
            raise UpstreamFailure("Failed to create order", provider="razorpay")
        logger.info("billing.order_created order=%s amount=%s currency=%s", order.order_id, order.amount, order.currency)
        return order

    async def fetch_order(self, order_id: str) -> GatewayOrder:
        data = await self._request("GET", f"/v1/orders/{order_id}", "Failed to confirm payment")
        return _order_from_payload(data)

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str | None) -> None:
        sig = (signature or "").strip()
        if not sig:
            raise InvalidSignature("Missing Razorpay confirmation data")
        expected = compute_payment_signature(self._key_secret, order_id, payment_id)
        if not hmac.compare_digest(expected.encode("utf-8"), sig.encode("utf-8")):
            logger.warning("billing.signature_mismatch order=%s", order_id)
            raise InvalidSignature("Invalid signature")


def gateway_from_settings() -> RazorpayGateway:
    return RazorpayGateway(
        key_id=settings.razorpay_key_id or "",
        key_secret=settings.razorpay_key_secret or "",
        api_base=settings.razorpay_api_base,
    )
