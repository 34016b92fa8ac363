"""Payment Gateway client - order creation for EMR purchases.

Creates gateway orders over HTTPS (Razorpay Orders API shape):
    POST {RAZORPAY_API_BASE}/orders  {amount (paise), currency, receipt, notes}
authenticated with the key id / key secret pair.

Each call has a hard timeout. Timeouts, connection errors and 5xx responses
raise PaymentGatewayUnavailable so the caller can retry with backoff; a 4xx
is a rejected request and is raised as-is without retry.
"""
import aiohttp
import asyncio
import logging
import os
from typing import Any, Dict, Optional

from services.entitlement_errors import PaymentGatewayUnavailable

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.razorpay.com/v1"
REQUEST_TIMEOUT_SECONDS = float(os.getenv("RAZORPAY_TIMEOUT_SECONDS", "10"))


class PaymentGatewayRejected(Exception):
    """Gateway refused the order (4xx). Not retryable."""
    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"Gateway rejected order: HTTP {status}: {body[:200]}")


class PaymentGateway:
    """Thin async client for the gateway's order endpoint."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.key_id = key_id if key_id is not None else os.getenv("RAZORPAY_KEY_ID", "")
        self._key_secret = key_secret if key_secret is not None else os.getenv("RAZORPAY_KEY_SECRET", "")
        self.api_base = (api_base or os.getenv("RAZORPAY_API_BASE", DEFAULT_API_BASE)).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Create a gateway order and return its id.

        Args:
            amount: Amount in whole rupees (converted to paise here)
            currency: ISO currency code
            receipt: Our reference, unique per order attempt
            metadata: Notes stored on the order (clinic_id, plan, type, ...)
        """
        if not self.key_id or not self._key_secret:
            raise ValueError("RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET are not set. Configure env and restart.")

        payload = {
            "amount": int(amount) * 100,
            "currency": currency,
            "receipt": receipt[:40],
            "notes": {k: str(v) for k, v in (metadata or {}).items()},
        }
        data = await self._post("/orders", payload)
        order_id = data.get("id")
        if not order_id:
            raise PaymentGatewayUnavailable(f"Gateway response missing order id for receipt {receipt}")
        logger.info("Gateway order created: order_id=%s receipt=%s amount=%s", order_id, receipt, amount)
        return order_id

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        auth = aiohttp.BasicAuth(self.key_id, self._key_secret)
        url = f"{self.api_base}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout, auth=auth) as session:
                async with session.post(url, json=payload) as response:
                    if response.status >= 500:
                        body = await response.text()
                        raise PaymentGatewayUnavailable(f"Gateway HTTP {response.status}: {body[:200]}")
                    if response.status >= 400:
                        raise PaymentGatewayRejected(response.status, await response.text())
                    return await response.json()
        except asyncio.TimeoutError:
            logger.error("Gateway request timed out after %ss: %s", self.timeout.total, url)
            raise PaymentGatewayUnavailable(f"Gateway timed out after {self.timeout.total}s")
        except aiohttp.ClientError as e:
            logger.error("Gateway connection error: %s", e)
            raise PaymentGatewayUnavailable(f"Gateway connection error: {e}")
