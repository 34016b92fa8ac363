"""Payment callback signature verification.

The gateway signs every successful checkout with
HMAC-SHA256(key_secret, "<order_id>|<payment_id>") as a hex digest. The same
scheme covers subscription, upgrade and renewal orders, so verification never
branches on purchase kind.
"""
import hashlib
import hmac
import os
from typing import Optional


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    body = f"{order_id}|{payment_id}"
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


class PaymentVerifier:
    """Stateless check of (order_id, payment_id, signature) against a server-held secret."""

    def __init__(self, secret: Optional[str] = None):
        self._secret = secret if secret is not None else os.getenv("RAZORPAY_KEY_SECRET", "")

    def expected_signature(self, order_id: str, payment_id: str) -> str:
        return compute_signature(self._secret, order_id, payment_id)

    def verify(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not self._secret or not order_id or not payment_id or not signature:
            return False
        expected = self.expected_signature(order_id, payment_id)
        # Constant-time comparison
        return hmac.compare_digest(expected.encode(), signature.encode())
