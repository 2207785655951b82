import hashlib
import hmac
import logging

from .models import GatewayNotification

logger = logging.getLogger(__name__)


class SignatureVerifier:
    """SHA-512 signature check for gateway notifications.

    The digest input is ``order_id + status_code + gross_amount + secret`` built
    from the literal strings received on the wire. Re-serialising any of them
    (``"100000.00"`` -> ``"100000"``) breaks verification.
    """

    def __init__(self, secret: str):
        self.secret = secret or ""
        if not self.secret:
            logger.warning("Gateway server key is not configured; every webhook signature will be rejected")

    def compute(self, order_id: str, status_code: str, gross_amount: str) -> str:
        digest_input = f"{order_id}{status_code}{gross_amount}{self.secret}"
        return hashlib.sha512(digest_input.encode("utf-8")).hexdigest()

    def verify(self, order_id: str, status_code: str, gross_amount: str, signature: str) -> bool:
        if not self.secret or not signature:
            return False
        expected = self.compute(order_id, status_code, gross_amount)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

    def verify_notification(self, notification: GatewayNotification) -> bool:
        return self.verify(
            notification.order_id,
            notification.status_code,
            notification.gross_amount,
            notification.signature_key,
        )
