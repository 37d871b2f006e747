"""
Billing webhook signature verification.

Header format: ``Billing-Signature: t=<unix seconds>,v1=<hex digest>`` where
the digest is HMAC-SHA256 over ``"<t>.<raw body>"``. Several ``v1`` entries
may be present while the sender rotates secrets.
"""

import hashlib
import hmac
import time

from api.v1.core.exceptions import UnauthorizedError

SIGNATURE_HEADER = "Billing-Signature"


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    message = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(
    body: bytes,
    header: str | None,
    secret: str,
    tolerance_s: int,
    now: float | None = None,
) -> None:
    """Raise UnauthorizedError unless ``header`` signs ``body``."""
    if not header:
        raise UnauthorizedError("Missing webhook signature")

    timestamp: int | None = None
    candidates: list[str] = []
    for part in header.split(","):
        name, _, value = part.strip().partition("=")
        if name == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise UnauthorizedError("Malformed webhook signature") from None
        elif name == "v1" and value:
            candidates.append(value)

    if timestamp is None or not candidates:
        raise UnauthorizedError("Malformed webhook signature")

    current = time.time() if now is None else now
    if tolerance_s and abs(current - timestamp) > tolerance_s:
        raise UnauthorizedError(
            "Webhook signature timestamp outside tolerance",
            details={"tolerance_s": tolerance_s},
        )

    expected = compute_signature(secret, timestamp, body)
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise UnauthorizedError("Invalid webhook signature")
