"""Pickup tokens printed as QR codes.

A token is ``<orderId>:<millisecondTimestamp>:<hexSignature>`` where the
signature is an HMAC-SHA256 over ``<orderId>:<millisecondTimestamp>``.
Scanning clients depend on this exact layout.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass

from .errors import MalformedTokenError, SignatureMismatchError

SEPARATOR = ":"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PickupClaim:
    order_id: str
    timestamp: int


class TokenCodec:
    """Mint and verify pickup tokens without touching the store.

    ``secret`` is either the key itself or a callable returning it, so the key
    can come from a secret store. Tokens never expire here; staleness is a
    business rule for the caller.
    """

    def __init__(self, secret, clock=_now_ms):
        self._secret = secret if callable(secret) else (lambda: secret)
        self._clock = clock

    def _sign(self, payload: str) -> str:
        key = self._secret()
        if isinstance(key, str):
            key = key.encode("utf-8")
        return hmac.new(key, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def mint(self, order_id: str) -> str:
        if not order_id or SEPARATOR in order_id:
            raise ValueError(f"order id cannot be empty or contain {SEPARATOR!r}: {order_id!r}")
        payload = f"{order_id}{SEPARATOR}{self._clock()}"
        return f"{payload}{SEPARATOR}{self._sign(payload)}"

    def verify(self, token: str) -> PickupClaim:
        parts = token.split(SEPARATOR) if isinstance(token, str) else []
        if len(parts) != 3 or not all(parts):
            raise MalformedTokenError(token)
        order_id, timestamp, signature = parts
        if not (timestamp.isascii() and timestamp.isdigit()):
            raise MalformedTokenError(token)

        expected = self._sign(f"{order_id}{SEPARATOR}{timestamp}")
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            raise SignatureMismatchError(order_id)
        return PickupClaim(order_id=order_id, timestamp=int(timestamp))
