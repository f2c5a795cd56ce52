"""HMAC-SHA256 webhook signatures.

Providers sign the raw request body with the shared secret and send the hex
digest in their signature header, optionally prefixed with "sha256=".
"""

import hashlib
import hmac
from typing import Optional

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify HMAC signature on an inbound webhook payload.

    Returns False if the signature or the secret is missing. Comparison is
    constant-time.
    """
    if not signature or not secret:
        return False
    candidate = signature.strip()
    if candidate.lower().startswith(SIGNATURE_PREFIX):
        candidate = candidate[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(compute_signature(secret, body), candidate.lower())
