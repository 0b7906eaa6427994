import hashlib
import hmac


def verify_hmac_signature(body: bytes, received_sig: str, secret: str, algorithm=hashlib.sha256) -> bool:
    """HMAC of the raw request body, hex encoded, compared in constant time."""
    if not secret:
        return False
    expected = hmac.new(secret.encode(), body, algorithm).hexdigest()
    return hmac.compare_digest(expected, (received_sig or "").strip())
