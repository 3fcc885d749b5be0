"""HMAC-SHA256 helpers shared by webhook verification and gateway proofs."""

import hashlib
import hmac


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_matches(secret: str, message: bytes, signature: str | None) -> bool:
    """Constant-time check of a hex signature over `message`."""

    if not signature:
        return False
    expected = hmac_sha256_hex(secret, message)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))
