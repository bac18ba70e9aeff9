"""
Utility functions for the chat API.
"""

import hmac
import hashlib
import logging

logger = logging.getLogger(__name__)


def compute_hmac_signature(body: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of ``body`` keyed with ``secret``."""
    return hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature of a signed trigger request.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: PUBLISHER_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature, body length: {len(body)} bytes")

    expected_signature = compute_hmac_signature(body, secret)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
