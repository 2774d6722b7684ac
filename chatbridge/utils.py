"""
Utility functions for the bridge API.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone

from chatbridge.errors import ValidationError

logger = logging.getLogger(__name__)


def sign_body(body: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of ``body``, as sent in the X-Signature header."""
    return hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Body length: {len(body)} bytes, signature: {signature[:8]}...")

    expected_signature = sign_body(body, secret)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def utc_now_iso() -> str:
    """Current server time as ISO-8601 UTC with microseconds (sortable as text)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def require_non_empty(**fields) -> None:
    """
    Raise ValidationError naming every field that is missing or blank.

    Example:
        require_non_empty(text=text, originUserId=user_id)
    """
    missing = [
        name for name, value in fields.items()
        if not isinstance(value, str) or not value.strip()
    ]
    if missing:
        raise ValidationError(
            f"missing or empty required fields: {', '.join(missing)}",
            fields=missing,
        )
