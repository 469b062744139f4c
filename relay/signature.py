import hashlib
import hmac
import logging
from collections.abc import Mapping
from datetime import datetime

from relay.errors import (
    InvalidSignatureError,
    InvalidTokenError,
    MissingSignatureError,
    MissingTokenError,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Signature"
FORWARD_SIGNATURE_HEADER = "X-Webhook-Signature"
DEFAULT_BUCKET_FORMAT = "%Y-%m-%d-%H"


def get_header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup. Intermediary hosts rewrite header casing."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def compute_signature(secret: str, body: bytes) -> str:
    """Compute hex HMAC-SHA256 of body under secret."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, signature: str | None, body: bytes) -> bool:
    """
    Verify an inbound webhook signature.

    Args:
        secret: Shared processor webhook secret.
        signature: Value of the signature header, or None if absent.
        body: Raw request body bytes.

    Returns:
        True if the signature matches.

    Raises:
        MissingSignatureError: If the signature is missing or empty.
        InvalidSignatureError: If the signature does not match, or no secret
            is configured.
    """
    if not signature:
        logger.warning("Rejected webhook: missing signature")
        raise MissingSignatureError()

    if not secret:
        logger.warning("Webhook secret not configured; rejecting webhook")
        raise InvalidSignatureError()

    expected = compute_signature(secret, body)
    if not hmac.compare_digest(expected.encode(), signature.encode()):
        logger.warning("Rejected webhook: invalid signature")
        raise InvalidSignatureError()

    return True


def time_bucket(now: datetime, fmt: str = DEFAULT_BUCKET_FORMAT) -> str:
    """Render the time bucket a poll token is derived from."""
    return now.strftime(fmt)


def compute_poll_token(secret: str, bucket: str) -> str:
    return compute_signature(secret, bucket.encode())


def verify_poll_token(
    secret: str,
    token: str | None,
    now: datetime,
    fmt: str = DEFAULT_BUCKET_FORMAT,
) -> bool:
    """
    Verify a poll/ack token against the current time bucket.

    The token is HMAC-SHA256(secret, bucket) so it stays valid for the whole
    bucket (one hour with the default format) without any stored state.

    Raises:
        MissingTokenError: If the token is missing or empty.
        InvalidTokenError: If the token does not match, or no secret is configured.
    """
    if not token:
        logger.warning("Rejected poll request: missing token")
        raise MissingTokenError()

    if not secret:
        logger.warning("Poll secret not configured; rejecting poll request")
        raise InvalidTokenError()

    expected = compute_poll_token(secret, time_bucket(now, fmt))
    if not hmac.compare_digest(expected.encode(), token.encode()):
        logger.warning("Rejected poll request: invalid token")
        raise InvalidTokenError()

    return True
