import json
import logging

from pydantic import ValidationError

from relay.errors import InvalidJSONError, MissingFieldError
from relay.schemas import PaymentNotification

logger = logging.getLogger(__name__)


def parse_notification(body: bytes) -> PaymentNotification:
    """
    Decode and validate a processor webhook body.

    Every successfully parsed notification is logged before any business
    decision so the audit trail also covers payments that are later ignored.

    Raises:
        InvalidJSONError: Body is empty, not UTF-8, not JSON, or not an object.
        MissingFieldError: tx_ref is absent, empty, or not a string.
    """
    if not body:
        raise InvalidJSONError("Empty body")
    try:
        raw = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError, ValueError):
        logger.warning("Rejected webhook: body is not valid JSON")
        raise InvalidJSONError("Invalid JSON")

    if not isinstance(raw, dict):
        logger.warning("Rejected webhook: expected a JSON object, got %s", type(raw).__name__)
        raise InvalidJSONError("Expected JSON object")

    tx_ref = raw.get("tx_ref")
    if not isinstance(tx_ref, str) or not tx_ref:
        logger.warning("Rejected webhook: missing tx_ref")
        raise MissingFieldError("tx_ref")

    try:
        notification = PaymentNotification.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Rejected webhook %s: %s", tx_ref, exc)
        raise InvalidJSONError("Invalid payload")

    logger.info(
        "Webhook received: tx_ref=%s status=%s",
        notification.tx_ref,
        notification.status,
    )
    return notification
