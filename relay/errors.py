"""Error taxonomy for the relay.

Every error carries the HTTP status the request boundary answers with and a
short public message. Nothing else about the failure leaves the process.
"""


class RelayError(Exception):
    """Base class for failures translated into an HTTP response."""

    status_code = 500
    message = "Internal error"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.message)
        self.detail = detail or self.message


# ── Authentication ─────────────────────────────────────────────────────────────

class AuthError(RelayError):
    status_code = 403
    message = "Unauthorized"


class MissingSignatureError(AuthError):
    """No signature header on an inbound webhook."""

    status_code = 400
    message = "Missing signature"


class InvalidSignatureError(AuthError):
    """Signature present but does not match the body."""

    message = "Invalid signature"


class MissingTokenError(AuthError):
    """Poll/ack request without a token."""


class InvalidTokenError(AuthError):
    """Poll/ack token does not match the current time bucket."""


# ── Parsing ────────────────────────────────────────────────────────────────────

class ParseError(RelayError):
    status_code = 400
    message = "Invalid payload"


class InvalidJSONError(ParseError):
    pass


class MissingFieldError(ParseError):
    def __init__(self, field: str):
        super().__init__(f"Missing field: {field}")
        self.field = field


# ── Verification ───────────────────────────────────────────────────────────────

class VerifyError(RelayError):
    """Verification did not confirm the payment.

    Semantic failures are terminal: the relay answers 200 so the processor
    stops retrying. Only transport failures are retryable.
    """

    status_code = 200
    message = "Verification unsuccessful"
    retryable = False


class VerifyTransportError(VerifyError):
    status_code = 500
    message = "Verification failed"
    retryable = True


class VerifyBadStatusError(VerifyError):
    def __init__(self, http_status: int):
        super().__init__(f"Verification API returned HTTP {http_status}")
        self.http_status = http_status


class VerifyNotSuccessfulError(VerifyError):
    pass


class VerifyRefMismatchError(VerifyError):
    def __init__(self, expected: str, actual):
        super().__init__(f"tx_ref mismatch: expected {expected!r}, got {actual!r}")
        self.expected = expected
        self.actual = actual


# ── Delivery ───────────────────────────────────────────────────────────────────

class DeliveryError(RelayError):
    """Consumer unreachable or rejected the forwarded payment."""

    status_code = 500
    message = "Delivery failed"


# ── Queue ──────────────────────────────────────────────────────────────────────

class QueueError(RelayError):
    status_code = 500
    message = "Queue error"


class QueueNotFoundError(QueueError):
    status_code = 404
    message = "Payment not found"

    def __init__(self, tx_ref: str):
        super().__init__(f"No pending payment for tx_ref {tx_ref!r}")
        self.tx_ref = tx_ref
