import logging
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from relay.errors import (
    VerifyBadStatusError,
    VerifyNotSuccessfulError,
    VerifyRefMismatchError,
    VerifyTransportError,
)
from relay.schemas import VerificationResult

logger = logging.getLogger(__name__)


class PaymentVerifier:
    """Re-confirms a transaction with the processor's verify-payment API."""

    def __init__(
        self,
        client: httpx.Client,
        base_url: str,
        secret_key: str,
        timeout: httpx.Timeout | None = None,
    ):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout or httpx.Timeout(30.0, connect=10.0)

    def verify(self, tx_ref: str) -> VerificationResult:
        """Return the processor's view of tx_ref, only if it confirms success.

        Raises:
            VerifyTransportError: Connection failure or timeout. Retryable.
            VerifyBadStatusError: The API answered with a non-200 status.
            VerifyNotSuccessfulError: The body is unreadable or either status
                field is not "success".
            VerifyRefMismatchError: The API describes a different transaction.
        """
        url = f"{self.base_url}/verify-payment/{quote(tx_ref, safe='')}"
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.secret_key}",
        }

        try:
            resp = self.client.get(url, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            logger.error("Verification timed out for %s: %s", tx_ref, exc)
            raise VerifyTransportError("Verification timed out")
        except httpx.HTTPError as exc:
            logger.error("Verification request failed for %s: %s", tx_ref, exc)
            raise VerifyTransportError(str(exc))

        if resp.status_code != 200:
            logger.error("Verification failed for %s: HTTP %d", tx_ref, resp.status_code)
            raise VerifyBadStatusError(resp.status_code)

        try:
            result = VerificationResult.model_validate(resp.json())
        except (ValueError, ValidationError):
            logger.error("Verification for %s returned an unreadable body", tx_ref)
            raise VerifyNotSuccessfulError("Unreadable verification response")

        if not result.is_successful:
            logger.error(
                "Verification unsuccessful for %s: status=%s data.status=%s",
                tx_ref,
                result.status,
                result.data.status if result.data else None,
            )
            raise VerifyNotSuccessfulError()

        if result.data.tx_ref != tx_ref:
            logger.error(
                "Verification tx_ref mismatch: requested %s, got %r",
                tx_ref,
                result.data.tx_ref,
            )
            raise VerifyRefMismatchError(tx_ref, result.data.tx_ref)

        logger.info("Verified: %s", tx_ref)
        return result
