import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from relay.config import DeliveryMode, Settings
from relay.delivery import DUPLICATE, Delivery
from relay.parser import parse_notification
from relay.signature import get_header, verify_signature
from relay.store import PendingQueueStore
from relay.verifier import PaymentVerifier

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    status_code: int
    content: dict[str, Any] = field(default_factory=dict)


class WebhookPipeline:
    """Authenticate -> parse -> (verify) -> deliver, for one inbound webhook.

    Failures are raised as ``RelayError`` subclasses and translated into an
    HTTP response by the caller. Nothing is written or forwarded unless every
    earlier stage succeeded.
    """

    def __init__(
        self,
        settings: Settings,
        delivery: Delivery,
        verifier: PaymentVerifier | None = None,
        store: PendingQueueStore | None = None,
    ):
        self.settings = settings
        self.delivery = delivery
        self.verifier = verifier
        self.store = store

    def handle(self, body: bytes, headers: Mapping[str, str]) -> PipelineResult:
        signature = get_header(headers, self.settings.signature_header)
        verify_signature(self.settings.webhook_secret, signature, body)

        notification = parse_notification(body)
        tx_ref = notification.tx_ref

        if not notification.is_successful:
            logger.info("Ignoring non-success payment: %s (status: %s)", tx_ref, notification.status)
            return PipelineResult(200, {"status": "ignored", "tx_ref": tx_ref})

        if self._already_acknowledged(tx_ref):
            logger.info("Duplicate webhook for acknowledged payment: %s", tx_ref)
            return self._duplicate(tx_ref)

        if self.verifier is not None:
            result = self.verifier.verify(tx_ref)
            verification_data = result.data.model_dump()
        else:
            verification_data = notification.model_dump()

        outcome = self.delivery.deliver(tx_ref, verification_data)
        if outcome == DUPLICATE:
            # acknowledged while verification was in flight
            logger.info("Payment acknowledged during verification: %s", tx_ref)
            return self._duplicate(tx_ref)
        return PipelineResult(200, {"status": outcome, "tx_ref": tx_ref})

    @staticmethod
    def _duplicate(tx_ref: str) -> PipelineResult:
        return PipelineResult(200, {"status": DUPLICATE, "tx_ref": tx_ref, "idempotent": True})

    def _already_acknowledged(self, tx_ref: str) -> bool:
        if self.store is None or self.settings.delivery_mode is not DeliveryMode.QUEUE:
            return False
        return self.store.is_archived(tx_ref)
