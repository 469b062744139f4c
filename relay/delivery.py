import base64
import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import httpx

from relay.config import DeliveryMode, Settings
from relay.errors import DeliveryError
from relay.schemas import ForwardEnvelope, PendingPaymentRecord
from relay.signature import FORWARD_SIGNATURE_HEADER, compute_signature
from relay.store import PendingQueueStore

logger = logging.getLogger(__name__)

_HTML_MARKERS = ("<!doctype", "<html")

STORED = "stored"
FORWARDED = "forwarded"
DUPLICATE = "duplicate"


@runtime_checkable
class Delivery(Protocol):
    mode: DeliveryMode

    def deliver(self, tx_ref: str, verification_data: dict[str, Any]) -> str:
        """Hand off a verified payment. Returns the outcome reported to the processor."""
        ...


def canonical_json(data: dict) -> bytes:
    """Serialize with sorted keys and no insignificant whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def looks_like_html(resp: httpx.Response) -> bool:
    """Heuristic for an interstitial challenge page served instead of JSON."""
    if "text/html" in resp.headers.get("content-type", "").lower():
        return True
    head = resp.text[:2048].lstrip().lower()
    return head.startswith(_HTML_MARKERS) or "<html" in head


class QueueDelivery:
    """Persist the verified payment for the consumer to poll."""

    mode = DeliveryMode.QUEUE

    def __init__(self, store: PendingQueueStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def deliver(self, tx_ref: str, verification_data: dict[str, Any]) -> str:
        record = PendingPaymentRecord(
            tx_ref=tx_ref,
            verification_data=verification_data,
            verified_at=int(self.clock()),
        )
        if not self.store.put(tx_ref, record):
            return DUPLICATE
        return STORED


class PushDelivery:
    """Forward the verified payment synchronously to the consumer.

    The envelope is signed with the relay->consumer secret. With ``use_get``
    the envelope travels base64-encoded in the query string for consumers whose
    host blocks POST bodies.
    """

    def __init__(
        self,
        client: httpx.Client,
        url: str,
        secret: str,
        use_get: bool = False,
        timeout: httpx.Timeout | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.url = url
        self.secret = secret
        self.use_get = use_get
        self.timeout = timeout or httpx.Timeout(30.0, connect=10.0)
        self.clock = clock

    @property
    def mode(self) -> DeliveryMode:
        return DeliveryMode.PUSH_GET if self.use_get else DeliveryMode.PUSH

    def build_envelope(self, tx_ref: str, verification_data: dict[str, Any]) -> ForwardEnvelope:
        return ForwardEnvelope(
            tx_ref=tx_ref,
            verification_data=verification_data,
            timestamp=int(self.clock()),
        )

    def deliver(self, tx_ref: str, verification_data: dict[str, Any]) -> str:
        envelope = self.build_envelope(tx_ref, verification_data)
        body = canonical_json(envelope.model_dump())
        signature = compute_signature(self.secret, body)

        try:
            if self.use_get:
                params = {
                    "payload": base64.urlsafe_b64encode(body).decode("ascii"),
                    "signature": signature,
                }
                resp = self.client.get(self.url, params=params, timeout=self.timeout)
            else:
                headers = {
                    "Content-Type": "application/json",
                    FORWARD_SIGNATURE_HEADER: signature,
                }
                resp = self.client.post(
                    self.url, content=body, headers=headers, timeout=self.timeout
                )
        except httpx.HTTPError as exc:
            logger.error("Delivery of %s failed: %s", tx_ref, exc)
            raise DeliveryError(f"Consumer unreachable: {exc}")

        self._check_response(tx_ref, resp)
        logger.info("Forwarded %s to consumer (%s)", tx_ref, self.mode.value)
        return FORWARDED

    @staticmethod
    def _check_response(tx_ref: str, resp: httpx.Response) -> None:
        if looks_like_html(resp):
            logger.error("Delivery of %s got an HTML page (HTTP %d)", tx_ref, resp.status_code)
            raise DeliveryError("Consumer returned HTML")

        if resp.status_code != 200:
            logger.error("Delivery of %s rejected: HTTP %d", tx_ref, resp.status_code)
            raise DeliveryError(f"Consumer returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError:
            logger.error("Delivery of %s got a non-JSON response", tx_ref)
            raise DeliveryError("Consumer returned non-JSON response")

        if not isinstance(data, dict) or data.get("success") is not True:
            logger.error("Delivery of %s not acknowledged by consumer: %r", tx_ref, data)
            raise DeliveryError("Consumer did not acknowledge payment")


def build_delivery(
    settings: Settings,
    store: PendingQueueStore,
    client: httpx.Client,
    clock: Callable[[], float] = time.time,
) -> Delivery:
    """Return the delivery strategy selected by settings.delivery_mode."""
    if settings.delivery_mode is DeliveryMode.QUEUE:
        return QueueDelivery(store, clock=clock)
    return PushDelivery(
        client,
        url=settings.consumer_url,
        secret=settings.consumer_secret,
        use_get=settings.delivery_mode is DeliveryMode.PUSH_GET,
        timeout=httpx.Timeout(settings.request_timeout, connect=settings.connect_timeout),
        clock=clock,
    )
