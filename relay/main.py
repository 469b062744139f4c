import logging
import time
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime
from zoneinfo import ZoneInfo

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from relay.config import DeliveryMode, Settings
from relay.delivery import build_delivery
from relay.errors import RelayError, VerifyError
from relay.pipeline import WebhookPipeline
from relay.signature import verify_poll_token
from relay.store import PendingQueueStore
from relay.verifier import PaymentVerifier

logger = logging.getLogger(__name__)

WEBHOOK_ACTION = "webhook"
POLL_ACTION = "get_pending"
ACK_ACTIONS = ("mark_done", "mark_processed")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def error_response(exc: RelayError) -> JSONResponse:
    """Translate a relay error into its public HTTP response."""
    if isinstance(exc, VerifyError) and not exc.retryable:
        # Terminal: acknowledge so the processor stops retrying.
        return JSONResponse(
            status_code=200, content={"status": "rejected", "error": exc.message}
        )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def create_app(
    settings: Settings | None = None,
    http_client: httpx.Client | None = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    settings = settings or Settings()
    owns_client = http_client is None
    client = http_client or httpx.Client(
        timeout=httpx.Timeout(settings.request_timeout, connect=settings.connect_timeout)
    )
    tz = ZoneInfo(settings.timezone)

    store = PendingQueueStore(settings.pending_dir, settings.processed_dir, clock=clock)
    verifier = None
    if settings.verify_payments:
        verifier = PaymentVerifier(
            client,
            base_url=settings.processor_base_url,
            secret_key=settings.processor_secret_key,
            timeout=httpx.Timeout(settings.request_timeout, connect=settings.connect_timeout),
        )
    pipeline = WebhookPipeline(
        settings,
        delivery=build_delivery(settings, store, client, clock=clock),
        verifier=verifier,
        store=store,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logger.info(
            "Relay started: delivery_mode=%s verify_payments=%s",
            settings.delivery_mode.value,
            settings.verify_payments,
        )
        yield
        if owns_client:
            client.close()

    application = FastAPI(title="Payment Webhook Relay", lifespan=lifespan)
    application.state.settings = settings
    application.state.store = store
    application.state.pipeline = pipeline

    def now() -> datetime:
        return datetime.fromtimestamp(clock(), tz)

    @application.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal error"})

    @application.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "delivery_mode": settings.delivery_mode.value,
            "verify_payments": settings.verify_payments,
        }

    @application.api_route("/", methods=["GET", "POST"])
    async def dispatch(request: Request, action: str = WEBHOOK_ACTION) -> Response:
        if action == WEBHOOK_ACTION:
            return await receive_webhook(request)
        if action == POLL_ACTION:
            return await get_pending(request)
        if action in ACK_ACTIONS:
            return await mark_processed(request)
        return JSONResponse(status_code=404, content={"error": "Unknown action"})

    async def receive_webhook(request: Request) -> Response:
        if request.method != "POST":
            return JSONResponse(status_code=405, content={"error": "Method not allowed"})

        body = await request.body()
        if len(body) > settings.max_body_size:
            return JSONResponse(status_code=413, content={"error": "Payload too large"})

        try:
            result = await run_in_threadpool(pipeline.handle, body, request.headers)
        except RelayError as exc:
            logger.warning("Webhook not processed: %s", exc.detail)
            return error_response(exc)
        return JSONResponse(status_code=result.status_code, content=result.content)

    async def get_pending(request: Request) -> Response:
        try:
            verify_poll_token(
                settings.poll_secret,
                request.query_params.get("token"),
                now(),
                settings.token_bucket_format,
            )
        except RelayError as exc:
            return error_response(exc)

        records = await run_in_threadpool(store.list, True)
        payments = [r.model_dump() for r in records]
        logger.info("Sent %d pending payment(s)", len(payments))
        return JSONResponse(content={"payments": payments, "count": len(payments)})

    async def mark_processed(request: Request) -> Response:
        if request.method != "POST":
            return JSONResponse(status_code=405, content={"error": "Method not allowed"})

        fields = await _read_fields(request)
        try:
            verify_poll_token(
                settings.poll_secret,
                fields.get("token"),
                now(),
                settings.token_bucket_format,
            )
        except RelayError as exc:
            return error_response(exc)

        tx_ref = fields.get("tx_ref")
        if not tx_ref or not isinstance(tx_ref, str):
            return JSONResponse(status_code=400, content={"error": "Missing tx_ref"})

        try:
            await run_in_threadpool(store.ack, tx_ref)
        except RelayError as exc:
            logger.warning("Ack failed for %s: %s", tx_ref, exc.detail)
            return error_response(exc)
        return JSONResponse(content={"success": True})

    return application


async def _read_fields(request: Request) -> dict:
    """Read token/tx_ref from a form post or a JSON object body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def run() -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    if settings.delivery_mode is not DeliveryMode.QUEUE and settings.verify_payments is False:
        logger.warning("Forwarding unverified payments to %s", settings.consumer_url)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
