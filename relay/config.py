"""Environment-driven settings for the payment webhook relay."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings


class DeliveryMode(str, Enum):
    PUSH = "push"
    PUSH_GET = "push_get"
    QUEUE = "queue"


class Settings(BaseSettings):
    """Built once at startup and handed to every component."""

    # processor -> relay
    webhook_secret: str = ""
    signature_header: str = "Signature"
    max_body_size: int = 5 * 1024 * 1024  # 5 MB

    # Verification API
    verify_payments: bool = True
    processor_base_url: str = "https://api.paychangu.com"
    processor_secret_key: str = ""

    # relay -> consumer
    delivery_mode: DeliveryMode = DeliveryMode.QUEUE
    consumer_url: str = ""
    consumer_secret: str = ""

    # poller -> relay
    poll_secret: str = ""
    token_bucket_format: str = "%Y-%m-%d-%H"
    timezone: str = "UTC"

    pending_dir: Path = Path("data/pending")
    processed_dir: Path = Path("data/processed")

    connect_timeout: float = 10.0
    request_timeout: float = 30.0

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_prefix": "RELAY_", "env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _check_delivery_target(self) -> "Settings":
        if self.delivery_mode is not DeliveryMode.QUEUE and not self.consumer_url:
            raise ValueError(
                f"consumer_url is required for delivery_mode={self.delivery_mode.value!r}"
            )
        return self
