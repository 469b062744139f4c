from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator

UNKNOWN_STATUS = "unknown"
SUCCESS_STATUS = "success"


def _coerce_status(v: Any) -> str:
    if v is None:
        return UNKNOWN_STATUS
    return v if isinstance(v, str) else str(v)


class PaymentNotification(BaseModel):
    """Inbound processor notification. Extra processor fields are kept."""

    model_config = ConfigDict(extra="allow")

    tx_ref: StrictStr = Field(..., min_length=1)
    status: str = UNKNOWN_STATUS

    @field_validator("status", mode="before")
    @classmethod
    def status_defaults_to_unknown(cls, v: Any) -> str:
        return _coerce_status(v)

    @property
    def is_successful(self) -> bool:
        return self.status == SUCCESS_STATUS


class VerifiedTransaction(BaseModel):
    model_config = ConfigDict(extra="allow")

    tx_ref: Any = None
    status: str = UNKNOWN_STATUS

    @field_validator("status", mode="before")
    @classmethod
    def status_defaults_to_unknown(cls, v: Any) -> str:
        return _coerce_status(v)


class VerificationResult(BaseModel):
    """Body returned by the processor's verify-payment endpoint."""

    model_config = ConfigDict(extra="allow")

    status: str = UNKNOWN_STATUS
    message: Any = None
    data: VerifiedTransaction | None = None

    @field_validator("status", mode="before")
    @classmethod
    def status_defaults_to_unknown(cls, v: Any) -> str:
        return _coerce_status(v)

    @property
    def is_successful(self) -> bool:
        return (
            self.status == SUCCESS_STATUS
            and self.data is not None
            and self.data.status == SUCCESS_STATUS
        )


class PendingPaymentRecord(BaseModel):
    tx_ref: StrictStr = Field(..., min_length=1)
    verification_data: dict[str, Any]
    verified_at: int
    processed: bool = False
    processed_at: int | None = None


class ForwardEnvelope(BaseModel):
    """Payload pushed to the downstream consumer."""

    tx_ref: StrictStr
    verification_data: dict[str, Any]
    timestamp: int
