"""Domain records and API request/response schemas for payment endpoints."""

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class PaymentIntent(BaseModel):
    """Snapshot of one in-flight or completed payment attempt."""

    model_config = ConfigDict(frozen=True)

    correlation_id: str
    status: str
    detail: dict[str, Any] | None = None
    merchant_request_id: str | None = None
    phone: str | None = None
    amount: int | None = None
    reference: str | None = None
    created_at: datetime
    updated_at: datetime


class IntentEvent(BaseModel):
    """One audit row: a create or a transition attempt, applied or ignored."""

    model_config = ConfigDict(frozen=True)

    correlation_id: str
    from_state: str | None
    to_state: str
    reason: str
    applied: bool
    detail: dict[str, Any] | None = None
    created_at: datetime


class CallbackItem(BaseModel):
    name: str
    value: Any


class StkCallback(BaseModel):
    """Decoded `stkCallback` envelope from the vendor."""

    correlation_id: str
    merchant_request_id: str | None = None
    result_code: int
    result_desc: str = ""
    items: list[CallbackItem] = Field(default_factory=list)


class InitiationResult(BaseModel):
    """What the gateway hands back after a successful STK push submission."""

    correlation_id: str
    merchant_request_id: str | None = None
    response_description: str | None = None
    customer_message: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class StatusView(BaseModel):
    status: str
    detail: dict[str, Any] | None = None


class PaymentInitiateRequest(BaseModel):
    """Payload accepted by `POST /payments/initiate`."""

    phone: str
    amount: float
    reference: str | None = Field(
        default=None,
        validation_alias=AliasChoices("reference", "accountRef", "accountReference"),
    )
    description: str | None = None


class PaymentInitiateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    correlation_id: str = Field(serialization_alias="correlationId")
    merchant_request_id: str | None = Field(default=None, serialization_alias="merchantRequestId")
    customer_message: str | None = Field(default=None, serialization_alias="customerMessage")


class CallbackAck(BaseModel):
    """Acknowledgment body the vendor expects regardless of processing outcome."""

    ResultCode: int = 0
    ResultDesc: str = "Received"


class IntentEventResponse(BaseModel):
    from_state: str | None
    to_state: str
    reason: str
    applied: bool
    detail: dict[str, Any] | None = None
    created_at: datetime


class IntentHistoryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    correlation_id: str = Field(serialization_alias="correlationId")
    status: str
    events: list[IntentEventResponse]
