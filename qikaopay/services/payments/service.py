"""Payment initiation and status logic.

`PaymentService` wires the gateway client, intent store, callback receiver and
status reader together. The HTTP layer in `main.py` only translates its errors
into status codes.
"""

import math
import re
from typing import Protocol

from qikaopay.common.config import CommonSettings
from qikaopay.common.errors import ConfigurationError, DuplicateIntent, GatewayError, IntentNotFound, ValidationError
from qikaopay.common.logging import correlation_id_ctx, logger
from qikaopay.common.metrics import status_queries_total, stk_push_latency_seconds, stk_push_requests_total
from qikaopay.common.state_machine import PENDING
from qikaopay.services.payments.callbacks import CallbackReceiver
from qikaopay.services.payments.gateway import normalize_msisdn
from qikaopay.services.payments.schemas import (
    InitiationResult,
    IntentEvent,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    StatusView,
)
from qikaopay.services.payments.store import IntentStore

PHONE_PATTERN = re.compile(r"^(?:\+?254|0)[17]\d{8}$")


class GatewayClient(Protocol):
    async def initiate(self, phone: str, amount, reference: str, description: str) -> InitiationResult: ...


def validate_phone(phone: str) -> str:
    """Return the whitespace-stripped phone, or raise `ValidationError`."""

    compact = re.sub(r"\s+", "", phone or "")
    if not PHONE_PATTERN.match(compact):
        raise ValidationError("Invalid phone number format")
    return compact


def validate_amount(amount) -> int:
    """Return the whole-shilling amount the vendor will be asked for."""

    try:
        value = float(amount)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Invalid amount") from exc
    if not math.isfinite(value) or value <= 0:
        raise ValidationError("Invalid amount")
    # The vendor only takes whole shillings; never round a cart total.
    if not value.is_integer():
        raise ValidationError("Amount must be a whole number of shillings")
    return int(value)


class StatusQueryService:
    """Read-only view of intents for polling clients."""

    def __init__(self, store: IntentStore, service_name: str = "qikaopay") -> None:
        self.store = store
        self.service_name = service_name

    def query(self, correlation_id: str) -> StatusView:
        # Unknown ids may simply not be recorded yet; report them as pending.
        try:
            intent = self.store.get(correlation_id)
        except IntentNotFound:
            view = StatusView(status=PENDING)
        else:
            view = StatusView(status=intent.status, detail=intent.detail)
        status_queries_total.labels(service=self.service_name, status=view.status).inc()
        return view


class PaymentService:
    """Entry point for initiate / callback / status operations."""

    def __init__(self, config: CommonSettings, store: IntentStore, gateway: GatewayClient) -> None:
        self.config = config
        self.store = store
        self.gateway = gateway
        self.service_name = config.service_name
        self.callbacks = CallbackReceiver(store, service_name=self.service_name)
        self.status = StatusQueryService(store, service_name=self.service_name)

    async def initiate(self, req: PaymentInitiateRequest) -> PaymentInitiateResponse:
        """Submit an STK push and record a PENDING intent for its correlation id.

        Nothing is recorded when validation or the gateway call fails.
        """

        phone = validate_phone(req.phone)
        amount = validate_amount(req.amount)
        reference = req.reference or self.config.default_account_reference
        description = req.description or self.config.default_transaction_desc

        try:
            with stk_push_latency_seconds.labels(service=self.service_name).time():
                result = await self.gateway.initiate(phone, amount, reference, description)
        except ConfigurationError:
            stk_push_requests_total.labels(service=self.service_name, outcome="not_configured").inc()
            raise
        except GatewayError:
            stk_push_requests_total.labels(service=self.service_name, outcome="gateway_error").inc()
            raise
        except Exception:
            stk_push_requests_total.labels(service=self.service_name, outcome="error").inc()
            raise

        token = correlation_id_ctx.set(result.correlation_id)
        try:
            try:
                self.store.create(
                    result.correlation_id,
                    phone=normalize_msisdn(phone),
                    amount=amount,
                    reference=reference,
                    merchant_request_id=result.merchant_request_id,
                )
            except DuplicateIntent:
                logger.info("intent already recorded correlation_id=%s", result.correlation_id)
            stk_push_requests_total.labels(service=self.service_name, outcome="accepted").inc()
            logger.info("stk push accepted correlation_id=%s amount=%s", result.correlation_id, amount)
        finally:
            correlation_id_ctx.reset(token)

        return PaymentInitiateResponse(
            correlation_id=result.correlation_id,
            merchant_request_id=result.merchant_request_id,
            customer_message=result.customer_message,
        )

    def history(self, correlation_id: str) -> list[IntentEvent]:
        return self.store.history(correlation_id)
