"""HTTP surface for payment initiation, vendor callbacks and status polling."""

from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from qikaopay.common.config import CommonSettings, settings
from qikaopay.common.errors import ConfigurationError, GatewayError, IntentNotFound, ValidationError
from qikaopay.common.logging import configure_logging, logger, request_id_ctx
from qikaopay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from qikaopay.common.startup import log_startup_config, warn_missing_gateway_config
from qikaopay.common.tracing import instrument_app, setup_tracing
from qikaopay.services.payments.gateway import DarajaGateway
from qikaopay.services.payments.schemas import (
    CallbackAck,
    IntentEventResponse,
    IntentHistoryResponse,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    StatusView,
)
from qikaopay.services.payments.service import PaymentService
from qikaopay.services.payments.store import build_store


def build_service(config: CommonSettings) -> PaymentService:
    """Wire the store and gateway client chosen by configuration."""

    return PaymentService(config, build_store(config), DarajaGateway(config))


def create_app(service: PaymentService) -> FastAPI:
    """Build the FastAPI app around one explicitly constructed service."""

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Close the gateway HTTP client with the app lifecycle."""

        yield
        aclose = getattr(service.gateway, "aclose", None)
        if aclose is not None:
            await aclose()

    app = FastAPI(title="Qikao Grill Payments", lifespan=lifespan)
    app.state.payments = service
    instrument_app(app)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=service.config.cors_origin_list,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        token = request_id_ctx.set(request.headers.get("x-request-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            request_id_ctx.reset(token)
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=service.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=service.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.post("/payments/initiate", response_model=PaymentInitiateResponse)
    async def initiate_payment(req: PaymentInitiateRequest):
        """Send an STK push for the cart total and record a PENDING intent."""

        try:
            return await service.initiate(req)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ConfigurationError as exc:
            logger.error("initiate rejected: %s", exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        except GatewayError as exc:
            raise HTTPException(
                status_code=502,
                detail={"error": str(exc), "detail": jsonable_encoder(exc.detail)},
            ) from exc

    @app.post("/payments/callback", response_model=CallbackAck)
    async def payment_callback(request: Request):
        """Vendor webhook; always acknowledged so the vendor does not retry."""

        try:
            payload = await request.json()
        except ValueError as exc:
            logger.warning("callback body is not JSON: %s", exc)
            payload = None
        return service.callbacks.receive(payload)

    @app.get("/payments/status", response_model=StatusView)
    def payment_status(correlationId: str | None = None, checkoutId: str | None = None):
        """Current status for one correlation id; unknown ids read as PENDING."""

        correlation_id = correlationId or checkoutId
        if not correlation_id:
            raise HTTPException(status_code=400, detail="correlationId required")
        return service.status.query(correlation_id)

    @app.get("/payments/{correlation_id}/history", response_model=IntentHistoryResponse)
    def payment_history(correlation_id: str):
        """Audit timeline of one intent, including ignored callbacks."""

        try:
            intent = service.store.get(correlation_id)
            events = service.history(correlation_id)
        except IntentNotFound as exc:
            raise HTTPException(status_code=404, detail="intent not found") from exc
        return IntentHistoryResponse(
            correlation_id=correlation_id,
            status=intent.status,
            events=[
                IntentEventResponse(
                    from_state=event.from_state,
                    to_state=event.to_state,
                    reason=event.reason,
                    applied=event.applied,
                    detail=event.detail,
                    created_at=event.created_at,
                )
                for event in events
            ],
        )

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "MPESA_ENV",
        "MPESA_BASE_URL",
        "MPESA_CONSUMER_KEY",
        "MPESA_CONSUMER_SECRET",
        "MPESA_SHORTCODE",
        "MPESA_PASSKEY",
        "CALLBACK_BASE_URL",
        "DATABASE_URL",
    ],
)
warn_missing_gateway_config(settings)
app = create_app(build_service(settings))
