"""M-Pesa (Daraja) STK Push client.

Obtains an OAuth bearer token (cached per client until shortly before expiry)
and submits payment-initiation requests. Failures surface as `GatewayError`;
missing credentials surface as `ConfigurationError` at call time.
"""

import asyncio
import base64
import re
import time
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Callable

import httpx

from qikaopay.common.config import CommonSettings
from qikaopay.common.errors import ConfigurationError, GatewayError
from qikaopay.common.logging import logger
from qikaopay.services.payments.schemas import InitiationResult

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
COUNTRY_PREFIX = "254"
TOKEN_EXPIRY_MARGIN_SECONDS = 5.0
DEFAULT_TOKEN_TTL_SECONDS = 3600.0


def normalize_msisdn(phone: str) -> str:
    """Rewrite local (`07..`) and `+254..` numbers to the `2547..` form."""

    msisdn = re.sub(r"\s+", "", str(phone))
    if msisdn.startswith("+"):
        msisdn = msisdn[1:]
    if msisdn.startswith("0"):
        msisdn = COUNTRY_PREFIX + msisdn[1:]
    return msisdn


def whole_amount(amount) -> int:
    """Vendor only accepts whole shillings; drop any fraction rather than charge more."""

    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_DOWN))


def timestamp_now(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


class DarajaGateway:
    """Async STK Push client owning its own token cache and HTTP client."""

    def __init__(
        self,
        config: CommonSettings,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.gateway_base_url,
            timeout=config.gateway_timeout_seconds,
            transport=transport,
        )
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    def _require_config(self) -> None:
        missing = self.config.missing_gateway_settings()
        if missing:
            raise ConfigurationError(missing)

    async def access_token(self) -> str:
        """Return the cached bearer token, refreshing it near expiry."""

        async with self._token_lock:
            now = self._clock()
            if self._token and now < self._token_expires_at - TOKEN_EXPIRY_MARGIN_SECONDS:
                return self._token
            try:
                resp = await self._client.get(
                    TOKEN_PATH,
                    params={"grant_type": "client_credentials"},
                    auth=(self.config.mpesa_consumer_key or "", self.config.mpesa_consumer_secret or ""),
                )
            except httpx.HTTPError as exc:
                raise GatewayError("token request failed", detail=str(exc)) from exc
            if resp.status_code >= 400:
                raise GatewayError("token request rejected", detail=_body(resp), status_code=resp.status_code)
            payload = _body(resp)
            token = payload.get("access_token") if isinstance(payload, dict) else None
            if not token:
                raise GatewayError("token response missing access_token", detail=payload)
            try:
                ttl = float(payload.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
            except (TypeError, ValueError):
                ttl = DEFAULT_TOKEN_TTL_SECONDS
            self._token = token
            self._token_expires_at = now + ttl
            return token

    def build_stk_payload(self, msisdn: str, amount: int, reference: str, description: str, timestamp: str) -> dict:
        shortcode = self.config.mpesa_shortcode or ""
        return {
            "BusinessShortCode": shortcode,
            "Password": build_password(shortcode, self.config.mpesa_passkey or "", timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.config.mpesa_transaction_type,
            "Amount": amount,
            "PartyA": msisdn,
            "PartyB": shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.config.callback_url,
            "AccountReference": reference,
            "TransactionDesc": description,
        }

    async def initiate(self, phone: str, amount, reference: str, description: str) -> InitiationResult:
        """Submit one STK push and return the vendor correlation id."""

        self._require_config()
        msisdn = normalize_msisdn(phone)
        token = await self.access_token()
        payload = self.build_stk_payload(msisdn, whole_amount(amount), reference, description, timestamp_now())
        try:
            resp = await self._client.post(
                STK_PUSH_PATH,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            logger.error("stk push transport error: %s", exc)
            raise GatewayError("STK push failed", detail=str(exc)) from exc

        data = _body(resp)
        if resp.status_code >= 400:
            logger.error("stk push rejected status=%s body=%s", resp.status_code, data)
            raise GatewayError("STK push failed", detail=data, status_code=resp.status_code)
        if not isinstance(data, dict):
            raise GatewayError("STK push returned an unexpected body", detail=data)

        checkout_id = data.get("CheckoutRequestID") or data.get("checkoutRequestID") or data.get("CheckoutRequestId")
        response_code = str(data.get("ResponseCode", "0"))
        if not checkout_id or response_code != "0":
            logger.error("stk push not accepted body=%s", data)
            raise GatewayError("STK push not accepted", detail=data)
        return InitiationResult(
            correlation_id=checkout_id,
            merchant_request_id=data.get("MerchantRequestID"),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
            raw=data,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def _body(resp: httpx.Response):
    try:
        return resp.json()
    except ValueError:
        return resp.text
