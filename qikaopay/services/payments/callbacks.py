"""Vendor callback decoding and handling.

The vendor posts the final outcome of an STK push to us asynchronously. Its
delivery contract wants a prompt acknowledgment whatever happened on our side,
so everything here is total: bad payloads and store failures are logged and the
caller still gets a `CallbackAck`.
"""

import re
from typing import Any

from qikaopay.common.errors import CallbackParseError
from qikaopay.common.logging import correlation_id_ctx, logger
from qikaopay.common.metrics import callbacks_received_total
from qikaopay.common.state_machine import FAILED, SUCCESS
from qikaopay.services.payments.schemas import CallbackAck, CallbackItem, StkCallback
from qikaopay.services.payments.store import IntentStore


RESULT_CODE_PATTERN = re.compile(r"-?\d+", re.ASCII)


def _parse_result_code(raw: Any) -> int:
    if isinstance(raw, bool):
        raise CallbackParseError(f"invalid ResultCode: {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and RESULT_CODE_PATTERN.fullmatch(raw.strip()):
        return int(raw.strip())
    raise CallbackParseError(f"invalid ResultCode: {raw!r}")


def parse_stk_callback(payload: Any) -> StkCallback:
    """Strict decode; raises `CallbackParseError` on anything unusable."""

    if not isinstance(payload, dict):
        raise CallbackParseError("callback body is not an object")
    body = payload.get("Body")
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if stk is None:
        stk = payload.get("stkCallback")
    if not isinstance(stk, dict):
        raise CallbackParseError("stkCallback envelope not found")

    correlation_id = stk.get("CheckoutRequestID")
    if not isinstance(correlation_id, str) or not correlation_id:
        raise CallbackParseError("CheckoutRequestID missing")
    if "ResultCode" not in stk:
        raise CallbackParseError("ResultCode missing")
    result_code = _parse_result_code(stk.get("ResultCode"))

    items: list[CallbackItem] = []
    meta = stk.get("CallbackMetadata") or stk.get("callbackMetadata")
    raw_items = meta.get("Item") if isinstance(meta, dict) else None
    if isinstance(raw_items, list):
        for item in raw_items:
            # Entries without a Value (e.g. Balance) carry nothing to record.
            if isinstance(item, dict) and item.get("Name") and "Value" in item:
                items.append(CallbackItem(name=str(item["Name"]), value=item["Value"]))

    merchant_request_id = stk.get("MerchantRequestID")
    return StkCallback(
        correlation_id=correlation_id,
        merchant_request_id=merchant_request_id if isinstance(merchant_request_id, str) else None,
        result_code=result_code,
        result_desc=str(stk.get("ResultDesc") or ""),
        items=items,
    )


def decode_stk_callback(payload: Any) -> StkCallback | None:
    """Tolerant decode: the parsed envelope, or None when it is unusable."""

    try:
        return parse_stk_callback(payload)
    except CallbackParseError as exc:
        logger.warning("callback parse failed: %s", exc)
        return None


def outcome_for(callback: StkCallback) -> tuple[str, dict[str, Any]]:
    """Map a decoded callback to a terminal status and its detail."""

    if callback.result_code == 0:
        detail: dict[str, Any] = {"ResultDesc": callback.result_desc}
        for item in callback.items:
            detail[item.name] = item.value
        return SUCCESS, detail
    return FAILED, {"ResultCode": callback.result_code, "ResultDesc": callback.result_desc}


class CallbackReceiver:
    """Applies vendor callbacks to the intent store and always acknowledges."""

    def __init__(self, store: IntentStore, service_name: str = "qikaopay") -> None:
        self.store = store
        self.service_name = service_name

    def receive(self, payload: Any) -> CallbackAck:
        logger.info("callback received body=%s", str(payload)[:1000])
        callback = decode_stk_callback(payload)
        if callback is None:
            callbacks_received_total.labels(service=self.service_name, outcome="malformed").inc()
            return CallbackAck()

        token = correlation_id_ctx.set(callback.correlation_id)
        try:
            status, detail = outcome_for(callback)
            self.store.transition(
                callback.correlation_id,
                status,
                detail,
                merchant_request_id=callback.merchant_request_id,
            )
            callbacks_received_total.labels(service=self.service_name, outcome=status.lower()).inc()
        except Exception as exc:
            logger.exception("callback processing failed correlation_id=%s: %s", callback.correlation_id, exc)
            callbacks_received_total.labels(service=self.service_name, outcome="error").inc()
        finally:
            correlation_id_ctx.reset(token)
        return CallbackAck()
