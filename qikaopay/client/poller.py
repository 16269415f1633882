"""Client-side confirmation poller.

After a successful initiate call the client polls `GET /payments/status` on a
fixed interval until it sees a terminal status, runs out of attempts, or is
cancelled. Polls are sequential: the next request is only scheduled once the
previous response has arrived.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from qikaopay.common.logging import logger
from qikaopay.common.state_machine import SUCCESS, is_terminal
from qikaopay.services.payments.schemas import StatusView

WAITING = "WAITING"
CONFIRMED = "CONFIRMED"
TIMED_OUT = "TIMED_OUT"
CANCELLED = "CANCELLED"

MESSAGES = {
    "SUCCESS": "Payment confirmed - thank you!",
    "FAILED": "Payment did not complete.",
    TIMED_OUT: "Payment not confirmed yet. Check your phone or try again later.",
    CANCELLED: "Stopped waiting for payment confirmation.",
}


class StatusSource(Protocol):
    async def fetch(self, correlation_id: str) -> StatusView: ...


class HttpStatusSource:
    """Reads intent status from the payment service over HTTP."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def fetch(self, correlation_id: str) -> StatusView:
        resp = await self._client.get("/payments/status", params={"correlationId": correlation_id})
        resp.raise_for_status()
        return StatusView.model_validate(resp.json())

    async def aclose(self) -> None:
        await self._client.aclose()


@dataclass
class PollResult:
    state: str
    attempts: int
    status: str | None = None
    detail: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == CONFIRMED and self.status == SUCCESS

    @property
    def message(self) -> str:
        """Text for the checkout page; success is only claimed after SUCCESS was seen."""

        if self.state == CONFIRMED:
            return MESSAGES[self.status]
        return MESSAGES.get(self.state, "Waiting for confirmation...")


class StatusPoller:
    """Cancellable WAITING -> CONFIRMED | TIMED_OUT poll loop for one correlation id."""

    def __init__(
        self,
        source: StatusSource,
        correlation_id: str,
        interval: float = 4.0,
        max_attempts: int = 8,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.source = source
        self.correlation_id = correlation_id
        self.interval = interval
        self.max_attempts = max_attempts
        self.state = WAITING
        self.attempts = 0
        self._cancel_event = asyncio.Event()

    def cancel(self) -> None:
        """Stop polling; no request is issued after this returns."""

        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _finish(self, state: str, view: StatusView | None = None) -> PollResult:
        self.state = state
        logger.info(
            "poll finished correlation_id=%s state=%s attempts=%s",
            self.correlation_id,
            state,
            self.attempts,
        )
        return PollResult(
            state=state,
            attempts=self.attempts,
            status=view.status if view else None,
            detail=view.detail if view else None,
        )

    async def _wait_interval(self) -> None:
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> PollResult:
        if self.state != WAITING:
            raise RuntimeError(f"poller already finished in state {self.state}")
        last_view: StatusView | None = None
        while self.attempts < self.max_attempts:
            if self.cancelled:
                return self._finish(CANCELLED, last_view)
            self.attempts += 1
            try:
                view = await self.source.fetch(self.correlation_id)
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "status poll failed correlation_id=%s attempt=%s error=%s",
                    self.correlation_id,
                    self.attempts,
                    exc,
                )
                view = None
            if self.cancelled:
                return self._finish(CANCELLED, last_view)
            if view is not None:
                last_view = view
                if is_terminal(view.status):
                    return self._finish(CONFIRMED, view)
            if self.attempts < self.max_attempts:
                await self._wait_interval()
        return self._finish(TIMED_OUT, last_view)
