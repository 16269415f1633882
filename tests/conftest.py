"""Shared fixtures: deterministic clock, both intent stores, a fake gateway."""

from datetime import datetime, timedelta, timezone

import pytest

from qikaopay.common.config import CommonSettings
from qikaopay.common.db import make_session_factory
from qikaopay.common.errors import GatewayError
from qikaopay.services.payments.schemas import InitiationResult
from qikaopay.services.payments.store import InMemoryIntentStore, SqlIntentStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self) -> None:
        self.now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeGateway:
    """Records calls and replays queued results or errors."""

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls: list[tuple] = []
        self.closed = False

    async def initiate(self, phone, amount, reference, description) -> InitiationResult:
        self.calls.append((phone, amount, reference, description))
        result = self.results.pop(0) if self.results else InitiationResult(correlation_id="ws_1")
        if isinstance(result, Exception):
            raise result
        return result

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return InMemoryIntentStore(clock=clock)


@pytest.fixture(params=["memory", "sql"])
def store(request, clock):
    """Every store contract test runs against both implementations."""

    if request.param == "memory":
        return InMemoryIntentStore(clock=clock)
    sql = SqlIntentStore(make_session_factory("sqlite://"), clock=clock)
    sql.create_schema()
    return sql


@pytest.fixture
def configured_settings():
    return CommonSettings(
        _env_file=None,
        mpesa_consumer_key="consumer-key",
        mpesa_consumer_secret="consumer-secret",
        mpesa_shortcode="174379",
        mpesa_passkey="passkey",
        callback_base_url="https://qikao.example/",
        database_url=None,
    )


@pytest.fixture
def unconfigured_settings():
    return CommonSettings(
        _env_file=None,
        mpesa_consumer_key=None,
        mpesa_consumer_secret=None,
        mpesa_shortcode=None,
        mpesa_passkey=None,
        mpesa_callback_url=None,
        callback_base_url=None,
        database_url=None,
    )


def gateway_failure() -> GatewayError:
    return GatewayError("STK push failed", detail={"errorCode": "500.001.1001"}, status_code=500)
