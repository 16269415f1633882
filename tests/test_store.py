"""Contract tests run against both the in-memory and SQL intent stores."""

import threading

import pytest
from sqlalchemy import update

from qikaopay.common.db import make_session_factory
from qikaopay.common.errors import DuplicateIntent, IntentNotFound, InvalidTransition
from qikaopay.common.state_machine import FAILED, PENDING, SUCCESS
from qikaopay.services.payments.models import PaymentIntentRow
from qikaopay.services.payments.store import InMemoryIntentStore, SqlIntentStore


def test_create_records_pending_intent(store):
    """A fresh intent is PENDING with no detail and matching timestamps."""

    intent = store.create("ws_1", phone="254712345678", amount=150, reference="QikaoOrder")

    assert intent.status == PENDING
    assert intent.detail is None
    assert intent.created_at == intent.updated_at
    fetched = store.get("ws_1")
    assert fetched.status == PENDING
    assert fetched.amount == 150
    assert fetched.phone == "254712345678"


def test_duplicate_create_is_rejected(store):
    store.create("ws_1")
    with pytest.raises(DuplicateIntent):
        store.create("ws_1")
    assert [event.to_state for event in store.history("ws_1")] == [PENDING]


def test_get_unknown_raises_not_found(store):
    with pytest.raises(IntentNotFound):
        store.get("missing")


def test_transition_pending_to_success(store, clock):
    store.create("ws_1")
    clock.advance(30)

    intent = store.transition("ws_1", SUCCESS, {"Amount": 150, "MpesaReceiptNumber": "QAX123"})

    assert intent.status == SUCCESS
    assert intent.detail == {"Amount": 150, "MpesaReceiptNumber": "QAX123"}
    assert intent.updated_at > intent.created_at
    assert store.get("ws_1").status == SUCCESS


def test_transition_missing_intent_creates_terminal_directly(store):
    """A callback that beats initiation never passes through PENDING."""

    intent = store.transition("ws_early", FAILED, {"ResultCode": 1032, "ResultDesc": "Cancelled"})

    assert intent.status == FAILED
    events = store.history("ws_early")
    assert len(events) == 1
    assert events[0].from_state is None
    assert events[0].to_state == FAILED


def test_repeated_transition_is_idempotent(store, clock):
    store.create("ws_1")
    first = store.transition("ws_1", SUCCESS, {"MpesaReceiptNumber": "QAX123"})
    clock.advance(5)

    second = store.transition("ws_1", SUCCESS, {"MpesaReceiptNumber": "QAX123"})

    assert second.status == first.status
    assert second.detail == first.detail
    assert second.updated_at == first.updated_at


def test_terminal_state_never_regresses(store, clock):
    """A later, different outcome is recorded for audit but changes nothing."""

    store.create("ws_1")
    store.transition("ws_1", SUCCESS, {"MpesaReceiptNumber": "QAX123"})
    clock.advance(5)

    after = store.transition("ws_1", FAILED, {"ResultCode": 1, "ResultDesc": "Insufficient funds"})

    assert after.status == SUCCESS
    assert after.detail == {"MpesaReceiptNumber": "QAX123"}
    events = store.history("ws_1")
    assert [(e.to_state, e.reason, e.applied) for e in events] == [
        (PENDING, "initiated", True),
        (SUCCESS, "callback", True),
        (FAILED, "callback_ignored", False),
    ]


def test_transition_rejects_non_terminal_outcome(store):
    store.create("ws_1")
    with pytest.raises(InvalidTransition):
        store.transition("ws_1", PENDING, None)
    assert store.get("ws_1").status == PENDING


def test_returned_snapshot_is_isolated(store):
    store.create("ws_1")
    intent = store.transition("ws_1", SUCCESS, {"Amount": 150})

    intent.detail["Amount"] = 1

    assert store.get("ws_1").detail == {"Amount": 150}


def test_merchant_request_id_filled_from_callback(store):
    store.create("ws_1")
    intent = store.transition("ws_1", SUCCESS, {}, merchant_request_id="mr-9")
    assert intent.merchant_request_id == "mr-9"

    store.create("ws_2", merchant_request_id="mr-initial")
    intent = store.transition("ws_2", FAILED, {"ResultCode": 1032}, merchant_request_id="mr-other")
    assert intent.merchant_request_id == "mr-initial"


def test_history_unknown_raises_not_found(store):
    with pytest.raises(IntentNotFound):
        store.history("missing")


@pytest.fixture(params=["memory", "sql-file"])
def threaded_store(request, clock, tmp_path):
    """Stores that tolerate real concurrent connections; SQL uses a file so each thread gets its own."""

    if request.param == "memory":
        return InMemoryIntentStore(clock=clock)
    sql = SqlIntentStore(make_session_factory(f"sqlite:///{tmp_path / 'intents.db'}"), clock=clock)
    sql.create_schema()
    return sql


def test_concurrent_callbacks_have_single_winner(threaded_store):
    """Racing terminal transitions: exactly one applies, all see the same result."""

    threaded_store.create("ws_race")
    barrier = threading.Barrier(8)
    results = []

    def deliver(i: int) -> None:
        outcome = SUCCESS if i % 2 == 0 else FAILED
        barrier.wait()
        results.append(threaded_store.transition("ws_race", outcome, {"n": i}))

    threads = [threading.Thread(target=deliver, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 8
    final = threaded_store.get("ws_race")
    assert {(r.status, r.detail["n"]) for r in results} == {(final.status, final.detail["n"])}
    applied = [e for e in threaded_store.history("ws_race") if e.reason == "callback" and e.applied]
    assert len(applied) == 1


class InterleavedSessions:
    """Session factory that runs `action` once, just before the first call to `method`.

    Lets a test commit a competing write between a store's read and its own write.
    """

    def __init__(self, factory, method: str, action) -> None:
        self.factory = factory
        self.kw = factory.kw
        self.method = method
        self.action = action
        self.fired = False

    def __call__(self):
        session = self.factory()
        original = getattr(session, self.method)

        def interleaved(*args, **kwargs):
            statement = args[0] if args else None
            if not self.fired and (self.method != "execute" or getattr(statement, "is_update", False)):
                self.fired = True
                self.action()
            return original(*args, **kwargs)

        setattr(session, self.method, interleaved)
        return session


@pytest.fixture
def sql_file_factory(tmp_path, clock):
    factory = make_session_factory(f"sqlite:///{tmp_path / 'intents.db'}")
    SqlIntentStore(factory, clock=clock).create_schema()
    return factory


def test_sql_conditional_update_losing_race_is_ignored(sql_file_factory, clock):
    """Status flips to terminal between the read and the guarded UPDATE: the late write is ignored."""

    competitor = SqlIntentStore(sql_file_factory, clock=clock)
    competitor.create("ws_1")

    def fail_concurrently() -> None:
        with sql_file_factory() as db:
            db.execute(
                update(PaymentIntentRow)
                .where(PaymentIntentRow.correlation_id == "ws_1")
                .values(status=FAILED, detail={"ResultCode": 1032})
            )
            db.commit()

    sessions = InterleavedSessions(sql_file_factory, "execute", fail_concurrently)
    store = SqlIntentStore(sessions, clock=clock)

    result = store.transition("ws_1", SUCCESS, {"MpesaReceiptNumber": "QAX123"})

    assert sessions.fired
    assert result.status == FAILED
    assert result.detail == {"ResultCode": 1032}
    last = store.history("ws_1")[-1]
    assert (last.from_state, last.to_state, last.reason, last.applied) == (FAILED, SUCCESS, "callback_ignored", False)


def test_sql_insert_race_with_initiation_applies_callback(sql_file_factory, clock):
    """Callback finds no row, initiation inserts it first: the callback retries and transitions it."""

    competitor = SqlIntentStore(sql_file_factory, clock=clock)
    sessions = InterleavedSessions(sql_file_factory, "flush", lambda: competitor.create("ws_1", amount=150))
    store = SqlIntentStore(sessions, clock=clock)

    result = store.transition("ws_1", SUCCESS, {"Amount": 150})

    assert sessions.fired
    assert result.status == SUCCESS
    assert result.amount == 150
    assert [(e.to_state, e.reason, e.applied) for e in store.history("ws_1")] == [
        (PENDING, "initiated", True),
        (SUCCESS, "callback", True),
    ]
