"""Payment intent stores.

Both stores implement the same contract: `create` records a PENDING intent,
`transition` moves a PENDING intent to SUCCESS or FAILED exactly once, and
`get`/`history` read snapshots. Terminal intents never change again; later
transition attempts are appended to the audit timeline as ignored.
"""

import copy
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from qikaopay.common.config import CommonSettings
from qikaopay.common.db import Base, make_session_factory
from qikaopay.common.errors import DuplicateIntent, IntentNotFound
from qikaopay.common.logging import logger
from qikaopay.common.metrics import intent_transitions_total, payment_confirmation_seconds
from qikaopay.common.state_machine import PENDING, is_terminal, validate_outcome, validate_transition
from qikaopay.services.payments.models import IntentTimelineRow, PaymentIntentRow
from qikaopay.services.payments.schemas import IntentEvent, PaymentIntent


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntentStore(Protocol):
    """Contract shared by the in-memory and SQL stores."""

    def create(
        self,
        correlation_id: str,
        *,
        phone: str | None = None,
        amount: int | None = None,
        reference: str | None = None,
        merchant_request_id: str | None = None,
    ) -> PaymentIntent: ...

    def get(self, correlation_id: str) -> PaymentIntent: ...

    def transition(
        self,
        correlation_id: str,
        outcome: str,
        detail: dict[str, Any] | None,
        merchant_request_id: str | None = None,
    ) -> PaymentIntent: ...

    def history(self, correlation_id: str) -> list[IntentEvent]: ...


def _observe_transition(intent: PaymentIntent, outcome: str, applied: bool, service_name: str) -> None:
    intent_transitions_total.labels(service=service_name, to_state=outcome, applied=str(applied).lower()).inc()
    if not applied:
        logger.warning(
            "transition ignored correlation_id=%s current=%s requested=%s",
            intent.correlation_id,
            intent.status,
            outcome,
        )
        return
    created_at = intent.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    updated_at = intent.updated_at
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    elapsed = max(0.0, (updated_at - created_at).total_seconds())
    payment_confirmation_seconds.labels(service=service_name, terminal_state=outcome).observe(elapsed)
    logger.info("intent transitioned correlation_id=%s status=%s", intent.correlation_id, intent.status)


class InMemoryIntentStore:
    """Process-local store; one lock serialises every read and write."""

    def __init__(self, clock: Callable[[], datetime] = utcnow, service_name: str = "qikaopay") -> None:
        self._lock = threading.Lock()
        self._intents: dict[str, PaymentIntent] = {}
        self._timeline: dict[str, list[IntentEvent]] = {}
        self._clock = clock
        self.service_name = service_name

    def _append(self, event: IntentEvent) -> None:
        self._timeline.setdefault(event.correlation_id, []).append(event)

    def create(
        self,
        correlation_id: str,
        *,
        phone: str | None = None,
        amount: int | None = None,
        reference: str | None = None,
        merchant_request_id: str | None = None,
    ) -> PaymentIntent:
        with self._lock:
            if correlation_id in self._intents:
                raise DuplicateIntent(correlation_id)
            now = self._clock()
            intent = PaymentIntent(
                correlation_id=correlation_id,
                status=PENDING,
                merchant_request_id=merchant_request_id,
                phone=phone,
                amount=amount,
                reference=reference,
                created_at=now,
                updated_at=now,
            )
            self._intents[correlation_id] = intent
            self._append(
                IntentEvent(
                    correlation_id=correlation_id,
                    from_state=None,
                    to_state=PENDING,
                    reason="initiated",
                    applied=True,
                    created_at=now,
                )
            )
            return intent.model_copy(deep=True)

    def get(self, correlation_id: str) -> PaymentIntent:
        with self._lock:
            intent = self._intents.get(correlation_id)
            if intent is None:
                raise IntentNotFound(correlation_id)
            return intent.model_copy(deep=True)

    def transition(
        self,
        correlation_id: str,
        outcome: str,
        detail: dict[str, Any] | None,
        merchant_request_id: str | None = None,
    ) -> PaymentIntent:
        validate_outcome(outcome)
        detail = copy.deepcopy(detail) if detail is not None else {}
        with self._lock:
            now = self._clock()
            current = self._intents.get(correlation_id)
            if current is not None and is_terminal(current.status):
                self._append(
                    IntentEvent(
                        correlation_id=correlation_id,
                        from_state=current.status,
                        to_state=outcome,
                        reason="callback_ignored",
                        applied=False,
                        detail=detail,
                        created_at=now,
                    )
                )
                result, applied = current.model_copy(deep=True), False
            else:
                if current is None:
                    # Callback beat the local record of initiation.
                    intent = PaymentIntent(
                        correlation_id=correlation_id,
                        status=outcome,
                        detail=detail,
                        merchant_request_id=merchant_request_id,
                        created_at=now,
                        updated_at=now,
                    )
                else:
                    validate_transition(current.status, outcome)
                    intent = current.model_copy(
                        update={
                            "status": outcome,
                            "detail": detail,
                            "merchant_request_id": current.merchant_request_id or merchant_request_id,
                            "updated_at": now,
                        }
                    )
                self._intents[correlation_id] = intent
                self._append(
                    IntentEvent(
                        correlation_id=correlation_id,
                        from_state=current.status if current is not None else None,
                        to_state=outcome,
                        reason="callback",
                        applied=True,
                        detail=detail,
                        created_at=now,
                    )
                )
                result, applied = intent.model_copy(deep=True), True
        _observe_transition(result, outcome, applied, self.service_name)
        return result

    def history(self, correlation_id: str) -> list[IntentEvent]:
        with self._lock:
            events = self._timeline.get(correlation_id)
            if not events:
                raise IntentNotFound(correlation_id)
            return [event.model_copy(deep=True) for event in events]


def _row_to_intent(row: PaymentIntentRow) -> PaymentIntent:
    return PaymentIntent(
        correlation_id=row.correlation_id,
        status=row.status,
        detail=copy.deepcopy(row.detail) if row.detail is not None else None,
        merchant_request_id=row.merchant_request_id,
        phone=row.phone,
        amount=row.amount,
        reference=row.reference,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_event(row: IntentTimelineRow) -> IntentEvent:
    return IntentEvent(
        correlation_id=row.correlation_id,
        from_state=row.from_state,
        to_state=row.to_state,
        reason=row.reason,
        applied=row.applied,
        detail=row.detail,
        created_at=row.created_at,
    )


class SqlIntentStore:
    """Durable store over SQLAlchemy.

    Terminal writes are guarded by `(correlation_id, status='PENDING')` so two
    concurrent callbacks cannot both win; inserts race-resolve on the primary
    key.
    """

    max_write_attempts = 3

    def __init__(
        self,
        session_factory,
        clock: Callable[[], datetime] = utcnow,
        service_name: str = "qikaopay",
    ) -> None:
        self.session_factory = session_factory
        self._clock = clock
        self.service_name = service_name

    def create_schema(self) -> None:
        """Create tables directly; production databases use the Alembic migration."""

        Base.metadata.create_all(bind=self.session_factory.kw["bind"])

    def create(
        self,
        correlation_id: str,
        *,
        phone: str | None = None,
        amount: int | None = None,
        reference: str | None = None,
        merchant_request_id: str | None = None,
    ) -> PaymentIntent:
        now = self._clock()
        with self.session_factory() as db:
            if db.get(PaymentIntentRow, correlation_id) is not None:
                raise DuplicateIntent(correlation_id)
            row = PaymentIntentRow(
                correlation_id=correlation_id,
                status=PENDING,
                detail=None,
                merchant_request_id=merchant_request_id,
                phone=phone,
                amount=amount,
                reference=reference,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            try:
                db.flush()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicateIntent(correlation_id) from exc
            db.add(
                IntentTimelineRow(
                    correlation_id=correlation_id,
                    from_state=None,
                    to_state=PENDING,
                    reason="initiated",
                    applied=True,
                    created_at=now,
                )
            )
            db.commit()
            return _row_to_intent(row)

    def get(self, correlation_id: str) -> PaymentIntent:
        with self.session_factory() as db:
            row = db.get(PaymentIntentRow, correlation_id)
            if row is None:
                raise IntentNotFound(correlation_id)
            return _row_to_intent(row)

    def transition(
        self,
        correlation_id: str,
        outcome: str,
        detail: dict[str, Any] | None,
        merchant_request_id: str | None = None,
    ) -> PaymentIntent:
        validate_outcome(outcome)
        detail = copy.deepcopy(detail) if detail is not None else {}
        for _ in range(self.max_write_attempts):
            now = self._clock()
            with self.session_factory() as db:
                row = db.get(PaymentIntentRow, correlation_id)
                if row is None:
                    row = PaymentIntentRow(
                        correlation_id=correlation_id,
                        status=outcome,
                        detail=detail,
                        merchant_request_id=merchant_request_id,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(row)
                    try:
                        db.flush()
                    except IntegrityError:
                        # Initiation recorded concurrently; retry against that row.
                        db.rollback()
                        continue
                    db.add(self._timeline(correlation_id, None, outcome, "callback", True, detail, now))
                    db.commit()
                    intent = _row_to_intent(row)
                    _observe_transition(intent, outcome, True, self.service_name)
                    return intent

                if is_terminal(row.status):
                    db.add(self._timeline(correlation_id, row.status, outcome, "callback_ignored", False, detail, now))
                    db.commit()
                    intent = _row_to_intent(row)
                    _observe_transition(intent, outcome, False, self.service_name)
                    return intent

                validate_transition(row.status, outcome)
                result = db.execute(
                    update(PaymentIntentRow)
                    .where(
                        PaymentIntentRow.correlation_id == correlation_id,
                        PaymentIntentRow.status == PENDING,
                    )
                    .values(
                        status=outcome,
                        detail=detail,
                        merchant_request_id=row.merchant_request_id or merchant_request_id,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another writer reached a terminal state first.
                    db.rollback()
                    continue
                db.add(self._timeline(correlation_id, PENDING, outcome, "callback", True, detail, now))
                db.commit()
                db.refresh(row)
                intent = _row_to_intent(row)
                _observe_transition(intent, outcome, True, self.service_name)
                return intent
        raise RuntimeError(f"concurrent write conflict for intent {correlation_id}")

    def history(self, correlation_id: str) -> list[IntentEvent]:
        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(IntentTimelineRow)
                    .where(IntentTimelineRow.correlation_id == correlation_id)
                    .order_by(IntentTimelineRow.id)
                )
                .scalars()
                .all()
            )
            if not rows:
                raise IntentNotFound(correlation_id)
            return [_row_to_event(row) for row in rows]

    @staticmethod
    def _timeline(
        correlation_id: str,
        from_state: str | None,
        to_state: str,
        reason: str,
        applied: bool,
        detail: dict[str, Any] | None,
        now: datetime,
    ) -> IntentTimelineRow:
        return IntentTimelineRow(
            correlation_id=correlation_id,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            applied=applied,
            detail=detail,
            created_at=now,
        )


def build_store(config: CommonSettings) -> IntentStore:
    """In-memory unless `DATABASE_URL` points at a durable backend."""

    if not config.database_url:
        return InMemoryIntentStore(service_name=config.service_name)
    store = SqlIntentStore(make_session_factory(config.database_url), service_name=config.service_name)
    store.create_schema()
    return store
