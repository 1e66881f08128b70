from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from config import AppSettings
from db.repositories import AuditRepository, TransactionRepository
from domain.audit import AuditJob, AuditRecord, AuditStatus
from domain.errors import AuditCancelError, AuditNotFoundError, DuplicateAuditError, UnsupportedJurisdictionError
from domain.ledger import Transaction, TransactionType
from services.audit_orchestrator import AuditOrchestrator
from services.audit_queue import AuditQueue
from tests.constants import ETH, MAIN_WALLET, USD
from tests.helpers.time_utils import inflow, make_transaction, outflow


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _job(audit_id: str = "audit-1", jurisdiction: str = "US") -> AuditJob:
    return AuditJob(audit_id=audit_id, wallet_ids=[MAIN_WALLET], jurisdiction=jurisdiction, tax_year=2024)


@pytest.fixture(scope="function", autouse=True)
def stored(test_session: Session) -> list[Transaction]:
    return TransactionRepository(test_session).create_many(
        [
            make_transaction(
                tx_type=TransactionType.BUY,
                flows=[inflow(ETH, 1, 1000), outflow(USD, 1000, 1000)],
                timestamp=datetime(2024, 2, 1, tzinfo=timezone.utc),
            )
        ]
    )


@pytest.fixture(scope="function")
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture(scope="function")
def queue(test_session_factory: sessionmaker[Session], settings: AppSettings, sleep: SleepRecorder) -> AuditQueue:
    orchestrator = AuditOrchestrator(test_session_factory, settings=settings)
    return AuditQueue(orchestrator, test_session_factory, max_attempts=3, backoff_base=2.0, sleep=sleep)


def test_submit_then_process(queue: AuditQueue) -> None:
    submitted = queue.submit(_job())

    assert submitted.status == AuditStatus.QUEUED
    assert len(queue) == 1

    record = queue.process_next()

    assert record is not None
    assert record.status == AuditStatus.COMPLETED
    assert len(queue) == 0
    assert queue.process_next() is None


def test_duplicate_submission_is_rejected(queue: AuditQueue) -> None:
    queue.submit(_job())

    with pytest.raises(DuplicateAuditError):
        queue.submit(_job())

    queue.drain()
    with pytest.raises(DuplicateAuditError):
        queue.submit(_job())


def test_unknown_jurisdiction_is_rejected_at_submit(queue: AuditQueue) -> None:
    with pytest.raises(UnsupportedJurisdictionError):
        queue.submit(_job(jurisdiction="XX"))

    assert len(queue) == 0
    with pytest.raises(AuditNotFoundError):
        queue.status("audit-1")


def test_cancel_queued_audit(queue: AuditQueue) -> None:
    queue.submit(_job("audit-1"))
    queue.submit(_job("audit-2"))

    cancelled = queue.cancel("audit-1")

    assert cancelled.status == AuditStatus.CANCELLED
    assert [record.audit_id for record in queue.drain()] == ["audit-2"]
    with pytest.raises(AuditCancelError):
        queue.cancel("audit-1")
    with pytest.raises(AuditCancelError):
        queue.cancel("audit-2")


def test_cancel_unknown_audit(queue: AuditQueue) -> None:
    with pytest.raises(AuditNotFoundError):
        queue.cancel("missing")


def test_running_audit_cannot_be_cancelled(
    test_session_factory: sessionmaker[Session], settings: AppSettings
) -> None:
    errors: list[Exception] = []

    class CancellingOrchestrator(AuditOrchestrator):
        def run(self, job: AuditJob, *, final_attempt: bool = True) -> AuditRecord:
            try:
                queue.cancel(job.audit_id)
            except AuditCancelError as e:
                errors.append(e)
            return super().run(job, final_attempt=final_attempt)

    queue = AuditQueue(CancellingOrchestrator(test_session_factory, settings=settings), test_session_factory)
    queue.submit(_job())

    record = queue.process_next()

    assert len(errors) == 1
    assert record is not None and record.status == AuditStatus.COMPLETED


def test_transient_errors_are_retried_with_backoff(
    queue: AuditQueue, sleep: SleepRecorder, monkeypatch: pytest.MonkeyPatch
) -> None:
    original = TransactionRepository.list_for_wallets
    calls: list[int] = []

    def flaky(self: TransactionRepository, *args: object, **kwargs: object) -> list[Transaction]:
        calls.append(1)
        if len(calls) < 3:
            raise OperationalError("SELECT", {}, Exception("database is locked"))
        return original(self, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(TransactionRepository, "list_for_wallets", flaky)
    queue.submit(_job())

    record = queue.process_next()

    assert record is not None and record.status == AuditStatus.COMPLETED
    assert sleep.delays == [2.0, 4.0]


def test_audit_fails_after_last_attempt(
    queue: AuditQueue,
    sleep: SleepRecorder,
    test_session_factory: sessionmaker[Session],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def locked(*args: object, **kwargs: object) -> list[Transaction]:
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(TransactionRepository, "list_for_wallets", locked)
    queue.submit(_job())

    record = queue.process_next()

    assert record is not None and record.status == AuditStatus.FAILED
    assert sleep.delays == [2.0, 4.0]
    with test_session_factory() as session:
        stored = AuditRepository(session).get("audit-1")
    assert stored is not None and stored.error_message is not None


def test_max_attempts_must_be_positive(test_session_factory: sessionmaker[Session], settings: AppSettings) -> None:
    with pytest.raises(ValueError):
        AuditQueue(AuditOrchestrator(test_session_factory, settings=settings), test_session_factory, max_attempts=0)
