from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from config import AppSettings
from db.repositories import AuditRepository, TransactionRepository
from domain.audit import AuditId, AuditJob, AuditStatus
from domain.errors import AttestationError, TransientDataSourceError
from domain.issues import IssueType
from domain.ledger import Flow, Provenance, Transaction, TransactionType
from services.attestation import AttestationPublisher, LoggingAttestationPublisher
from services.audit_orchestrator import AuditOrchestrator
from tests.constants import BINANCE, ETH, MAIN_WALLET, USD
from tests.helpers.time_utils import inflow, make_transaction, outflow


def _at(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


class FailingPublisher:
    def publish(self, audit_id: AuditId, content_hash: str) -> str:
        raise AttestationError("chain unavailable")


def _locked(*args: object, **kwargs: object) -> list[Transaction]:
    raise OperationalError("SELECT", {}, Exception("database is locked"))


@pytest.fixture(scope="function")
def job() -> AuditJob:
    return AuditJob(audit_id="audit-1", wallet_ids=[MAIN_WALLET], jurisdiction="US", tax_year=2024)


@pytest.fixture(scope="function")
def stored(test_session: Session) -> list[Transaction]:
    transactions = [
        make_transaction(
            tx_type=TransactionType.BUY,
            flows=[inflow(ETH, 1, 1000), outflow(USD, 1000, 1000)],
            timestamp=_at(2024, 2, 1),
        ),
        make_transaction(
            tx_type=TransactionType.SELL,
            flows=[outflow(ETH, 1, 1500), inflow(USD, 1500, 1500)],
            timestamp=_at(2024, 4, 1),
        ),
    ]
    return TransactionRepository(test_session).create_many(transactions)


def _orchestrator(
    session_factory: sessionmaker[Session], settings: AppSettings, publisher: AttestationPublisher | None = None
) -> AuditOrchestrator:
    return AuditOrchestrator(session_factory, settings=settings, publisher=publisher)


def test_run_completes_and_stores_result(
    test_session_factory: sessionmaker[Session], settings: AppSettings, job: AuditJob, stored: list[Transaction]
) -> None:
    orchestrator = _orchestrator(test_session_factory, settings, LoggingAttestationPublisher())

    record = orchestrator.run(job)

    assert record.status == AuditStatus.COMPLETED
    assert record.progress == 100
    with test_session_factory() as session:
        result = AuditRepository(session).get_result(job.audit_id)
    assert result is not None
    assert result.capital_gains.total_net == Decimal(500)
    assert result.content_hash is not None
    assert record.attestation_ref == f"log:{result.content_hash[:16]}"
    assert record.attestation_error is None


def test_attestation_failure_does_not_fail_audit(
    test_session_factory: sessionmaker[Session], settings: AppSettings, job: AuditJob, stored: list[Transaction]
) -> None:
    record = _orchestrator(test_session_factory, settings, FailingPublisher()).run(job)

    assert record.status == AuditStatus.COMPLETED
    assert record.attestation_ref is None
    assert record.attestation_error == "AttestationError: chain unavailable"


def test_transient_error_keeps_audit_running_until_final_attempt(
    test_session_factory: sessionmaker[Session],
    settings: AppSettings,
    job: AuditJob,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(TransactionRepository, "list_for_wallets", _locked)
    orchestrator = _orchestrator(test_session_factory, settings)

    with pytest.raises(TransientDataSourceError):
        orchestrator.run(job, final_attempt=False)
    with test_session_factory() as session:
        record = AuditRepository(session).get(job.audit_id)
    assert record is not None
    assert record.status == AuditStatus.PROCESSING
    assert record.progress == 10

    with pytest.raises(TransientDataSourceError):
        orchestrator.run(job, final_attempt=True)
    with test_session_factory() as session:
        record = AuditRepository(session).get(job.audit_id)
    assert record is not None
    assert record.status == AuditStatus.FAILED
    assert record.error_message is not None and record.error_message.startswith("Data source unavailable")


def test_retry_after_transient_error_completes(
    test_session_factory: sessionmaker[Session],
    settings: AppSettings,
    job: AuditJob,
    stored: list[Transaction],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    orchestrator = _orchestrator(test_session_factory, settings)
    with monkeypatch.context() as patch:
        patch.setattr(TransactionRepository, "list_for_wallets", _locked)
        with pytest.raises(TransientDataSourceError):
            orchestrator.run(job, final_attempt=False)

    record = orchestrator.run(job)

    assert record.status == AuditStatus.COMPLETED


def test_unexpected_error_fails_audit(
    test_session_factory: sessionmaker[Session],
    settings: AppSettings,
    job: AuditJob,
    stored: list[Transaction],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def boom(*args: object, **kwargs: object) -> None:
        raise RuntimeError("boom")

    monkeypatch.setattr("services.audit_orchestrator.compute_audit", boom)

    with pytest.raises(RuntimeError):
        _orchestrator(test_session_factory, settings).run(job)

    with test_session_factory() as session:
        record = AuditRepository(session).get(job.audit_id)
    assert record is not None
    assert record.status == AuditStatus.FAILED
    assert record.error_message == "RuntimeError: boom"
    assert record.progress == 35


def test_exchange_history_is_limited_to_lookback(
    test_session: Session, test_session_factory: sessionmaker[Session], settings: AppSettings
) -> None:
    def exchange_tx(tx_type: TransactionType, flows: list[Flow], at: datetime) -> Transaction:
        return make_transaction(
            tx_type=tx_type, flows=flows, timestamp=at, provenance=Provenance.EXCHANGE, exchange_connection_id=BINANCE
        )

    TransactionRepository(test_session).create_many(
        [
            exchange_tx(TransactionType.EXCHANGE_TRADE, [inflow(ETH, 1, 100), outflow(USD, 100, 100)], _at(2020, 6, 1)),
            exchange_tx(TransactionType.EXCHANGE_TRADE, [inflow(ETH, 1, 500), outflow(USD, 500, 500)], _at(2022, 6, 1)),
            exchange_tx(TransactionType.EXCHANGE_TRADE, [outflow(ETH, 2, 4000), inflow(USD, 4000, 4000)], _at(2024, 6, 1)),
        ]
    )
    job = AuditJob(audit_id="audit-2", exchange_connection_ids=[BINANCE], jurisdiction="US", tax_year=2024)

    _orchestrator(test_session_factory, settings).run(job)

    with test_session_factory() as session:
        result = AuditRepository(session).get_result(job.audit_id)
    assert result is not None
    (match,) = result.capital_gains.matches
    assert match.cost_basis == Decimal(500)
    (issue,) = result.issues
    assert issue.type == IssueType.UNMATCHED_DISPOSAL
    assert issue.quantity == Decimal(1)
