from __future__ import annotations

from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from api.api import app
from api.dependencies import get_session
from db.repositories import AuditRepository, KnownAddressRepository, TransactionRepository
from domain.audit import AuditJob, AuditStatus
from domain.ledger import KnownAddress, Provenance, TransactionType
from services.audit_engine import compute_audit
from tests.constants import BINANCE, ETH, MAIN_WALLET
from tests.helpers.time_utils import inflow, make_transaction


@pytest.fixture(scope="function")
def client(test_session: Session) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_session] = lambda: test_session
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_unknown_audit_is_404(client: TestClient) -> None:
    response = client.get("/audits/missing")

    assert response.status_code == 404
    assert response.json()["detail"] == "Unknown audit missing"
    assert client.get("/audits/missing/result").status_code == 404


def test_audit_status_and_result(client: TestClient, test_session: Session) -> None:
    audits = AuditRepository(test_session)
    audits.create("audit-1", jurisdiction="US", tax_year=2024)
    audits.create("audit-2", jurisdiction="EU", tax_year=2024)
    for status in (AuditStatus.QUEUED, AuditStatus.PROCESSING, AuditStatus.ANALYZING, AuditStatus.GENERATING_REPORT):
        audits.update_status("audit-1", status)
    job = AuditJob(audit_id="audit-1", wallet_ids=[MAIN_WALLET], jurisdiction="US", tax_year=2024)
    result = compute_audit(job, [make_transaction(tx_type=TransactionType.TRANSFER_IN, flows=[inflow(ETH, 1, 100)])])
    audits.complete("audit-1", result)

    listed = client.get("/audits").json()
    status = client.get("/audits/audit-1").json()
    document = client.get("/audits/audit-1/result").json()

    assert [item["audit_id"] for item in listed] == ["audit-1", "audit-2"]
    assert status["status"] == "COMPLETED"
    assert status["progress"] == 100
    assert document["content_hash"] == result.content_hash
    assert client.get("/audits/audit-2/result").status_code == 404


def test_transactions_filters(client: TestClient, test_session: Session) -> None:
    onchain = make_transaction(tx_type=TransactionType.TRANSFER_IN, flows=[inflow(ETH, 1, 100)])
    exchange = make_transaction(
        tx_type=TransactionType.EXCHANGE_DEPOSIT,
        flows=[inflow(ETH, 1, 100)],
        provenance=Provenance.EXCHANGE,
        exchange_connection_id=BINANCE,
    )
    TransactionRepository(test_session).create_many([onchain, exchange])

    everything = client.get("/transactions").json()
    exchange_only = client.get("/transactions", params={"provenance": "EXCHANGE"}).json()

    assert len(everything) == 2
    assert [item["id"] for item in exchange_only] == [str(exchange.id)]
    assert client.get("/transactions", params={"limit": 0}).status_code == 422


def test_known_addresses(client: TestClient, test_session: Session) -> None:
    KnownAddressRepository(test_session).upsert_many([KnownAddress(address="Addr1", label="binance deposit address")])

    response = client.get("/known-addresses")

    assert response.status_code == 200
    assert response.json()[0]["address"] == "Addr1"
