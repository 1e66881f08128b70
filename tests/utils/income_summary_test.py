from __future__ import annotations

from decimal import Decimal

from domain.audit import AuditOptions
from domain.issues import IssueType, Severity
from domain.ledger import FlowDirection, Provenance, Transaction, TransactionCategory, TransactionType
from tests.constants import BINANCE, SOL
from tests.helpers.time_utils import inflow, leg, make_transaction
from utils.income_summary import compute_income


def _reward(value: int | None = 10) -> Transaction:
    return make_transaction(tx_type=TransactionType.REWARD, flows=[inflow(SOL, 1, value)])


def test_income_is_bucketed() -> None:
    reward = _reward()
    mining = make_transaction(
        tx_type=TransactionType.EXCHANGE_INTEREST,
        flows=[inflow("BTC", "0.001", 60)],
        provenance=Provenance.EXCHANGE,
        exchange_connection_id=BINANCE,
        category=TransactionCategory.INCOME_MINING,
    )
    airdrop = make_transaction(tx_type=TransactionType.AIRDROP, flows=[inflow("JUP", 100, 80)])
    fee = make_transaction(
        tx_type=TransactionType.FEE, flows=[leg(SOL, "0.01", FlowDirection.OUT, value=2, is_fee=True)]
    )

    report, issues = compute_income([reward, mining, airdrop, fee], AuditOptions())

    assert report.staking == Decimal(10)
    assert report.mining == Decimal(60)
    assert report.airdrops == Decimal(80)
    # Fees are deductible and reduce income.
    assert report.other == Decimal(-2)
    assert report.total == Decimal(148)
    assert [event.type for event in report.events] == ["staking", "mining", "airdrops", "other"]
    assert issues == []


def test_options_exclude_income_types() -> None:
    airdrop = make_transaction(tx_type=TransactionType.AIRDROP, flows=[inflow("JUP", 100, 80)])

    report, _ = compute_income([_reward(), airdrop], AuditOptions(include_staking=False, include_airdrops=False))

    assert report.total == Decimal(0)
    assert report.events == []


def test_unpriced_income_is_an_issue() -> None:
    report, issues = compute_income([_reward(None)], AuditOptions())

    assert report.total == Decimal(0)
    (issue,) = issues
    assert issue.type == IssueType.MISSING_PRICE
    assert issue.severity == Severity.LOW
