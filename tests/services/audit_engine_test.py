from __future__ import annotations

import random
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from domain.audit import AuditJob, AuditOptions
from domain.disposals import HoldingTerm
from domain.ledger import Transaction, TransactionType
from domain.lots import CostBasisMethod
from services.audit_engine import compute_audit
from tests.constants import BTC, ETH, MAIN_WALLET, SOL, USD
from tests.helpers.time_utils import inflow, make_transaction, outflow


def _at(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


def _buy(symbol: str, quantity: str, cost: str, at: datetime) -> Transaction:
    return make_transaction(
        tx_type=TransactionType.BUY, flows=[inflow(symbol, quantity, cost), outflow(USD, cost, cost)], timestamp=at
    )


def _sell(symbol: str, quantity: str, proceeds: str, at: datetime) -> Transaction:
    return make_transaction(
        tx_type=TransactionType.SELL,
        flows=[outflow(symbol, quantity, proceeds), inflow(USD, proceeds, proceeds)],
        timestamp=at,
    )


def _job(jurisdiction: str = "US", **options: object) -> AuditJob:
    return AuditJob(
        audit_id="audit-1",
        wallet_ids=[MAIN_WALLET],
        jurisdiction=jurisdiction,
        tax_year=2024,
        options=AuditOptions.model_validate(options),
    )


@pytest.fixture(scope="function")
def transactions() -> list[Transaction]:
    return [
        _buy(ETH, "1", "1000", _at(2023, 3, 1)),
        _buy(ETH, "1", "2000", _at(2024, 2, 1)),
        _sell(ETH, "1", "3000", _at(2024, 6, 1)),
        make_transaction(tx_type=TransactionType.REWARD, flows=[inflow(SOL, 10, 100)], timestamp=_at(2024, 7, 1)),
        # After the tax year, never part of the run.
        _sell(ETH, "1", "5000", _at(2025, 2, 1)),
    ]


def test_us_audit_end_to_end(transactions: list[Transaction]) -> None:
    result = compute_audit(_job(), transactions)

    (match,) = result.capital_gains.matches
    assert match.term == HoldingTerm.LONG_TERM
    assert match.gain_loss == Decimal(2000)
    assert result.income.staking == Decimal(100)
    # Long-term gain falls in the 0% bracket, income is taxed at 22%.
    assert result.summary.estimated_tax == Decimal("22.00")
    assert result.summary.total_transactions == 3
    assert result.summary.net_gain_loss == Decimal(2000)
    assert result.summary.period_start == _at(2024, 1, 1)
    assert result.loss_carryforward is not None
    assert result.monthly_breakdown is None
    assert result.metadata.jurisdiction == "US"
    assert result.metadata.cost_basis_method == CostBasisMethod.FIFO
    assert result.issues == []

    holdings = {asset.asset: asset for asset in result.holdings.assets}
    assert holdings[ETH].balance == Decimal(1)
    assert holdings[ETH].cost_basis == Decimal(2000)
    assert holdings[ETH].value == Decimal(3000)
    assert holdings[SOL].value == Decimal(100)
    assert result.holdings.total_value == Decimal(3100)


def test_content_hash_is_stable(transactions: list[Transaction]) -> None:
    shuffled = list(transactions) + transactions[:2]
    random.Random(7).shuffle(shuffled)

    first = compute_audit(_job(), transactions, processed_at=_at(2025, 1, 1))
    second = compute_audit(_job(), shuffled, processed_at=_at(2025, 3, 1))

    assert first.content_hash is not None and len(first.content_hash) == 64
    assert first.content_hash == second.content_hash
    assert first.metadata.processed_at != second.metadata.processed_at


def test_cost_basis_method_changes_result(transactions: list[Transaction]) -> None:
    fifo = compute_audit(_job(), transactions)
    lifo = compute_audit(_job(cost_basis_method=CostBasisMethod.LIFO), transactions)

    (match,) = lifo.capital_gains.matches
    assert match.term == HoldingTerm.SHORT_TERM
    assert match.gain_loss == Decimal(1000)
    assert fifo.content_hash != lifo.content_hash


def test_progress_is_reported(transactions: list[Transaction]) -> None:
    seen: list[int] = []

    compute_audit(_job(), transactions, on_progress=seen.append)

    assert seen == [40, 70, 85]


def test_brazil_monthly_exemption() -> None:
    transactions = [
        _buy(BTC, "1", "10000", _at(2024, 1, 5)),
        _sell(BTC, "0.5", "30000", _at(2024, 1, 20)),
        _buy(BTC, "1", "20000", _at(2024, 2, 5)),
        _sell(BTC, "1", "40000", _at(2024, 3, 10)),
    ]

    result = compute_audit(_job("BR", currency="BRL"), transactions)

    breakdown = result.monthly_breakdown
    assert breakdown is not None
    assert breakdown.entries[0].exempt
    assert breakdown.entries[0].capital_gains == Decimal(25000)
    assert not breakdown.entries[2].exempt
    assert breakdown.entries[2].taxable_gains == Decimal(25000)
    assert result.summary.estimated_tax == Decimal("3750.00")
    assert result.summary.currency == "BRL"
    assert result.jurisdiction == "BR"


def test_brazil_volume_includes_disposals_without_lots() -> None:
    transactions = [
        _buy(ETH, "1", "25000", _at(2024, 1, 5)),
        _sell(ETH, "1", "30000", _at(2024, 3, 10)),
        _sell(BTC, "1", "10000", _at(2024, 3, 12)),
    ]

    result = compute_audit(_job("BR", currency="BRL"), transactions)

    breakdown = result.monthly_breakdown
    assert breakdown is not None
    march = breakdown.entries[2]
    assert march.sales_volume == Decimal(40000)
    assert not march.exempt
    assert march.taxable_gains == Decimal(5000)
    assert result.summary.estimated_tax == Decimal("750.00")
    assert result.capital_gains.unmatched_proceeds == Decimal(10000)


def test_us_prior_carryforward_absorbs_short_term_gain() -> None:
    transactions = [_buy(ETH, "1", "1000", _at(2024, 2, 1)), _sell(ETH, "1", "11000", _at(2024, 4, 1))]

    result = compute_audit(_job(prior_loss_carryforward="10000"), transactions)

    assert result.capital_gains.net_short_term == Decimal(10000)
    assert result.loss_carryforward is not None
    assert result.loss_carryforward.taxable_net == Decimal(0)
    assert result.summary.estimated_tax == Decimal("0.00")


def test_missing_history_is_reported_not_fatal() -> None:
    transactions = [_sell(ETH, "2", "4000", _at(2024, 5, 1))]

    result = compute_audit(_job(), transactions)

    assert result.capital_gains.matches == []
    assert [issue.type for issue in result.issues] == ["UNMATCHED_DISPOSAL"]
    assert "Address high-severity issues before filing" not in result.recommendations
