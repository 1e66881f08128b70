from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from domain.audit import AuditOptions, IncomeEvent, IncomeReport
from domain.issues import AuditIssue, IssueType, Severity
from domain.ledger import (
    AIRDROP_INCOME_TYPES,
    FEE_EXPENSE_TYPES,
    REWARD_INCOME_TYPES,
    STAKING_INCOME_TYPES,
    FlowDirection,
    Transaction,
    TransactionCategory,
)


def _income_bucket(tx: Transaction, options: AuditOptions) -> str | None:
    if tx.type in STAKING_INCOME_TYPES and options.include_staking:
        if tx.category == TransactionCategory.INCOME_MINING:
            return "mining"
        return "staking"
    if tx.type in AIRDROP_INCOME_TYPES and options.include_airdrops:
        return "airdrops"
    if tx.type in REWARD_INCOME_TYPES and options.include_staking:
        return "rewards"
    if tx.type in FEE_EXPENSE_TYPES and options.include_fees:
        return "other"
    return None


def _transaction_value(tx: Transaction) -> Decimal | None:
    if tx.total_value is not None:
        return tx.total_value
    # Fee-only transactions carry their value on the fee flows.
    fee_values = [flow.value for flow in tx.flows if flow.is_fee]
    if fee_values and all(value is not None for value in fee_values):
        return sum((value for value in fee_values if value is not None), Decimal(0))
    return None


def compute_income(transactions: Iterable[Transaction], options: AuditOptions) -> tuple[IncomeReport, list[AuditIssue]]:
    """Aggregate income events. Deductible expenses reduce ``other``."""
    report = IncomeReport()
    issues: list[AuditIssue] = []

    for tx in sorted(transactions, key=lambda item: (item.timestamp, str(item.id))):
        bucket = _income_bucket(tx, options)
        if bucket is None:
            continue

        value = _transaction_value(tx)
        if value is None:
            issues.append(
                AuditIssue(
                    severity=Severity.LOW,
                    type=IssueType.MISSING_PRICE,
                    description=f"Missing value for {tx.type} income event {tx.external_ref or tx.id}",
                    transaction=tx.external_ref or str(tx.id),
                    recommendation="Provide the market value at the time of receipt",
                )
            )
            continue

        signed = -value if bucket == "other" else value
        setattr(report, bucket, getattr(report, bucket) + signed)

        inbound = tx.economic_flows(FlowDirection.IN)
        first = inbound[0] if inbound else (tx.flows[0] if tx.flows else None)
        report.events.append(
            IncomeEvent(
                transaction_id=tx.id,
                type=bucket,
                asset=first.lot_key if first is not None else "Unknown",
                amount=first.quantity if first is not None else Decimal(0),
                value=signed,
                date=tx.timestamp,
                reference=tx.external_ref,
            )
        )

    report.total = report.staking + report.mining + report.airdrops + report.rewards + report.other
    return report, issues
