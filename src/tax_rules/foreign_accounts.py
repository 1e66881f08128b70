from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel

from domain.balance_tracker import BalanceTracker
from domain.ledger import FlowDirection, Provenance, Transaction

logger = logging.getLogger(__name__)


class AccountPeak(BaseModel):
    exchange_connection_id: str
    exchange_name: str | None = None
    peak_value: Decimal
    peak_at: datetime | None = None
    closing_value: Decimal


class ForeignAccountReport(BaseModel):
    threshold: Decimal
    accounts: list[AccountPeak]
    aggregate_peak: Decimal
    disclosure_required: bool
    unpriced_assets: list[str]


def aggregate_foreign_accounts(
    transactions: Iterable[Transaction],
    *,
    period_start: datetime,
    period_end: datetime,
    threshold: Decimal,
) -> ForeignAccountReport:
    """Peak settlement-currency balance per exchange account over the period.

    History before ``period_start`` only builds opening balances. Holdings are
    valued at the last unit price seen in any flow up to that point; an account
    is re-valued after each of its own movements. Disclosure is required once
    the sum of per-account peaks exceeds ``threshold``.
    """
    ordered = sorted(
        (
            tx
            for tx in transactions
            if tx.provenance == Provenance.EXCHANGE and tx.exchange_connection_id and tx.timestamp <= period_end
        ),
        key=lambda tx: (tx.timestamp, str(tx.id)),
    )

    tracker = BalanceTracker()
    prices: dict[str, Decimal] = {}
    names: dict[str, str | None] = {}
    peaks: dict[str, tuple[Decimal, datetime | None]] = {}
    opened = False

    def account_value(account: str) -> Decimal:
        total = Decimal(0)
        for asset, quantity in tracker.balances_for(account).items():
            if quantity > 0 and asset in prices:
                total += quantity * prices[asset]
        return total

    def record_peak(account: str, at: datetime | None) -> None:
        value = account_value(account)
        current = peaks.get(account)
        if current is None or value > current[0]:
            peaks[account] = (value, at)

    for tx in ordered:
        if not opened and tx.timestamp >= period_start:
            for account in tracker.accounts():
                record_peak(account, period_start)
            opened = True

        account = str(tx.exchange_connection_id)
        names.setdefault(account, tx.exchange_name)
        for flow in tx.flows:
            key = flow.lot_key
            if flow.value is not None and flow.value > 0:
                prices[key] = flow.value / flow.quantity
            signed = flow.quantity if flow.direction == FlowDirection.IN else -flow.quantity
            tracker.apply_movement(asset=key, account=account, quantity=signed)

        if opened:
            record_peak(account, tx.timestamp)

    if not opened:
        for account in tracker.accounts():
            record_peak(account, period_start)

    unpriced = sorted(
        {
            asset
            for account in tracker.accounts()
            for asset, quantity in tracker.balances_for(account).items()
            if quantity > 0 and asset not in prices
        }
    )
    if unpriced:
        logger.warning("Foreign account aggregation has no price for: %s", ", ".join(unpriced))

    accounts = [
        AccountPeak(
            exchange_connection_id=account,
            exchange_name=names.get(account),
            peak_value=peaks.get(account, (Decimal(0), None))[0],
            peak_at=peaks.get(account, (Decimal(0), None))[1],
            closing_value=account_value(account),
        )
        for account in tracker.accounts()
    ]
    aggregate_peak = sum((peak.peak_value for peak in accounts), Decimal(0))
    return ForeignAccountReport(
        threshold=threshold,
        accounts=accounts,
        aggregate_peak=aggregate_peak,
        disclosure_required=aggregate_peak > threshold,
        unpriced_assets=unpriced,
    )
