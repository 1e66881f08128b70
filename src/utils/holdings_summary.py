from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from domain.audit import HoldingAsset, HoldingsReport
from domain.balance_tracker import BalanceTracker
from domain.ledger import FlowDirection, Transaction
from domain.lots import LotLedger

DUST_THRESHOLD = Decimal("0.000001")


def _account(tx: Transaction) -> str:
    if tx.exchange_connection_id:
        return f"exchange::{tx.exchange_connection_id}"
    return f"wallet::{tx.wallet_id or 'manual'}"


def compute_holdings(transactions: Iterable[Transaction], ledger: LotLedger, *, as_of: datetime) -> HoldingsReport:
    """Period-end holdings.

    Balances replay every non-fiat flow per account, fees included, so a
    deposit moves a coin between accounts instead of losing it. Cost basis is
    what is left in the open lots and value uses the last unit price seen.
    """
    tracker = BalanceTracker()
    prices: dict[str, Decimal] = {}

    for tx in sorted(transactions, key=lambda item: (item.timestamp, str(item.id))):
        if tx.timestamp > as_of:
            continue
        for flow in tx.flows:
            if flow.is_fiat:
                continue
            if flow.value is not None and flow.value > 0:
                prices[flow.lot_key] = flow.value / flow.quantity
            signed = flow.quantity if flow.direction == FlowDirection.IN else -flow.quantity
            tracker.apply_movement(asset=flow.lot_key, account=_account(tx), quantity=signed)

    open_cost: dict[str, Decimal] = defaultdict(lambda: Decimal(0))
    for lot in ledger.lots():
        if lot.remaining > 0:
            open_cost[lot.asset] += lot.cost_for(lot.remaining)

    assets: list[HoldingAsset] = []
    for asset, balance in sorted(tracker.asset_totals().items()):
        if balance <= DUST_THRESHOLD:
            continue
        cost_basis = open_cost.get(asset, Decimal(0))
        price = prices.get(asset)
        value = balance * price if price is not None else None
        assets.append(
            HoldingAsset(
                asset=asset,
                balance=balance,
                cost_basis=cost_basis,
                value=value,
                unrealized_gain_loss=value - cost_basis if value is not None else None,
            )
        )

    return HoldingsReport(
        as_of=as_of,
        total_value=sum((asset.value for asset in assets if asset.value is not None), Decimal(0)),
        assets=assets,
    )
