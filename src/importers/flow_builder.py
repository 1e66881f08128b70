from __future__ import annotations

from decimal import Decimal
from typing import Iterable
from uuid import NAMESPACE_URL, uuid5

from domain.ledger import AssetId, Flow, FlowDirection, FlowId, TransactionId, is_stablecoin

USD_LIKE_FIAT = "USD"
ID_NAMESPACE = uuid5(NAMESPACE_URL, "crypto-audit")


def stable_transaction_id(*parts: str) -> TransactionId:
    """Derive the transaction id from the source record so re-imports map to the same row."""
    return TransactionId(uuid5(ID_NAMESPACE, ":".join(parts)))


def with_stable_flow_ids(transaction_id: TransactionId, flows: Iterable[Flow]) -> list[Flow]:
    return [
        flow.model_copy(update={"id": FlowId(uuid5(transaction_id, str(position)))})
        for position, flow in enumerate(flows)
    ]


def is_usd_like(asset_id: str, symbol: str | None = None) -> bool:
    if symbol and symbol.upper() == USD_LIKE_FIAT:
        return True
    return is_stablecoin(asset_id, symbol)


def to_raw_amount(quantity: Decimal) -> tuple[int, int]:
    """Split a positive decimal quantity into ``(raw_amount, decimals)`` without rounding."""
    normalized = abs(quantity).normalize()
    exponent = normalized.as_tuple().exponent
    if not isinstance(exponent, int):
        raise ValueError(f"Quantity is not finite: {quantity}")
    decimals = max(0, -exponent)
    return int(normalized.scaleb(decimals)), decimals


def resolve_value(
    quantity: Decimal,
    *,
    asset_id: str,
    symbol: str | None,
    value: Decimal | None = None,
    price: Decimal | None = None,
) -> Decimal | None:
    """Explicit value, else price x quantity, else 1:1 for USD-like assets.

    Returns ``None`` when nothing resolves; an unknown price is never zero.
    """
    if value is not None:
        return value
    if price is not None and price > 0:
        return price * quantity
    if is_usd_like(asset_id, symbol):
        return quantity
    return None


def make_flow(
    *,
    asset_id: str,
    symbol: str | None,
    quantity: Decimal,
    direction: FlowDirection,
    value: Decimal | None = None,
    price: Decimal | None = None,
    is_fee: bool = False,
) -> Flow:
    raw_amount, decimals = to_raw_amount(quantity)
    resolved = resolve_value(abs(quantity), asset_id=asset_id, symbol=symbol, value=value, price=price)
    return Flow(
        asset_id=AssetId(asset_id),
        symbol=symbol.upper() if symbol else None,
        raw_amount=raw_amount,
        decimals=decimals,
        direction=direction,
        value=resolved,
        is_fee=is_fee,
        price=price if price is not None and price > 0 else None,
    )


def transaction_total(flows: Iterable[Flow]) -> Decimal | None:
    """Resolved non-fee inbound value if any, else outbound, else ``None``."""
    non_fee = [flow for flow in flows if not flow.is_fee and flow.value is not None]
    for direction in (FlowDirection.IN, FlowDirection.OUT):
        values = [flow.value for flow in non_fee if flow.direction == direction and flow.value is not None]
        if values:
            return sum(values, Decimal(0))
    return None
