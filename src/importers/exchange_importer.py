from __future__ import annotations

import logging
from decimal import Decimal
from typing import Callable, Iterable

from domain.errors import NormalizationError
from domain.ledger import (
    EXCHANGE_ASSET_PREFIX,
    ExchangeConnectionId,
    Flow,
    FlowDirection,
    Provenance,
    Transaction,
    TransactionCategory,
    TransactionType,
)

from .flow_builder import make_flow, stable_transaction_id, transaction_total, with_stable_flow_ids
from .records import ExchangeRecord, ExchangeRecordType, TradeSide

logger = logging.getLogger(__name__)

R = ExchangeRecordType
T = TransactionType
C = TransactionCategory

TYPE_MAP: dict[ExchangeRecordType, TransactionType] = {
    R.TRADE: T.EXCHANGE_TRADE,
    R.C2C_TRADE: T.EXCHANGE_C2C_TRADE,
    R.DEPOSIT: T.EXCHANGE_DEPOSIT,
    R.WITHDRAWAL: T.EXCHANGE_WITHDRAWAL,
    R.FEE: T.FEE,
    R.FIAT_BUY: T.EXCHANGE_FIAT_BUY,
    R.FIAT_SELL: T.EXCHANGE_FIAT_SELL,
    R.CONVERT: T.EXCHANGE_CONVERT,
    R.DUST_CONVERT: T.EXCHANGE_DUST_CONVERT,
    R.STAKE: T.EXCHANGE_STAKE,
    R.UNSTAKE: T.EXCHANGE_UNSTAKE,
    R.INTEREST: T.EXCHANGE_INTEREST,
    R.DIVIDEND: T.EXCHANGE_DIVIDEND,
    R.MINING: T.EXCHANGE_INTEREST,
    R.MARGIN_BORROW: T.MARGIN_BORROW,
    R.MARGIN_REPAY: T.MARGIN_REPAY,
    R.MARGIN_INTEREST: T.MARGIN_INTEREST,
    R.MARGIN_LIQUIDATION: T.MARGIN_LIQUIDATION,
}

# Deposits and withdrawals stay uncategorized until the linker pairs them.
CATEGORY_MAP: dict[TransactionType, TransactionCategory] = {
    T.EXCHANGE_TRADE: C.DISPOSAL_SWAP,
    T.EXCHANGE_C2C_TRADE: C.DISPOSAL_SWAP,
    T.EXCHANGE_FIAT_BUY: C.DISPOSAL_SWAP,
    T.EXCHANGE_FIAT_SELL: C.DISPOSAL_SALE,
    T.EXCHANGE_STAKE: C.TRANSFER_INTERNAL,
    T.EXCHANGE_UNSTAKE: C.TRANSFER_INTERNAL,
    T.EXCHANGE_INTEREST: C.INCOME_STAKING_REWARD,
    T.EXCHANGE_DIVIDEND: C.INCOME_OTHER,
    T.EXCHANGE_DUST_CONVERT: C.DUST,
    T.EXCHANGE_CONVERT: C.DISPOSAL_SWAP,
    T.MARGIN_BORROW: C.DEFI_BORROW,
    T.MARGIN_REPAY: C.DEFI_REPAY,
    T.MARGIN_INTEREST: C.FEE,
    T.MARGIN_LIQUIDATION: C.DISPOSAL_SALE,
    T.FEE: C.FEE,
}

del R, T, C

KNOWN_QUOTES = ("USDT", "USDC", "BUSD", "FDUSD", "BTC", "ETH", "BNB", "BRL", "EUR", "USD", "TRY")


def exchange_asset_id(symbol: str) -> str:
    return f"{EXCHANGE_ASSET_PREFIX}{symbol.lower()}"


def quote_from_pair(trade_pair: str | None, base: str) -> str | None:
    """``BASE/QUOTE`` or ``BASEQUOTE`` with a well-known quote suffix."""
    if not trade_pair:
        return None
    pair = trade_pair.upper()
    if "/" in pair:
        return pair.split("/", 1)[1]
    for quote in KNOWN_QUOTES:
        if pair.startswith(base) and pair.endswith(quote) and len(pair) > len(base):
            return quote
    return None


def _leg(
    symbol: str,
    quantity: Decimal,
    direction: FlowDirection,
    *,
    value: Decimal | None = None,
    price: Decimal | None = None,
    is_fee: bool = False,
) -> Flow:
    return make_flow(
        asset_id=exchange_asset_id(symbol),
        symbol=symbol,
        quantity=abs(quantity),
        direction=direction,
        value=value,
        price=price,
        is_fee=is_fee,
    )


def _fee_leg(record: ExchangeRecord, *, default_asset: str | None = None) -> list[Flow]:
    fee_asset = record.fee_asset or default_asset
    if not record.fee_amount or record.fee_amount <= 0 or fee_asset is None:
        return []
    price = record.price if fee_asset == record.asset else None
    return [_leg(fee_asset, record.fee_amount, FlowDirection.OUT, price=price, is_fee=True)]


def _paired_legs(
    record: ExchangeRecord,
    *,
    main_direction: FlowDirection,
    counter_asset: str | None,
) -> list[Flow]:
    """Main asset leg plus the counter leg of a two-sided exchange.

    Both legs of an exchange carry the same value, so when only one side
    resolves (a stablecoin side, an explicit total) the other inherits it.
    """
    counter_direction = FlowDirection.OUT if main_direction == FlowDirection.IN else FlowDirection.IN
    main = _leg(record.asset, record.amount, main_direction, value=record.total_value, price=record.price)
    if counter_asset is None or not record.quote_amount:
        return [main]

    counter = _leg(counter_asset, record.quote_amount, counter_direction)
    if main.value is None and counter.value is not None:
        main = main.model_copy(update={"value": counter.value})
    elif counter.value is None and main.value is not None:
        counter = counter.model_copy(update={"value": main.value})
    return [main, counter]


def _trade_flows(record: ExchangeRecord) -> list[Flow]:
    quote = record.quote_asset or quote_from_pair(record.trade_pair, record.asset)
    direction = FlowDirection.IN if record.side == TradeSide.BUY else FlowDirection.OUT
    return _paired_legs(record, main_direction=direction, counter_asset=quote) + _fee_leg(record)


def _deposit_flows(record: ExchangeRecord) -> list[Flow]:
    return [_leg(record.asset, record.amount, FlowDirection.IN, value=record.total_value, price=record.price)]


def _withdrawal_flows(record: ExchangeRecord) -> list[Flow]:
    main = _leg(record.asset, record.amount, FlowDirection.OUT, value=record.total_value, price=record.price)
    return [main] + _fee_leg(record, default_asset=record.asset)


def _fiat_buy_flows(record: ExchangeRecord) -> list[Flow]:
    return _paired_legs(record, main_direction=FlowDirection.IN, counter_asset=record.quote_asset) + _fee_leg(record)


def _fiat_sell_flows(record: ExchangeRecord) -> list[Flow]:
    return _paired_legs(record, main_direction=FlowDirection.OUT, counter_asset=record.quote_asset) + _fee_leg(record)


def _convert_flows(record: ExchangeRecord) -> list[Flow]:
    return _paired_legs(record, main_direction=FlowDirection.OUT, counter_asset=record.quote_asset) + _fee_leg(record)


def _stake_flows(record: ExchangeRecord) -> list[Flow]:
    flows = [_leg(record.asset, record.amount, FlowDirection.OUT, value=record.total_value, price=record.price)]
    if record.quote_asset and record.quote_amount:
        # Staked receipt token such as BETH.
        flows.append(_leg(record.quote_asset, record.quote_amount, FlowDirection.IN))
    return flows


def _unstake_flows(record: ExchangeRecord) -> list[Flow]:
    flows = [_leg(record.asset, record.amount, FlowDirection.IN, value=record.total_value, price=record.price)]
    if record.quote_asset and record.quote_amount:
        flows.append(_leg(record.quote_asset, record.quote_amount, FlowDirection.OUT))
    return flows


def _inbound_flows(record: ExchangeRecord) -> list[Flow]:
    return [_leg(record.asset, record.amount, FlowDirection.IN, value=record.total_value, price=record.price)]


def _outbound_flows(record: ExchangeRecord) -> list[Flow]:
    return [_leg(record.asset, record.amount, FlowDirection.OUT, value=record.total_value, price=record.price)]


def _fee_flows(record: ExchangeRecord) -> list[Flow]:
    return [
        _leg(record.asset, record.amount, FlowDirection.OUT, value=record.total_value, price=record.price, is_fee=True)
    ]


def _liquidation_flows(record: ExchangeRecord) -> list[Flow]:
    flows = _outbound_flows(record)
    if record.quote_asset and record.quote_amount and record.quote_amount > 0:
        flows.append(_leg(record.quote_asset, record.quote_amount, FlowDirection.IN))
    return flows


FLOW_BUILDERS: dict[ExchangeRecordType, Callable[[ExchangeRecord], list[Flow]]] = {
    ExchangeRecordType.TRADE: _trade_flows,
    ExchangeRecordType.C2C_TRADE: _trade_flows,
    ExchangeRecordType.DEPOSIT: _deposit_flows,
    ExchangeRecordType.WITHDRAWAL: _withdrawal_flows,
    ExchangeRecordType.FEE: _fee_flows,
    ExchangeRecordType.FIAT_BUY: _fiat_buy_flows,
    ExchangeRecordType.FIAT_SELL: _fiat_sell_flows,
    ExchangeRecordType.CONVERT: _convert_flows,
    ExchangeRecordType.DUST_CONVERT: _convert_flows,
    ExchangeRecordType.STAKE: _stake_flows,
    ExchangeRecordType.UNSTAKE: _unstake_flows,
    ExchangeRecordType.INTEREST: _inbound_flows,
    ExchangeRecordType.DIVIDEND: _inbound_flows,
    ExchangeRecordType.MINING: _inbound_flows,
    ExchangeRecordType.MARGIN_BORROW: _inbound_flows,
    ExchangeRecordType.MARGIN_REPAY: _outbound_flows,
    ExchangeRecordType.MARGIN_INTEREST: _fee_flows,
    ExchangeRecordType.MARGIN_LIQUIDATION: _liquidation_flows,
}


def transaction_type(record: ExchangeRecord) -> TransactionType:
    if record.type == ExchangeRecordType.TRADE and record.is_p2p:
        return TransactionType.EXCHANGE_C2C_TRADE
    return TYPE_MAP[record.type]


def category_for(record: ExchangeRecord, tx_type: TransactionType) -> TransactionCategory | None:
    if record.type == ExchangeRecordType.MINING:
        return TransactionCategory.INCOME_MINING
    return CATEGORY_MAP.get(tx_type)


class ExchangeImporter:
    """Normalizes exchange account history into canonical transactions."""

    def normalize(self, record: ExchangeRecord) -> Transaction:
        tx_type = transaction_type(record)
        try:
            flows = FLOW_BUILDERS[record.type](record)
            is_transfer = record.type in (ExchangeRecordType.DEPOSIT, ExchangeRecordType.WITHDRAWAL)
            tx_id = stable_transaction_id("exchange", record.connection_id, record.record_id)
            return Transaction(
                id=tx_id,
                provenance=Provenance.EXCHANGE,
                type=tx_type,
                timestamp=record.timestamp,
                external_ref=record.tx_id if is_transfer else record.record_id,
                exchange_connection_id=ExchangeConnectionId(record.connection_id),
                exchange_name=record.exchange_name,
                counterparty_address=record.address,
                network=record.network,
                category=category_for(record, tx_type),
                total_value=transaction_total(flows),
                flows=with_stable_flow_ids(tx_id, flows),
            )
        except ValueError as e:
            # pydantic.ValidationError is a ValueError.
            raise NormalizationError(record.record_id, e) from e

    def normalize_many(self, records: Iterable[ExchangeRecord]) -> list[Transaction]:
        transactions = [self.normalize(record) for record in records]
        transactions.sort(key=lambda tx: tx.timestamp)
        if transactions:
            logger.info("Normalized %d exchange records", len(transactions))
        return transactions

