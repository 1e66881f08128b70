from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable

from domain.errors import NormalizationError
from domain.ledger import (
    Flow,
    FlowDirection,
    Provenance,
    Transaction,
    TransactionCategory,
    TransactionType,
    WalletId,
)

from .flow_builder import make_flow, stable_transaction_id, transaction_total, with_stable_flow_ids
from .records import OnChainRecord, OnChainTransfer

logger = logging.getLogger(__name__)

NATIVE_MINT = "So11111111111111111111111111111111111111112"
NATIVE_SYMBOL = "SOL"
NATIVE_DECIMALS = 9

CATEGORY_MAP: dict[TransactionType, TransactionCategory] = {
    TransactionType.SWAP: TransactionCategory.DISPOSAL_SWAP,
    TransactionType.SELL: TransactionCategory.DISPOSAL_SALE,
    TransactionType.NFT_SALE: TransactionCategory.DISPOSAL_SALE,
    TransactionType.REWARD: TransactionCategory.INCOME_STAKING_REWARD,
    TransactionType.AIRDROP: TransactionCategory.INCOME_AIRDROP,
    TransactionType.LOAN_BORROW: TransactionCategory.DEFI_BORROW,
    TransactionType.LOAN_REPAY: TransactionCategory.DEFI_REPAY,
    TransactionType.FEE: TransactionCategory.FEE,
}


def _direction(transfer: OnChainTransfer, wallet_address: str | None) -> FlowDirection | None:
    if transfer.direction is not None:
        return transfer.direction
    if wallet_address is None:
        return None
    address = wallet_address.lower()
    if transfer.to_address and transfer.to_address.lower() == address:
        return FlowDirection.IN
    if transfer.from_address and transfer.from_address.lower() == address:
        return FlowDirection.OUT
    return None


def infer_type(directions: Iterable[FlowDirection]) -> TransactionType:
    seen = set(directions)
    if FlowDirection.IN in seen and FlowDirection.OUT in seen:
        return TransactionType.SWAP
    if FlowDirection.IN in seen:
        return TransactionType.TRANSFER_IN
    if FlowDirection.OUT in seen:
        return TransactionType.TRANSFER_OUT
    return TransactionType.UNKNOWN


class OnChainImporter:
    """Normalizes parsed on-chain transactions of one wallet."""

    def normalize(self, record: OnChainRecord) -> Transaction:
        try:
            return self._build_transaction(record)
        except ValueError as e:
            raise NormalizationError(record.record_id, e) from e

    def normalize_many(self, records: Iterable[OnChainRecord]) -> list[Transaction]:
        transactions = [self.normalize(record) for record in records]
        transactions.sort(key=lambda tx: tx.timestamp)
        if transactions:
            logger.info("Normalized %d on-chain records", len(transactions))
        return transactions

    def _build_transaction(self, record: OnChainRecord) -> Transaction:
        flows: list[Flow] = []
        counterparty: str | None = None

        for transfer in record.transfers:
            if transfer.raw_amount == 0:
                continue
            direction = _direction(transfer, record.wallet_address)
            if direction is None:
                raise NormalizationError(
                    record.record_id, f"transfer of {transfer.mint} does not involve wallet {record.wallet_id}"
                )
            flows.append(self._transfer_flow(transfer, direction))
            if counterparty is None and not transfer.is_fee:
                counterparty = transfer.to_address if direction == FlowDirection.OUT else transfer.from_address

        if record.fee_lamports > 0:
            flows.append(
                make_flow(
                    asset_id=NATIVE_MINT,
                    symbol=NATIVE_SYMBOL,
                    quantity=Decimal(record.fee_lamports).scaleb(-NATIVE_DECIMALS),
                    direction=FlowDirection.OUT,
                    value=record.fee_value,
                    is_fee=True,
                )
            )

        tx_type = record.type or infer_type(flow.direction for flow in flows if not flow.is_fee)
        tx_id = stable_transaction_id("onchain", record.wallet_id, record.signature)
        return Transaction(
            id=tx_id,
            provenance=Provenance.ON_CHAIN,
            type=tx_type,
            timestamp=record.timestamp,
            external_ref=record.signature,
            wallet_id=WalletId(record.wallet_id),
            counterparty_address=counterparty,
            network=record.network,
            category=CATEGORY_MAP.get(tx_type),
            total_value=transaction_total(flows),
            flows=with_stable_flow_ids(tx_id, flows),
        )

    @staticmethod
    def _transfer_flow(transfer: OnChainTransfer, direction: FlowDirection) -> Flow:
        symbol = transfer.symbol or (NATIVE_SYMBOL if transfer.mint == NATIVE_MINT else None)
        quantity = Decimal(transfer.raw_amount).scaleb(-transfer.decimals)
        flow = make_flow(
            asset_id=transfer.mint,
            symbol=symbol,
            quantity=quantity,
            direction=direction,
            value=transfer.value,
            price=transfer.price,
            is_fee=transfer.is_fee,
        )
        # Keep the chain's own precision rather than the normalized one.
        return flow.model_copy(update={"raw_amount": transfer.raw_amount, "decimals": transfer.decimals})
