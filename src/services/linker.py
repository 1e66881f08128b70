from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from enum import StrEnum
from time import perf_counter
from typing import Mapping, Sequence

from pydantic import BaseModel, Field

from config import AppSettings
from db.repositories import KnownAddressRepository, TransactionRepository
from domain.ledger import (
    FlowDirection,
    KnownAddress,
    Provenance,
    Transaction,
    TransactionCategory,
    TransactionId,
    TransactionType,
)

logger = logging.getLogger(__name__)

# Floor for the relative value difference so dust withdrawals do not divide by zero.
MIN_REFERENCE_VALUE = Decimal("0.01")

DESTINATION_CLASSIFIED_TYPES = (TransactionType.TRANSFER_OUT, TransactionType.UNKNOWN)


class LinkStrategy(StrEnum):
    EXTERNAL_REF = "EXTERNAL_REF"
    AMOUNT_TIME_WINDOW = "AMOUNT_TIME_WINDOW"


@dataclass(frozen=True)
class LinkTolerances:
    time_window: timedelta = timedelta(hours=4)
    value_tolerance: Decimal = Decimal("0.10")
    offramp_window: timedelta = timedelta(hours=24)

    @classmethod
    def from_settings(cls, settings: AppSettings) -> LinkTolerances:
        return cls(
            time_window=timedelta(hours=settings.link_time_window_hours),
            value_tolerance=settings.link_value_tolerance,
            offramp_window=timedelta(hours=settings.offramp_window_hours),
        )


class LinkedPair(BaseModel):
    exchange_transaction_id: TransactionId
    onchain_transaction_id: TransactionId
    strategy: LinkStrategy
    category: TransactionCategory


class OffRampCandidate(BaseModel):
    """A deposit sold for fiat on the same connection shortly afterwards."""

    deposit_transaction_id: TransactionId
    sale_transaction_id: TransactionId
    exchange_connection_id: str
    asset: str
    quantity: Decimal
    hours_apart: Decimal


class LinkSummary(BaseModel):
    linked: list[LinkedPair] = Field(default_factory=list)
    classified_by_address: list[TransactionId] = Field(default_factory=list)
    known_addresses_added: int = 0
    offramp_candidates: list[OffRampCandidate] = Field(default_factory=list)


def _assets(tx: Transaction, direction: FlowDirection) -> set[str]:
    return {flow.lot_key for flow in tx.economic_flows(direction)}


def _category_for(exchange_tx: Transaction) -> TransactionCategory:
    if exchange_tx.type == TransactionType.EXCHANGE_DEPOSIT:
        return TransactionCategory.TRANSFER_TO_EXCHANGE
    return TransactionCategory.TRANSFER_FROM_EXCHANGE


class CrossSourceLinker:
    """Pairs exchange deposits and withdrawals with the on-chain transfers behind them.

    Strategies run in order and the first one that links a transaction wins:
    the chain transaction id the exchange reports, then classification of
    sends to known exchange deposit addresses, then an amount and time window
    heuristic for withdrawals. Every link is symmetric and written with a
    compare-and-set, so running the linker again changes nothing.
    """

    def __init__(
        self,
        transactions: TransactionRepository,
        known_addresses: KnownAddressRepository,
        *,
        tolerances: LinkTolerances | None = None,
        wallet_addresses: Mapping[str, str] | None = None,
    ) -> None:
        self._transactions = transactions
        self._known_addresses = known_addresses
        self._tolerances = tolerances or LinkTolerances()
        # wallet id -> address; a wallet without an entry is its own address.
        self._wallet_addresses = dict(wallet_addresses or {})

    def run(self, *, wallet_ids: Sequence[str] | None = None) -> LinkSummary:
        start = perf_counter()
        summary = LinkSummary()
        self.link_by_external_ref(summary)
        summary.known_addresses_added = self.learn_deposit_addresses()
        self.classify_by_destination(summary)
        self.link_withdrawals_by_window(summary, wallet_ids=wallet_ids)
        summary.offramp_candidates = self.detect_offramps()
        logger.info(
            "Linked %d pairs, classified %d sends by address, %d off-ramp candidates in %.3fs",
            len(summary.linked),
            len(summary.classified_by_address),
            len(summary.offramp_candidates),
            perf_counter() - start,
        )
        return summary

    def link_by_external_ref(self, summary: LinkSummary) -> None:
        exchange_transfers = self._transactions.list(
            provenance=Provenance.EXCHANGE,
            types=(TransactionType.EXCHANGE_DEPOSIT, TransactionType.EXCHANGE_WITHDRAWAL),
            unlinked_only=True,
        )
        for exchange_tx in exchange_transfers:
            if not exchange_tx.external_ref:
                continue
            matches = self._transactions.find_by_external_ref(exchange_tx.external_ref, provenance=Provenance.ON_CHAIN)
            counterparts = [tx for tx in matches if tx.linked_transaction_id is None]
            if not counterparts:
                continue
            onchain_tx = min(counterparts, key=lambda tx: (tx.timestamp, str(tx.id)))
            self._link(summary, exchange_tx, onchain_tx, LinkStrategy.EXTERNAL_REF)

    def learn_deposit_addresses(self) -> int:
        deposits = self._transactions.list(provenance=Provenance.EXCHANGE, types=(TransactionType.EXCHANGE_DEPOSIT,))
        addresses: dict[str, KnownAddress] = {}
        for deposit in deposits:
            if not deposit.counterparty_address or deposit.counterparty_address in addresses:
                continue
            addresses[deposit.counterparty_address] = KnownAddress(
                address=deposit.counterparty_address,
                label=f"{deposit.exchange_name or 'exchange'} deposit address",
                exchange_name=deposit.exchange_name,
                exchange_connection_id=deposit.exchange_connection_id,
            )
        return self._known_addresses.upsert_many(list(addresses.values()))

    def classify_by_destination(self, summary: LinkSummary) -> None:
        known = {address.address for address in self._known_addresses.list()}
        if not known:
            return
        sends = self._transactions.list(
            provenance=Provenance.ON_CHAIN, types=DESTINATION_CLASSIFIED_TYPES, unlinked_only=True
        )
        for tx in sends:
            if tx.counterparty_address not in known or tx.category == TransactionCategory.TRANSFER_TO_EXCHANGE:
                continue
            if self._transactions.set_category(tx.id, TransactionCategory.TRANSFER_TO_EXCHANGE):
                summary.classified_by_address.append(tx.id)

    def link_withdrawals_by_window(self, summary: LinkSummary, *, wallet_ids: Sequence[str] | None = None) -> None:
        withdrawals = self._transactions.list(
            provenance=Provenance.EXCHANGE, types=(TransactionType.EXCHANGE_WITHDRAWAL,), unlinked_only=True
        )
        if not withdrawals:
            return
        receipts = self._transactions.list(
            provenance=Provenance.ON_CHAIN, types=(TransactionType.TRANSFER_IN,), unlinked_only=True
        )
        if wallet_ids is not None:
            audited = set(wallet_ids)
            receipts = [tx for tx in receipts if tx.wallet_id in audited]

        known_wallets = {tx.wallet_id for tx in receipts if tx.wallet_id}
        claimed: set[TransactionId] = set()
        for withdrawal in withdrawals:
            available = [tx for tx in receipts if tx.id not in claimed]
            candidate = self._best_receipt(withdrawal, available, known_wallets=known_wallets)
            if candidate is None:
                continue
            if self._link(summary, withdrawal, candidate, LinkStrategy.AMOUNT_TIME_WINDOW):
                claimed.add(candidate.id)

    def detect_offramps(self) -> list[OffRampCandidate]:
        deposits = self._transactions.list(provenance=Provenance.EXCHANGE, types=(TransactionType.EXCHANGE_DEPOSIT,))
        sales = self._transactions.list(provenance=Provenance.EXCHANGE, types=(TransactionType.EXCHANGE_FIAT_SELL,))
        candidates: list[OffRampCandidate] = []
        for deposit in deposits:
            deposited = _assets(deposit, FlowDirection.IN)
            for sale in sales:
                if sale.exchange_connection_id != deposit.exchange_connection_id:
                    continue
                delta = sale.timestamp - deposit.timestamp
                if delta < timedelta(0) or delta > self._tolerances.offramp_window:
                    continue
                sold = [flow for flow in sale.economic_flows(FlowDirection.OUT) if flow.lot_key in deposited]
                if not sold:
                    continue
                candidates.append(
                    OffRampCandidate(
                        deposit_transaction_id=deposit.id,
                        sale_transaction_id=sale.id,
                        exchange_connection_id=deposit.exchange_connection_id or "",
                        asset=sold[0].lot_key,
                        quantity=sold[0].quantity,
                        hours_apart=Decimal(int(delta.total_seconds())) / Decimal(3600),
                    )
                )
        return candidates

    def _best_receipt(
        self, withdrawal: Transaction, receipts: Sequence[Transaction], *, known_wallets: set[str]
    ) -> Transaction | None:
        if withdrawal.total_value is None:
            return None
        reference = max(withdrawal.total_value, MIN_REFERENCE_VALUE)
        assets = _assets(withdrawal, FlowDirection.OUT)
        target_wallets = self._wallets_for_address(withdrawal.counterparty_address, known_wallets)

        scored: list[tuple[timedelta, Decimal, str, Transaction]] = []
        for receipt in receipts:
            if target_wallets and receipt.wallet_id not in target_wallets:
                continue
            if receipt.total_value is None:
                continue
            if assets and not assets & _assets(receipt, FlowDirection.IN):
                continue
            time_diff = abs(receipt.timestamp - withdrawal.timestamp)
            if time_diff > self._tolerances.time_window:
                continue
            value_diff = abs(withdrawal.total_value - receipt.total_value) / reference
            if value_diff > self._tolerances.value_tolerance:
                continue
            scored.append((time_diff, value_diff, str(receipt.id), receipt))

        if not scored:
            return None
        return min(scored, key=lambda item: item[:3])[3]

    def _wallets_for_address(self, address: str | None, known_wallets: set[str]) -> set[str]:
        """Wallets owning the withdrawal address; empty means any audited wallet."""
        if not address:
            return set()
        owners = {wallet_id for wallet_id, owned in self._wallet_addresses.items() if owned == address}
        if not owners and address in known_wallets:
            # Wallet ids double as addresses when no mapping was supplied.
            owners = {address}
        return owners

    def _link(
        self,
        summary: LinkSummary,
        exchange_tx: Transaction,
        onchain_tx: Transaction,
        strategy: LinkStrategy,
    ) -> bool:
        category = _category_for(exchange_tx)
        linked = self._transactions.link_pair(
            exchange_tx.id,
            onchain_tx.id,
            first_category=category,
            second_category=category,
        )
        if linked:
            summary.linked.append(
                LinkedPair(
                    exchange_transaction_id=exchange_tx.id,
                    onchain_transaction_id=onchain_tx.id,
                    strategy=strategy,
                    category=category,
                )
            )
            logger.debug("Linked %s <-> %s via %s", exchange_tx.id, onchain_tx.id, strategy)
        return linked
