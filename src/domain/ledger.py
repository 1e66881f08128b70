from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import NewType
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

TransactionId = NewType("TransactionId", UUID)
FlowId = NewType("FlowId", UUID)
LotId = NewType("LotId", UUID)
AssetId = NewType("AssetId", str)
WalletId = NewType("WalletId", str)
ExchangeConnectionId = NewType("ExchangeConnectionId", str)


class Provenance(StrEnum):
    ON_CHAIN = "ON_CHAIN"
    EXCHANGE = "EXCHANGE"
    MANUAL = "MANUAL"


class TransactionType(StrEnum):
    # On-chain
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    SWAP = "SWAP"
    BUY = "BUY"
    SELL = "SELL"
    MINT = "MINT"
    BURN = "BURN"
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    REWARD = "REWARD"
    AIRDROP = "AIRDROP"
    NFT_MINT = "NFT_MINT"
    NFT_SALE = "NFT_SALE"
    NFT_PURCHASE = "NFT_PURCHASE"
    LOAN_BORROW = "LOAN_BORROW"
    LOAN_REPAY = "LOAN_REPAY"
    LP_DEPOSIT = "LP_DEPOSIT"
    LP_WITHDRAW = "LP_WITHDRAW"
    BRIDGE_OUT = "BRIDGE_OUT"
    BRIDGE_IN = "BRIDGE_IN"
    FEE = "FEE"
    PROGRAM_INTERACTION = "PROGRAM_INTERACTION"
    UNKNOWN = "UNKNOWN"
    # Exchange
    EXCHANGE_TRADE = "EXCHANGE_TRADE"
    EXCHANGE_C2C_TRADE = "EXCHANGE_C2C_TRADE"
    EXCHANGE_DEPOSIT = "EXCHANGE_DEPOSIT"
    EXCHANGE_WITHDRAWAL = "EXCHANGE_WITHDRAWAL"
    EXCHANGE_FIAT_BUY = "EXCHANGE_FIAT_BUY"
    EXCHANGE_FIAT_SELL = "EXCHANGE_FIAT_SELL"
    EXCHANGE_STAKE = "EXCHANGE_STAKE"
    EXCHANGE_UNSTAKE = "EXCHANGE_UNSTAKE"
    EXCHANGE_INTEREST = "EXCHANGE_INTEREST"
    EXCHANGE_DIVIDEND = "EXCHANGE_DIVIDEND"
    EXCHANGE_DUST_CONVERT = "EXCHANGE_DUST_CONVERT"
    EXCHANGE_CONVERT = "EXCHANGE_CONVERT"
    # Margin
    MARGIN_BORROW = "MARGIN_BORROW"
    MARGIN_REPAY = "MARGIN_REPAY"
    MARGIN_INTEREST = "MARGIN_INTEREST"
    MARGIN_LIQUIDATION = "MARGIN_LIQUIDATION"


class TransactionCategory(StrEnum):
    DISPOSAL_SALE = "DISPOSAL_SALE"
    DISPOSAL_SWAP = "DISPOSAL_SWAP"
    INCOME_STAKING_REWARD = "INCOME_STAKING_REWARD"
    INCOME_MINING = "INCOME_MINING"
    INCOME_AIRDROP = "INCOME_AIRDROP"
    INCOME_OTHER = "INCOME_OTHER"
    TRANSFER_INTERNAL = "TRANSFER_INTERNAL"
    TRANSFER_TO_EXCHANGE = "TRANSFER_TO_EXCHANGE"
    TRANSFER_FROM_EXCHANGE = "TRANSFER_FROM_EXCHANGE"
    DEFI_BORROW = "DEFI_BORROW"
    DEFI_REPAY = "DEFI_REPAY"
    FEE = "FEE"
    DUST = "DUST"


class ClassificationStatus(StrEnum):
    AUTO_RESOLVED = "AUTO_RESOLVED"
    MANUAL = "MANUAL"


class FlowDirection(StrEnum):
    IN = "IN"
    OUT = "OUT"


T = TransactionType

ACQUISITION_TYPES: frozenset[TransactionType] = frozenset(
    {
        T.BUY,
        T.TRANSFER_IN,
        T.SWAP,
        T.REWARD,
        T.AIRDROP,
        T.EXCHANGE_TRADE,
        T.EXCHANGE_C2C_TRADE,
        T.EXCHANGE_FIAT_BUY,
        T.EXCHANGE_CONVERT,
        T.EXCHANGE_DUST_CONVERT,
        T.EXCHANGE_INTEREST,
        T.EXCHANGE_DIVIDEND,
        T.EXCHANGE_UNSTAKE,
        T.MARGIN_BORROW,
        # Transfer basis: market value at deposit time.
        T.EXCHANGE_DEPOSIT,
    }
)

DISPOSAL_TYPES: frozenset[TransactionType] = frozenset(
    {
        T.SELL,
        T.SWAP,
        T.TRANSFER_OUT,
        T.EXCHANGE_TRADE,
        T.EXCHANGE_C2C_TRADE,
        T.EXCHANGE_FIAT_SELL,
        T.EXCHANGE_DUST_CONVERT,
        T.EXCHANGE_CONVERT,
        T.MARGIN_LIQUIDATION,
    }
)

STAKING_INCOME_TYPES: frozenset[TransactionType] = frozenset({T.REWARD, T.EXCHANGE_INTEREST})
REWARD_INCOME_TYPES: frozenset[TransactionType] = frozenset({T.EXCHANGE_DIVIDEND})
AIRDROP_INCOME_TYPES: frozenset[TransactionType] = frozenset({T.AIRDROP})
INCOME_TYPES: frozenset[TransactionType] = STAKING_INCOME_TYPES | REWARD_INCOME_TYPES | AIRDROP_INCOME_TYPES

# Deductible expenses reported as negative "other" income.
FEE_EXPENSE_TYPES: frozenset[TransactionType] = frozenset({T.FEE, T.MARGIN_INTEREST})

NFT_TYPES: frozenset[TransactionType] = frozenset({T.NFT_MINT, T.NFT_SALE, T.NFT_PURCHASE})
DEFI_TYPES: frozenset[TransactionType] = frozenset(
    {
        T.LOAN_BORROW,
        T.LOAN_REPAY,
        T.LP_DEPOSIT,
        T.LP_WITHDRAW,
        T.BRIDGE_OUT,
        T.BRIDGE_IN,
        T.MARGIN_BORROW,
        T.MARGIN_REPAY,
        T.MARGIN_LIQUIDATION,
    }
)

SELF_TRANSFER_CATEGORIES: frozenset[TransactionCategory] = frozenset(
    {
        TransactionCategory.TRANSFER_INTERNAL,
        TransactionCategory.TRANSFER_TO_EXCHANGE,
        TransactionCategory.TRANSFER_FROM_EXCHANGE,
    }
)

del T

STABLECOIN_SYMBOLS = frozenset(
    {
        "USDT",
        "USDC",
        "BUSD",
        "FDUSD",
        "USD1",
        "DAI",
        "TUSD",
        "USDP",
        "GUSD",
        "FRAX",
        "PYUSD",
        "USDD",
        "CUSD",
        "SUSD",
        "LUSD",
    }
)

STABLECOIN_MINTS = frozenset(
    {
        "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",  # USDC
        "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",  # USDT
    }
)

FIAT_CODES = frozenset(
    {
        "usd", "brl", "eur", "gbp", "jpy", "cad", "aud", "chf", "cny",
        "hkd", "sgd", "try", "ars", "ngn", "krw", "inr", "mxn", "cop",
        "clp", "pen", "php", "thb", "idr", "vnd", "zar", "pln", "czk",
        "sek", "nok", "dkk", "nzd", "rub", "uah", "gel", "aed", "sar",
    }
)  # fmt: skip

EXCHANGE_ASSET_PREFIX = "exchange:"
FIAT_ASSET_PREFIX = "fiat:"


def is_fiat_or_pseudo_asset(asset_id: str) -> bool:
    """Fiat balances and pseudo assets never form lots, disposals or holdings.

    - ``fiat:*`` is always fiat
    - ``native`` is already tracked through the real native mint
    - ``exchange:usd`` / ``exchange:brl`` are fiat balances on an exchange
    - ``exchange:bnb`` and friends are real crypto
    """
    if asset_id == "native":
        return True
    if asset_id.startswith(FIAT_ASSET_PREFIX):
        return True
    if asset_id.startswith(EXCHANGE_ASSET_PREFIX):
        return asset_id[len(EXCHANGE_ASSET_PREFIX) :].lower() in FIAT_CODES
    return asset_id.lower() in FIAT_CODES


def is_stablecoin(asset_id: str, symbol: str | None = None) -> bool:
    if asset_id in STABLECOIN_MINTS:
        return True
    if symbol and symbol.upper() in STABLECOIN_SYMBOLS:
        return True
    if asset_id.startswith(EXCHANGE_ASSET_PREFIX):
        return asset_id[len(EXCHANGE_ASSET_PREFIX) :].upper() in STABLECOIN_SYMBOLS
    return asset_id.upper() in STABLECOIN_SYMBOLS


class Flow(BaseModel):
    """One directional movement of a single asset within a transaction.

    ``value`` is expressed in the settlement currency. ``None`` means the price
    could not be resolved, which is different from a known zero value.
    """

    id: FlowId = FlowId(Field(default_factory=uuid4))
    asset_id: AssetId
    symbol: str | None = None
    raw_amount: int
    decimals: int = 0
    direction: FlowDirection
    value: Decimal | None = None
    is_fee: bool = False
    price: Decimal | None = None

    @model_validator(mode="after")
    def _validate_amounts(self) -> Flow:
        # Direction carries the sign, zero-amount flows are not meaningful.
        if self.raw_amount <= 0:
            raise ValueError("Flow.raw_amount must be > 0")
        if self.decimals < 0:
            raise ValueError("Flow.decimals must be >= 0")
        if not self.asset_id:
            raise ValueError("Flow.asset_id must be non-empty")
        if self.value is not None and self.value < 0:
            raise ValueError("Flow.value must be >= 0")
        return self

    @property
    def quantity(self) -> Decimal:
        return Decimal(self.raw_amount).scaleb(-self.decimals)

    @property
    def lot_key(self) -> str:
        """Asset key shared by the same coin across provenances."""
        if self.symbol:
            return self.symbol.upper()
        if self.asset_id.startswith(EXCHANGE_ASSET_PREFIX):
            return self.asset_id[len(EXCHANGE_ASSET_PREFIX) :].upper()
        return self.asset_id

    @property
    def is_fiat(self) -> bool:
        return is_fiat_or_pseudo_asset(self.asset_id)


class Transaction(BaseModel):
    id: TransactionId = TransactionId(Field(default_factory=uuid4))
    provenance: Provenance
    type: TransactionType
    timestamp: datetime
    external_ref: str | None = None
    wallet_id: WalletId | None = None
    exchange_connection_id: ExchangeConnectionId | None = None
    exchange_name: str | None = None
    counterparty_address: str | None = None
    network: str | None = None
    linked_transaction_id: TransactionId | None = None
    category: TransactionCategory | None = None
    classification_status: ClassificationStatus | None = None
    total_value: Decimal | None = None
    flows: list[Flow] = Field(default_factory=list)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _ensure_utc(cls, value: datetime | str) -> datetime | str:
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _validate_fields(self) -> Transaction:
        if self.linked_transaction_id is not None and self.linked_transaction_id == self.id:
            raise ValueError("Transaction cannot be linked to itself")
        if self.provenance == Provenance.EXCHANGE and not self.exchange_connection_id:
            raise ValueError("Exchange transactions require exchange_connection_id")
        if self.provenance == Provenance.ON_CHAIN and not self.wallet_id:
            raise ValueError("On-chain transactions require wallet_id")
        return self

    @property
    def is_self_transfer(self) -> bool:
        return self.category in SELF_TRANSFER_CATEGORIES

    def economic_flows(self, direction: FlowDirection) -> list[Flow]:
        """Non-fee, non-fiat flows in the given direction."""
        return [flow for flow in self.flows if flow.direction == direction and not flow.is_fee and not flow.is_fiat]


class KnownAddress(BaseModel):
    """An address whose owner is known, such as an exchange deposit address."""

    address: str
    label: str
    exchange_name: str | None = None
    exchange_connection_id: ExchangeConnectionId | None = None
    source: str = "exchange_deposit_history"
