from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from domain.ledger import FlowDirection, TransactionType


def _parse_timestamp(value: str | int | float | datetime) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        # Millisecond epochs are what exchange APIs hand out.
        seconds = value / 1000 if value > 10_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    # Naive strings are UTC, never host-local time.
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class OnChainTransfer(BaseModel):
    mint: str
    symbol: str | None = None
    decimals: int = 0
    raw_amount: int
    direction: FlowDirection | None = None
    from_address: str | None = Field(default=None, alias="from")
    to_address: str | None = Field(default=None, alias="to")
    price: Decimal | None = None
    value: Decimal | None = None
    is_fee: bool = False

    model_config = {"populate_by_name": True}

    @field_validator("raw_amount", mode="before")
    @classmethod
    def _parse_raw_amount(cls, value: str | int) -> int:
        # Raw amounts exceed float precision, providers send them as strings.
        if isinstance(value, str):
            return int(value)
        return value

    @model_validator(mode="after")
    def _validate_fields(self) -> OnChainTransfer:
        if self.raw_amount < 0:
            raise ValueError("raw_amount must be >= 0")
        if self.decimals < 0:
            raise ValueError("decimals must be >= 0")
        return self


class OnChainRecord(BaseModel):
    source: Literal["onchain"] = "onchain"
    signature: str
    wallet_id: str
    wallet_address: str | None = None
    timestamp: datetime
    type: TransactionType | None = None
    network: str | None = "solana"
    transfers: list[OnChainTransfer] = Field(default_factory=list)
    fee_lamports: int = 0
    fee_value: Decimal | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: str | int | float | datetime) -> datetime:
        return _parse_timestamp(value)

    @property
    def record_id(self) -> str:
        return self.signature


class ExchangeRecordType(StrEnum):
    TRADE = "TRADE"
    C2C_TRADE = "C2C_TRADE"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    FEE = "FEE"
    FIAT_BUY = "FIAT_BUY"
    FIAT_SELL = "FIAT_SELL"
    CONVERT = "CONVERT"
    DUST_CONVERT = "DUST_CONVERT"
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    INTEREST = "INTEREST"
    DIVIDEND = "DIVIDEND"
    MINING = "MINING"
    MARGIN_BORROW = "MARGIN_BORROW"
    MARGIN_REPAY = "MARGIN_REPAY"
    MARGIN_INTEREST = "MARGIN_INTEREST"
    MARGIN_LIQUIDATION = "MARGIN_LIQUIDATION"


class TradeSide(StrEnum):
    BUY = "BUY"
    SELL = "SELL"


class ExchangeRecord(BaseModel):
    source: Literal["exchange"] = "exchange"
    connection_id: str
    exchange_name: str
    external_id: str | None = None
    type: ExchangeRecordType
    timestamp: datetime
    asset: str
    amount: Decimal
    price: Decimal | None = None
    total_value: Decimal | None = None
    fee_amount: Decimal | None = None
    fee_asset: str | None = None
    side: TradeSide | None = None
    trade_pair: str | None = None
    quote_asset: str | None = None
    quote_amount: Decimal | None = None
    network: str | None = None
    tx_id: str | None = None
    address: str | None = None
    is_p2p: bool = False

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: str | int | float | datetime) -> datetime:
        return _parse_timestamp(value)

    @field_validator("asset", "fee_asset", "quote_asset", mode="before")
    @classmethod
    def _upper_symbol(cls, value: str | None) -> str | None:
        if value == "":
            return None
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("tx_id", "address", "trade_pair", "network", mode="before")
    @classmethod
    def _empty_to_none(cls, value: str | None) -> str | None:
        if value == "":
            return None
        return value

    @field_validator("side", mode="before")
    @classmethod
    def _upper_side(cls, value: str | None) -> str | None:
        if value == "":
            return None
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _validate_fields(self) -> ExchangeRecord:
        if not self.asset:
            raise ValueError("asset must be non-empty")
        if self.amount == 0:
            raise ValueError("amount must be non-zero")
        for name in ("price", "total_value", "fee_amount"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.type in (ExchangeRecordType.TRADE, ExchangeRecordType.C2C_TRADE) and self.side is None:
            raise ValueError(f"{self.type} records require a side")
        return self

    @property
    def record_id(self) -> str:
        if self.external_id:
            return self.external_id
        # Rows without an id are keyed by their content.
        digest = hashlib.sha256(self.model_dump_json(exclude={"external_id"}).encode()).hexdigest()[:12]
        millis = int(self.timestamp.timestamp() * 1000)
        return f"{self.exchange_name}-{self.type}-{millis}-{self.asset}-{digest}"


RawRecord = Annotated[OnChainRecord | ExchangeRecord, Field(discriminator="source")]
