from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


class TransactionOrm(Base):
    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    provenance: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    external_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    wallet_id: Mapped[str | None] = mapped_column(String, nullable=True)
    exchange_connection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    exchange_name: Mapped[str | None] = mapped_column(String, nullable=True)
    counterparty_address: Mapped[str | None] = mapped_column(String, nullable=True)
    network: Mapped[str | None] = mapped_column(String, nullable=True)
    linked_transaction_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    classification_status: Mapped[str | None] = mapped_column(String, nullable=True)
    total_value: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)

    flows: Mapped[list["FlowOrm"]] = relationship(
        cascade="all, delete-orphan", back_populates="transaction", lazy="joined", order_by="FlowOrm.position"
    )

    __table_args__ = (
        Index("ix_transactions_timestamp", "timestamp"),
        Index("ix_transactions_external_ref", "external_ref"),
        Index("ix_transactions_wallet", "wallet_id", "timestamp"),
        Index("ix_transactions_connection", "exchange_connection_id", "timestamp"),
    )


class FlowOrm(Base):
    __tablename__ = "flows"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    transaction_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("transactions.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    asset_id: Mapped[str] = mapped_column(String, nullable=False)
    symbol: Mapped[str | None] = mapped_column(String, nullable=True)
    # Raw chain amounts overflow sqlite integers.
    raw_amount: Mapped[str] = mapped_column(String, nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False)
    direction: Mapped[str] = mapped_column(String, nullable=False)
    value: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    price: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    is_fee: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    transaction: Mapped[TransactionOrm] = relationship(back_populates="flows")


class KnownAddressOrm(Base):
    __tablename__ = "known_addresses"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    address: Mapped[str] = mapped_column(String, nullable=False)
    label: Mapped[str] = mapped_column(String, nullable=False)
    exchange_name: Mapped[str | None] = mapped_column(String, nullable=True)
    exchange_connection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (UniqueConstraint("address", name="uq_known_addresses_address"),)


class AuditOrm(Base):
    __tablename__ = "audits"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    jurisdiction: Mapped[str] = mapped_column(String, nullable=False)
    tax_year: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attestation_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    attestation_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    result: Mapped["AuditResultOrm | None"] = relationship(
        back_populates="audit", cascade="all, delete-orphan", uselist=False
    )


class AuditResultOrm(Base):
    __tablename__ = "audit_results"

    audit_id: Mapped[str] = mapped_column(String, ForeignKey("audits.id"), primary_key=True)
    content_hash: Mapped[str] = mapped_column(String, nullable=False)
    document: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    audit: Mapped[AuditOrm] = relationship(back_populates="result")
