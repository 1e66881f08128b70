from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Sequence
from uuid import uuid4

from sqlalchemy import or_, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from db import models
from domain.audit import AuditId, AuditRecord, AuditResult, AuditStatus, transition
from domain.errors import AuditNotFoundError, DuplicateAuditError
from domain.ledger import (
    AssetId,
    ClassificationStatus,
    ExchangeConnectionId,
    Flow,
    FlowDirection,
    FlowId,
    KnownAddress,
    Provenance,
    Transaction,
    TransactionCategory,
    TransactionId,
    TransactionType,
    WalletId,
)

logger = logging.getLogger(__name__)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_many(self, transactions: Sequence[Transaction]) -> list[Transaction]:
        """Insert transactions whose id is not stored yet. Returns the inserted ones."""
        ids = [tx.id for tx in transactions]
        existing = {
            row[0] for row in self._session.query(models.TransactionOrm.id).filter(models.TransactionOrm.id.in_(ids))
        }
        orm_transactions: list[models.TransactionOrm] = []
        inserted: list[Transaction] = []
        for tx in transactions:
            if tx.id in existing:
                continue
            existing.add(tx.id)
            orm_tx = models.TransactionOrm(
                id=tx.id,
                provenance=tx.provenance.value,
                type=tx.type.value,
                timestamp=_utc(tx.timestamp),
                external_ref=tx.external_ref,
                wallet_id=tx.wallet_id,
                exchange_connection_id=tx.exchange_connection_id,
                exchange_name=tx.exchange_name,
                counterparty_address=tx.counterparty_address,
                network=tx.network,
                linked_transaction_id=tx.linked_transaction_id,
                category=tx.category.value if tx.category else None,
                classification_status=tx.classification_status.value if tx.classification_status else None,
                total_value=tx.total_value,
            )
            orm_tx.flows = [
                models.FlowOrm(
                    id=flow.id,
                    position=position,
                    asset_id=flow.asset_id,
                    symbol=flow.symbol,
                    raw_amount=str(flow.raw_amount),
                    decimals=flow.decimals,
                    direction=flow.direction.value,
                    value=flow.value,
                    price=flow.price,
                    is_fee=flow.is_fee,
                )
                for position, flow in enumerate(tx.flows)
            ]
            orm_transactions.append(orm_tx)
            inserted.append(tx)

        self._session.add_all(orm_transactions)
        self._session.commit()
        if len(inserted) < len(transactions):
            logger.info("Skipped %d already stored transactions", len(transactions) - len(inserted))
        return inserted

    def get(self, transaction_id: TransactionId) -> Transaction | None:
        orm_tx = self._session.get(models.TransactionOrm, transaction_id)
        if orm_tx is None:
            return None
        return self._to_domain(orm_tx)

    def list(
        self,
        *,
        provenance: Provenance | None = None,
        types: Iterable[TransactionType] | None = None,
        unlinked_only: bool = False,
        limit: int | None = None,
    ) -> list[Transaction]:
        query = self._session.query(models.TransactionOrm)
        if provenance is not None:
            query = query.filter(models.TransactionOrm.provenance == provenance.value)
        if types is not None:
            query = query.filter(models.TransactionOrm.type.in_([t.value for t in types]))
        if unlinked_only:
            query = query.filter(models.TransactionOrm.linked_transaction_id.is_(None))
        query = query.order_by(models.TransactionOrm.timestamp.asc(), models.TransactionOrm.id.asc())
        if limit is not None:
            query = query.limit(limit)
        return [self._to_domain(orm_tx) for orm_tx in query.all()]

    def list_for_wallets(self, wallet_ids: Sequence[str], *, end: datetime) -> list[Transaction]:
        """Full on-chain history of the wallets up to ``end`` inclusive."""
        if not wallet_ids:
            return []
        query = (
            self._session.query(models.TransactionOrm)
            .filter(models.TransactionOrm.wallet_id.in_(list(wallet_ids)))
            .filter(models.TransactionOrm.timestamp <= _utc(end))
            .order_by(models.TransactionOrm.timestamp.asc(), models.TransactionOrm.id.asc())
        )
        return [self._to_domain(orm_tx) for orm_tx in query.all()]

    def list_for_connections(
        self, connection_ids: Sequence[str], *, start: datetime, end: datetime
    ) -> list[Transaction]:
        if not connection_ids:
            return []
        query = (
            self._session.query(models.TransactionOrm)
            .filter(models.TransactionOrm.exchange_connection_id.in_(list(connection_ids)))
            .filter(models.TransactionOrm.timestamp >= _utc(start))
            .filter(models.TransactionOrm.timestamp <= _utc(end))
            .order_by(models.TransactionOrm.timestamp.asc(), models.TransactionOrm.id.asc())
        )
        return [self._to_domain(orm_tx) for orm_tx in query.all()]

    def find_by_external_ref(self, external_ref: str, *, provenance: Provenance | None = None) -> list[Transaction]:
        query = self._session.query(models.TransactionOrm).filter(models.TransactionOrm.external_ref == external_ref)
        if provenance is not None:
            query = query.filter(models.TransactionOrm.provenance == provenance.value)
        return [self._to_domain(orm_tx) for orm_tx in query.all()]

    def link_pair(
        self,
        first_id: TransactionId,
        second_id: TransactionId,
        *,
        first_category: TransactionCategory | None,
        second_category: TransactionCategory | None,
        status: ClassificationStatus = ClassificationStatus.AUTO_RESOLVED,
    ) -> bool:
        """Link two transactions to each other in one commit.

        Both rows must still be unlinked. Returns ``False`` and leaves both rows
        untouched when either side was linked in the meantime.
        """
        if first_id == second_id:
            raise ValueError("A transaction cannot be linked to itself")

        for own_id, other_id, category in (
            (first_id, second_id, first_category),
            (second_id, first_id, second_category),
        ):
            values: dict[str, object] = {"linked_transaction_id": other_id}
            if category is not None:
                values["category"] = category.value
                values["classification_status"] = status.value
            stmt = (
                update(models.TransactionOrm)
                .where(models.TransactionOrm.id == own_id)
                .where(models.TransactionOrm.linked_transaction_id.is_(None))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if self._session.execute(stmt).rowcount != 1:
                self._session.rollback()
                logger.debug("Link %s <-> %s lost the race, leaving both rows untouched", first_id, second_id)
                return False

        self._session.commit()
        self._session.expire_all()
        return True

    def set_category(
        self,
        transaction_id: TransactionId,
        category: TransactionCategory,
        *,
        status: ClassificationStatus = ClassificationStatus.AUTO_RESOLVED,
    ) -> bool:
        """Categorize a transaction unless a person already classified it."""
        stmt = (
            update(models.TransactionOrm)
            .where(models.TransactionOrm.id == transaction_id)
            .where(
                or_(
                    models.TransactionOrm.classification_status.is_(None),
                    models.TransactionOrm.classification_status != ClassificationStatus.MANUAL.value,
                )
            )
            .values(category=category.value, classification_status=status.value)
            .execution_options(synchronize_session=False)
        )
        updated = self._session.execute(stmt).rowcount == 1
        self._session.commit()
        self._session.expire_all()
        return updated

    @staticmethod
    def _to_domain(orm_tx: models.TransactionOrm) -> Transaction:
        flows = [
            Flow(
                id=FlowId(flow.id),
                asset_id=AssetId(flow.asset_id),
                symbol=flow.symbol,
                raw_amount=int(flow.raw_amount),
                decimals=flow.decimals,
                direction=FlowDirection(flow.direction),
                value=flow.value,
                price=flow.price,
                is_fee=flow.is_fee,
            )
            for flow in orm_tx.flows
        ]
        return Transaction(
            id=TransactionId(orm_tx.id),
            provenance=Provenance(orm_tx.provenance),
            type=TransactionType(orm_tx.type),
            timestamp=_utc(orm_tx.timestamp),
            external_ref=orm_tx.external_ref,
            wallet_id=WalletId(orm_tx.wallet_id) if orm_tx.wallet_id else None,
            exchange_connection_id=(
                ExchangeConnectionId(orm_tx.exchange_connection_id) if orm_tx.exchange_connection_id else None
            ),
            exchange_name=orm_tx.exchange_name,
            counterparty_address=orm_tx.counterparty_address,
            network=orm_tx.network,
            linked_transaction_id=TransactionId(orm_tx.linked_transaction_id) if orm_tx.linked_transaction_id else None,
            category=TransactionCategory(orm_tx.category) if orm_tx.category else None,
            classification_status=(
                ClassificationStatus(orm_tx.classification_status) if orm_tx.classification_status else None
            ),
            total_value=orm_tx.total_value,
            flows=flows,
        )


class KnownAddressRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def upsert_many(self, addresses: Sequence[KnownAddress]) -> int:
        """Insert addresses not seen before; returns how many rows were new."""
        if not addresses:
            return 0
        before = self._session.query(models.KnownAddressOrm).count()
        stmt = sqlite_insert(models.KnownAddressOrm).values(
            [
                {
                    "id": uuid4(),
                    "address": address.address,
                    "label": address.label,
                    "exchange_name": address.exchange_name,
                    "exchange_connection_id": address.exchange_connection_id,
                    "source": address.source,
                }
                for address in addresses
            ]
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["address"])
        self._session.execute(stmt)
        self._session.commit()
        return self._session.query(models.KnownAddressOrm).count() - before

    def get(self, address: str) -> KnownAddress | None:
        orm_address = (
            self._session.query(models.KnownAddressOrm).filter(models.KnownAddressOrm.address == address).one_or_none()
        )
        if orm_address is None:
            return None
        return self._to_domain(orm_address)

    def list(self) -> list[KnownAddress]:
        orm_addresses = self._session.query(models.KnownAddressOrm).order_by(models.KnownAddressOrm.address).all()
        return [self._to_domain(orm_address) for orm_address in orm_addresses]

    @staticmethod
    def _to_domain(orm_address: models.KnownAddressOrm) -> KnownAddress:
        return KnownAddress(
            address=orm_address.address,
            label=orm_address.label,
            exchange_name=orm_address.exchange_name,
            exchange_connection_id=(
                ExchangeConnectionId(orm_address.exchange_connection_id)
                if orm_address.exchange_connection_id
                else None
            ),
            source=orm_address.source,
        )


class AuditRepository:
    """Audit lifecycle rows and their result documents.

    Status changes go through the audit state machine and progress never
    moves backwards.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, audit_id: AuditId, *, jurisdiction: str, tax_year: int) -> AuditRecord:
        if self._session.get(models.AuditOrm, audit_id) is not None:
            raise DuplicateAuditError(audit_id)
        now = _now()
        orm_audit = models.AuditOrm(
            id=audit_id,
            jurisdiction=jurisdiction,
            tax_year=tax_year,
            status=AuditStatus.PENDING.value,
            progress=0,
            created_at=now,
            updated_at=now,
        )
        self._session.add(orm_audit)
        self._session.commit()
        return self._to_domain(orm_audit)

    def get(self, audit_id: AuditId) -> AuditRecord | None:
        orm_audit = self._session.get(models.AuditOrm, audit_id)
        if orm_audit is None:
            return None
        return self._to_domain(orm_audit)

    def list(self) -> list[AuditRecord]:
        orm_audits = self._session.query(models.AuditOrm).order_by(models.AuditOrm.created_at.asc()).all()
        return [self._to_domain(orm_audit) for orm_audit in orm_audits]

    def update_status(
        self,
        audit_id: AuditId,
        status: AuditStatus,
        *,
        progress: int | None = None,
        error_message: str | None = None,
    ) -> AuditRecord:
        orm_audit = self._require(audit_id)
        self._apply_status(orm_audit, status, progress=progress)
        if error_message is not None:
            orm_audit.error_message = error_message
        self._session.commit()
        return self._to_domain(orm_audit)

    def update_progress(self, audit_id: AuditId, progress: int) -> AuditRecord:
        orm_audit = self._require(audit_id)
        self._bump_progress(orm_audit, progress)
        orm_audit.updated_at = _now()
        self._session.commit()
        return self._to_domain(orm_audit)

    def complete(self, audit_id: AuditId, result: AuditResult) -> AuditRecord:
        """Store the result and mark the audit COMPLETED in the same commit."""
        if result.content_hash is None:
            raise ValueError("AuditResult must be hashed before it is stored")
        orm_audit = self._require(audit_id)
        self._apply_status(orm_audit, AuditStatus.COMPLETED, progress=100)
        orm_audit.error_message = None
        orm_audit.result = models.AuditResultOrm(
            audit_id=audit_id,
            content_hash=result.content_hash,
            document=result.model_dump_json(),
            created_at=_now(),
        )
        self._session.commit()
        return self._to_domain(orm_audit)

    def fail(self, audit_id: AuditId, error_message: str) -> AuditRecord:
        return self.update_status(audit_id, AuditStatus.FAILED, error_message=error_message)

    def record_attestation(
        self, audit_id: AuditId, *, reference: str | None = None, error: str | None = None
    ) -> AuditRecord:
        orm_audit = self._require(audit_id)
        orm_audit.attestation_ref = reference
        orm_audit.attestation_error = error
        orm_audit.updated_at = _now()
        self._session.commit()
        return self._to_domain(orm_audit)

    def get_result(self, audit_id: AuditId) -> AuditResult | None:
        orm_result = self._session.get(models.AuditResultOrm, audit_id)
        if orm_result is None:
            return None
        return AuditResult.model_validate_json(orm_result.document)

    def _require(self, audit_id: AuditId) -> models.AuditOrm:
        orm_audit = self._session.get(models.AuditOrm, audit_id)
        if orm_audit is None:
            raise AuditNotFoundError(audit_id)
        return orm_audit

    def _apply_status(self, orm_audit: models.AuditOrm, status: AuditStatus, *, progress: int | None) -> None:
        orm_audit.status = transition(AuditStatus(orm_audit.status), status).value
        if progress is not None:
            self._bump_progress(orm_audit, progress)
        orm_audit.updated_at = _now()

    @staticmethod
    def _bump_progress(orm_audit: models.AuditOrm, progress: int) -> None:
        if not 0 <= progress <= 100:
            raise ValueError(f"progress must be within 0..100, got {progress}")
        orm_audit.progress = max(orm_audit.progress, progress)

    @staticmethod
    def _to_domain(orm_audit: models.AuditOrm) -> AuditRecord:
        return AuditRecord(
            audit_id=AuditId(orm_audit.id),
            jurisdiction=orm_audit.jurisdiction,
            tax_year=orm_audit.tax_year,
            status=AuditStatus(orm_audit.status),
            progress=orm_audit.progress,
            error_message=orm_audit.error_message,
            attestation_ref=orm_audit.attestation_ref,
            attestation_error=orm_audit.attestation_error,
            created_at=_utc(orm_audit.created_at),
            updated_at=_utc(orm_audit.updated_at),
        )
