from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config import AppSettings, config
from db.repositories import AuditRepository, TransactionRepository
from domain.audit import AuditJob, AuditRecord, AuditResult, AuditStatus
from domain.errors import TransientDataSourceError
from domain.ledger import Transaction
from services.attestation import AttestationPublisher
from services.audit_engine import compute_audit
from tax_rules.jurisdictions import tax_year_bounds

logger = logging.getLogger(__name__)

# Status order used to resume a retried run without moving backwards.
_STAGES = (
    AuditStatus.PENDING,
    AuditStatus.QUEUED,
    AuditStatus.PROCESSING,
    AuditStatus.ANALYZING,
    AuditStatus.GENERATING_REPORT,
)


class AuditOrchestrator:
    """Runs one audit job end to end and records its lifecycle.

    Progress points: 10 processing, 20/25 data loaded, 35 analyzing,
    40-85 from the engine, 90 generating the report, 100 completed.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        settings: AppSettings | None = None,
        publisher: AttestationPublisher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or config()
        self._publisher = publisher

    def run(self, job: AuditJob, *, final_attempt: bool = True) -> AuditRecord:
        """Execute ``job`` and return its final record.

        A ``TransientDataSourceError`` leaves the audit running unless this is
        the final attempt, so the caller can retry. Any other error marks the
        audit FAILED and is re-raised.
        """
        with self._session_factory() as session:
            audits = AuditRepository(session)
            if audits.get(job.audit_id) is None:
                audits.create(job.audit_id, jurisdiction=job.jurisdiction, tax_year=job.tax_year)

            try:
                self._advance(audits, job, AuditStatus.PROCESSING, progress=10)
                transactions = self._load(TransactionRepository(session), audits, job)
                self._advance(audits, job, AuditStatus.ANALYZING, progress=35)
                result = compute_audit(
                    job,
                    transactions,
                    processed_at=datetime.now(timezone.utc),
                    on_progress=lambda progress: audits.update_progress(job.audit_id, progress),
                )
                self._advance(audits, job, AuditStatus.GENERATING_REPORT, progress=90)
                record = audits.complete(job.audit_id, result)
            except TransientDataSourceError as e:
                session.rollback()
                if final_attempt:
                    logger.error("Audit %s failed after retries: %s", job.audit_id, e)
                    self._fail(audits, job, f"Data source unavailable: {e}")
                else:
                    logger.warning("Audit %s hit a transient data source error: %s", job.audit_id, e)
                raise
            except Exception as e:
                session.rollback()
                logger.exception("Audit %s failed", job.audit_id)
                self._fail(audits, job, f"{type(e).__name__}: {e}")
                raise

            logger.info("Audit %s completed with hash %s", job.audit_id, result.content_hash)
            return self._attest(audits, record, result)

    @staticmethod
    def _fail(audits: AuditRepository, job: AuditJob, message: str) -> None:
        record = audits.get(job.audit_id)
        if record is not None and not record.is_terminal:
            audits.fail(job.audit_id, message)

    def _advance(self, audits: AuditRepository, job: AuditJob, status: AuditStatus, *, progress: int) -> None:
        record = audits.get(job.audit_id)
        if record is not None and record.status in _STAGES and _STAGES.index(record.status) >= _STAGES.index(status):
            audits.update_progress(job.audit_id, progress)
            return
        if record is not None and record.status == AuditStatus.PENDING:
            audits.update_status(job.audit_id, AuditStatus.QUEUED)
        audits.update_status(job.audit_id, status, progress=progress)

    def _load(self, transactions: TransactionRepository, audits: AuditRepository, job: AuditJob) -> list[Transaction]:
        period_start, period_end = tax_year_bounds(job.jurisdiction, job.tax_year)
        lookback_start = period_start.replace(year=period_start.year - self._settings.exchange_lookback_years)
        try:
            onchain = transactions.list_for_wallets(job.wallet_ids, end=period_end)
            audits.update_progress(job.audit_id, 20)
            exchange = transactions.list_for_connections(
                job.exchange_connection_ids, start=lookback_start, end=period_end
            )
            audits.update_progress(job.audit_id, 25)
        except OperationalError as e:
            raise TransientDataSourceError(str(e)) from e
        logger.debug(
            "Audit %s loaded %d on-chain and %d exchange transactions", job.audit_id, len(onchain), len(exchange)
        )
        return onchain + exchange

    def _attest(self, audits: AuditRepository, record: AuditRecord, result: AuditResult) -> AuditRecord:
        if self._publisher is None or result.content_hash is None:
            return record
        try:
            reference = self._publisher.publish(record.audit_id, result.content_hash)
        except Exception as e:
            logger.exception("Attestation failed for audit %s", record.audit_id)
            return audits.record_attestation(record.audit_id, error=f"{type(e).__name__}: {e}")
        return audits.record_attestation(record.audit_id, reference=reference)
