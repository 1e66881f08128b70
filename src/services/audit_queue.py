from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable

from sqlalchemy.orm import Session

from db.repositories import AuditRepository
from domain.audit import CANCELLABLE_STATUSES, AuditId, AuditJob, AuditRecord, AuditStatus
from domain.errors import (
    AuditCancelError,
    AuditError,
    AuditNotFoundError,
    DuplicateAuditError,
    TransientDataSourceError,
)
from services.audit_orchestrator import AuditOrchestrator
from tax_rules.jurisdiction_rules import get_rules

logger = logging.getLogger(__name__)


class AuditQueue:
    """In-process FIFO of audit jobs.

    At most one job per ``dedup_key`` is queued or running at a time. Runs
    failing with ``TransientDataSourceError`` are retried with exponential
    backoff; every other failure is final.
    """

    def __init__(
        self,
        orchestrator: AuditOrchestrator,
        session_factory: Callable[[], Session],
        *,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._orchestrator = orchestrator
        self._session_factory = session_factory
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._sleep = sleep
        self._lock = threading.Lock()
        self._pending: deque[AuditJob] = deque()
        self._in_flight: dict[str, AuditJob] = {}
        self._running: set[AuditId] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def submit(self, job: AuditJob) -> AuditRecord:
        get_rules(job.jurisdiction)
        with self._lock:
            if job.dedup_key in self._in_flight:
                raise DuplicateAuditError(job.audit_id)
            with self._session_factory() as session:
                audits = AuditRepository(session)
                record = audits.get(job.audit_id)
                if record is None:
                    audits.create(job.audit_id, jurisdiction=job.jurisdiction, tax_year=job.tax_year)
                elif record.status != AuditStatus.PENDING:
                    raise DuplicateAuditError(job.audit_id)
                record = audits.update_status(job.audit_id, AuditStatus.QUEUED)
            self._pending.append(job)
            self._in_flight[job.dedup_key] = job
        logger.info("Queued audit %s (%s %d)", job.audit_id, job.jurisdiction, job.tax_year)
        return record

    def cancel(self, audit_id: AuditId) -> AuditRecord:
        with self._lock:
            with self._session_factory() as session:
                audits = AuditRepository(session)
                record = audits.get(audit_id)
                if record is None:
                    raise AuditNotFoundError(audit_id)
                if audit_id in self._running or record.status not in CANCELLABLE_STATUSES:
                    raise AuditCancelError(f"Audit {audit_id} cannot be cancelled in status {record.status}")
                record = audits.update_status(audit_id, AuditStatus.CANCELLED)
            for job in list(self._pending):
                if job.audit_id == audit_id:
                    self._pending.remove(job)
                    self._in_flight.pop(job.dedup_key, None)
        logger.info("Cancelled audit %s", audit_id)
        return record

    def status(self, audit_id: AuditId) -> AuditRecord:
        with self._session_factory() as session:
            record = AuditRepository(session).get(audit_id)
        if record is None:
            raise AuditNotFoundError(audit_id)
        return record

    def process_next(self) -> AuditRecord | None:
        """Run the oldest queued job, retrying transient failures. Returns None when the queue is empty."""
        with self._lock:
            if not self._pending:
                return None
            job = self._pending.popleft()
            self._running.add(job.audit_id)
        try:
            return self._run_with_retries(job)
        finally:
            with self._lock:
                self._running.discard(job.audit_id)
                self._in_flight.pop(job.dedup_key, None)

    def drain(self) -> list[AuditRecord]:
        records: list[AuditRecord] = []
        while (record := self.process_next()) is not None:
            records.append(record)
        return records

    def _run_with_retries(self, job: AuditJob) -> AuditRecord:
        for attempt in range(self._max_attempts):
            final_attempt = attempt == self._max_attempts - 1
            try:
                return self._orchestrator.run(job, final_attempt=final_attempt)
            except TransientDataSourceError:
                if final_attempt:
                    break
                delay = self._backoff_base * 2**attempt
                logger.info(
                    "Retrying audit %s in %.1fs (attempt %d/%d)", job.audit_id, delay, attempt + 2, self._max_attempts
                )
                self._sleep(delay)
            except AuditError as e:
                logger.warning("Audit %s failed: %s", job.audit_id, e)
                break
        return self.status(job.audit_id)
