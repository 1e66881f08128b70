from __future__ import annotations


class AuditError(Exception):
    """Base class for errors that fail an audit run with a structured cause."""


class UnsupportedJurisdictionError(AuditError):
    def __init__(self, jurisdiction: str) -> None:
        super().__init__(f"Unsupported jurisdiction: {jurisdiction!r}")
        self.jurisdiction = jurisdiction


class InvalidOptionsError(AuditError):
    pass


class AuditStateError(AuditError):
    def __init__(self, message: str, *, current: str | None = None, target: str | None = None) -> None:
        super().__init__(message)
        self.current = current
        self.target = target


class DuplicateAuditError(AuditError):
    def __init__(self, audit_id: str) -> None:
        super().__init__(f"Audit {audit_id} already has a run in flight")
        self.audit_id = audit_id


class AuditCancelError(AuditError):
    pass


class AuditNotFoundError(AuditError):
    def __init__(self, audit_id: str) -> None:
        super().__init__(f"Unknown audit {audit_id}")
        self.audit_id = audit_id


class TransientDataSourceError(AuditError):
    """External data source temporarily unavailable; the queue retries the run."""


class AttestationError(AuditError):
    pass


class NormalizationError(AuditError):
    """A provider record could not be turned into a canonical transaction."""

    def __init__(self, record_id: str | None, cause: Exception | str) -> None:
        super().__init__(f"Cannot normalize record {record_id or '<unknown>'}: {cause}")
        self.record_id = record_id
        self.cause = cause
