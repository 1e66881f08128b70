from __future__ import annotations

import logging
from typing import Protocol

from domain.audit import AuditId

logger = logging.getLogger(__name__)


class AttestationPublisher(Protocol):
    def publish(self, audit_id: AuditId, content_hash: str) -> str:
        """Anchor ``content_hash`` externally and return a reference to the record.

        Raises ``AttestationError`` when the record cannot be written.
        """
        ...


class LoggingAttestationPublisher:
    """Records the hash in the application log only. Used when no chain publisher is configured."""

    def publish(self, audit_id: AuditId, content_hash: str) -> str:
        logger.info("Attesting audit %s with content hash %s", audit_id, content_hash)
        return f"log:{content_hash[:16]}"
