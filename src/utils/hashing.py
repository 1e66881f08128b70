from __future__ import annotations

import hashlib
import json

from domain.audit import AuditResult

# Run-time details that must not change the hash of otherwise identical results.
_VOLATILE_FIELDS = {"content_hash": True, "metadata": {"processed_at"}}


def canonical_json(result: AuditResult) -> str:
    payload = result.model_dump(mode="json", exclude=_VOLATILE_FIELDS)
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_hash(result: AuditResult) -> str:
    """SHA-256 hex digest of the canonical result document."""
    return hashlib.sha256(canonical_json(result).encode("utf-8")).hexdigest()
