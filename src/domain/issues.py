from __future__ import annotations

from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel


class Severity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class IssueType(StrEnum):
    UNMATCHED_DISPOSAL = "UNMATCHED_DISPOSAL"
    MISSING_PRICE = "MISSING_PRICE"
    MISSING_COST_BASIS = "MISSING_COST_BASIS"
    UNCLASSIFIED_TRANSACTION = "UNCLASSIFIED_TRANSACTION"


class AuditIssue(BaseModel):
    """Data-quality gap found during an audit. Never fatal."""

    severity: Severity
    type: IssueType
    description: str
    transaction: str | None = None
    asset: str | None = None
    quantity: Decimal | None = None
    recommendation: str | None = None
