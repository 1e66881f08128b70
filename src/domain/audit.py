from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import NewType

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from tax_rules.foreign_accounts import ForeignAccountReport
from tax_rules.loss_carryforward import LossCarryforward
from tax_rules.monthly_exemption import MonthlyBreakdown

from .disposals import CapitalGainsReport
from .errors import AuditStateError, InvalidOptionsError
from .issues import AuditIssue
from .ledger import TransactionId
from .lots import CostBasisMethod

AuditId = NewType("AuditId", str)

ENGINE_VERSION = "1.0.0"


class AuditStatus(StrEnum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    ANALYZING = "ANALYZING"
    GENERATING_REPORT = "GENERATING_REPORT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({AuditStatus.COMPLETED, AuditStatus.FAILED, AuditStatus.CANCELLED})
# Once lot matching may have started the run is not interrupted.
CANCELLABLE_STATUSES = frozenset({AuditStatus.PENDING, AuditStatus.QUEUED})

_FORWARD: dict[AuditStatus, frozenset[AuditStatus]] = {
    AuditStatus.PENDING: frozenset({AuditStatus.QUEUED}),
    AuditStatus.QUEUED: frozenset({AuditStatus.PROCESSING}),
    AuditStatus.PROCESSING: frozenset({AuditStatus.ANALYZING}),
    AuditStatus.ANALYZING: frozenset({AuditStatus.GENERATING_REPORT}),
    AuditStatus.GENERATING_REPORT: frozenset({AuditStatus.COMPLETED}),
}


def can_transition(current: AuditStatus, target: AuditStatus) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if current == target:
        return True
    if target in (AuditStatus.FAILED, AuditStatus.CANCELLED):
        return True
    return target in _FORWARD.get(current, frozenset())


def transition(current: AuditStatus, target: AuditStatus) -> AuditStatus:
    if not can_transition(current, target):
        raise AuditStateError(f"Illegal audit transition {current} -> {target}", current=current, target=target)
    return target


class AuditOptions(BaseModel):
    cost_basis_method: CostBasisMethod = CostBasisMethod.FIFO
    include_staking: bool = True
    include_airdrops: bool = True
    include_nfts: bool = True
    include_defi: bool = True
    include_fees: bool = True
    currency: str = "USD"
    # SPECIFIC_ID: disposal transaction -> acquiring transactions to draw from, in order.
    specific_lots: dict[TransactionId, list[TransactionId]] = Field(default_factory=dict)
    prior_loss_carryforward: Decimal = Decimal(0)

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _validate_fields(self) -> AuditOptions:
        if len(self.currency) != 3 or not self.currency.isalpha():
            raise ValueError("currency must be a three-letter code")
        if self.specific_lots and self.cost_basis_method != CostBasisMethod.SPECIFIC_ID:
            raise ValueError("specific_lots requires cost_basis_method SPECIFIC_ID")
        if self.prior_loss_carryforward < 0:
            raise ValueError("prior_loss_carryforward must be >= 0")
        return self


class AuditJob(BaseModel):
    """Unit of work handed over by the queue."""

    audit_id: AuditId
    wallet_ids: list[str] = Field(default_factory=list)
    exchange_connection_ids: list[str] = Field(default_factory=list)
    jurisdiction: str
    tax_year: int
    options: AuditOptions = Field(default_factory=AuditOptions)

    @classmethod
    def parse(cls, data: dict[str, object]) -> AuditJob:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidOptionsError(str(e)) from e

    @property
    def dedup_key(self) -> str:
        return f"audit:{self.audit_id}"

    @model_validator(mode="after")
    def _validate_fields(self) -> AuditJob:
        if not self.audit_id:
            raise ValueError("audit_id must be non-empty")
        if not self.wallet_ids and not self.exchange_connection_ids:
            raise ValueError("AuditJob needs at least one wallet or exchange connection")
        if not 2009 <= self.tax_year <= 2100:
            raise ValueError(f"tax_year out of range: {self.tax_year}")
        return self


class IncomeEvent(BaseModel):
    transaction_id: TransactionId
    type: str
    asset: str
    amount: Decimal
    value: Decimal
    date: datetime
    reference: str | None = None


class IncomeReport(BaseModel):
    staking: Decimal = Decimal(0)
    mining: Decimal = Decimal(0)
    airdrops: Decimal = Decimal(0)
    rewards: Decimal = Decimal(0)
    other: Decimal = Decimal(0)
    total: Decimal = Decimal(0)
    events: list[IncomeEvent] = Field(default_factory=list)


class HoldingAsset(BaseModel):
    asset: str
    balance: Decimal
    cost_basis: Decimal
    value: Decimal | None = None
    unrealized_gain_loss: Decimal | None = None


class HoldingsReport(BaseModel):
    as_of: datetime
    total_value: Decimal
    assets: list[HoldingAsset]


class TravelRuleViolation(BaseModel):
    transaction: str
    amount: Decimal


class TravelRuleReport(BaseModel):
    threshold: Decimal
    compliant: bool
    violations: list[TravelRuleViolation]


class AuditSummary(BaseModel):
    total_transactions: int
    total_wallets: int
    total_exchange_accounts: int
    period_start: datetime
    period_end: datetime
    net_gain_loss: Decimal
    total_income: Decimal
    estimated_tax: Decimal
    currency: str


class AuditMetadata(BaseModel):
    version: str = ENGINE_VERSION
    rules_version: str
    jurisdiction: str
    cost_basis_method: CostBasisMethod
    processed_at: datetime | None = None


class AuditResult(BaseModel):
    """Immutable document produced by a successful audit run."""

    audit_id: AuditId
    jurisdiction: str
    tax_year: int
    summary: AuditSummary
    capital_gains: CapitalGainsReport
    income: IncomeReport
    holdings: HoldingsReport
    issues: list[AuditIssue]
    recommendations: list[str]
    monthly_breakdown: MonthlyBreakdown | None = None
    loss_carryforward: LossCarryforward | None = None
    foreign_accounts: ForeignAccountReport | None = None
    travel_rule: TravelRuleReport | None = None
    metadata: AuditMetadata
    content_hash: str | None = None


class AuditRecord(BaseModel):
    """Persisted lifecycle state of one audit."""

    audit_id: AuditId
    jurisdiction: str
    tax_year: int
    status: AuditStatus = AuditStatus.PENDING
    progress: int = 0
    error_message: str | None = None
    attestation_ref: str | None = None
    attestation_error: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
