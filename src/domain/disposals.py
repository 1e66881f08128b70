from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Iterable

from pydantic import BaseModel

from .issues import AuditIssue, IssueType, Severity
from .ledger import (
    ACQUISITION_TYPES,
    DEFI_TYPES,
    DISPOSAL_TYPES,
    NFT_TYPES,
    Flow,
    FlowDirection,
    FlowId,
    LotId,
    Transaction,
    TransactionId,
    is_stablecoin,
)
from .lots import LotDraw, LotLedger

logger = logging.getLogger(__name__)

DEFAULT_LONG_TERM_DAYS = 366


class HoldingTerm(StrEnum):
    SHORT_TERM = "SHORT_TERM"
    LONG_TERM = "LONG_TERM"


class DisposalMatch(BaseModel):
    transaction_id: TransactionId
    flow_id: FlowId
    lot_id: LotId
    asset: str
    quantity: Decimal
    proceeds: Decimal
    cost_basis: Decimal
    gain_loss: Decimal
    acquired_at: datetime
    disposed_at: datetime
    holding_days: int
    term: HoldingTerm
    cost_resolved: bool = True


class UnmatchedDisposal(BaseModel):
    """Disposed quantity with no lot behind it. Kept out of gain totals but not out of sales volume."""

    transaction_id: TransactionId
    flow_id: FlowId
    asset: str
    quantity: Decimal
    proceeds: Decimal
    disposed_at: datetime


class CapitalGainsReport(BaseModel):
    short_term_gains: Decimal = Decimal(0)
    short_term_losses: Decimal = Decimal(0)
    long_term_gains: Decimal = Decimal(0)
    long_term_losses: Decimal = Decimal(0)
    net_short_term: Decimal = Decimal(0)
    net_long_term: Decimal = Decimal(0)
    total_net: Decimal = Decimal(0)
    total_proceeds: Decimal = Decimal(0)
    total_cost_basis: Decimal = Decimal(0)
    matches: list[DisposalMatch] = []
    unmatched: list[UnmatchedDisposal] = []
    unmatched_proceeds: Decimal = Decimal(0)

    @classmethod
    def from_matches(
        cls, matches: Iterable[DisposalMatch], unmatched: Iterable[UnmatchedDisposal] = ()
    ) -> CapitalGainsReport:
        report = cls(unmatched=list(unmatched))
        report.unmatched_proceeds = sum((entry.proceeds for entry in report.unmatched), Decimal(0))
        collected: list[DisposalMatch] = []
        for match in matches:
            collected.append(match)
            report.total_proceeds += match.proceeds
            report.total_cost_basis += match.cost_basis
            if match.term == HoldingTerm.LONG_TERM:
                if match.gain_loss > 0:
                    report.long_term_gains += match.gain_loss
                else:
                    report.long_term_losses += -match.gain_loss
            else:
                if match.gain_loss > 0:
                    report.short_term_gains += match.gain_loss
                else:
                    report.short_term_losses += -match.gain_loss

        report.matches = collected
        report.net_short_term = report.short_term_gains - report.short_term_losses
        report.net_long_term = report.long_term_gains - report.long_term_losses
        report.total_net = report.net_short_term + report.net_long_term
        return report


def holding_period_days(acquired_at: datetime, disposed_at: datetime) -> int:
    return (disposed_at - acquired_at) // timedelta(days=1)


@dataclass
class MatchingResult:
    ledger: LotLedger
    matches: list[DisposalMatch]
    issues: list[AuditIssue]
    unmatched: list[UnmatchedDisposal] = field(default_factory=list)
    # Every draw made during replay, including disposals before the reporting window.
    replayed_quantity: dict[str, Decimal] = field(default_factory=dict)

    @property
    def capital_gains(self) -> CapitalGainsReport:
        return CapitalGainsReport.from_matches(self.matches, self.unmatched)


class DisposalMatcher:
    """Replay acquisitions and disposals in time order against a lot ledger.

    Every disposal depletes lots so that earlier sales are never matched twice,
    but only disposals inside ``[window_start, window_end]`` are reported.
    """

    def __init__(
        self,
        ledger: LotLedger,
        *,
        window_start: datetime,
        window_end: datetime,
        long_term_days: int = DEFAULT_LONG_TERM_DAYS,
        include_nfts: bool = True,
        include_defi: bool = True,
    ) -> None:
        if window_end < window_start:
            raise ValueError("window_end must not precede window_start")
        self._ledger = ledger
        self._window_start = window_start
        self._window_end = window_end
        self._long_term_days = long_term_days
        self._include_nfts = include_nfts
        self._include_defi = include_defi

    def process(self, transactions: Iterable[Transaction]) -> MatchingResult:
        ordered = sorted(
            (tx for tx in transactions if tx.timestamp <= self._window_end),
            key=lambda tx: (tx.timestamp, str(tx.id)),
        )
        matches: list[DisposalMatch] = []
        unmatched: list[UnmatchedDisposal] = []
        issues: list[AuditIssue] = []
        replayed: dict[str, Decimal] = {}
        missing_cost_assets: set[str] = set()

        for tx in ordered:
            if not self._participates(tx):
                continue

            in_window = self._window_start <= tx.timestamp <= self._window_end
            if tx.type in ACQUISITION_TYPES:
                for flow in tx.economic_flows(FlowDirection.IN):
                    self._ledger.add(
                        lot_id=LotId(flow.id),
                        asset=flow.lot_key,
                        transaction_id=tx.id,
                        amount=flow.quantity,
                        cost=flow.value,
                        acquired_at=tx.timestamp,
                    )
                    if (
                        in_window
                        and flow.value is None
                        and not is_stablecoin(flow.asset_id, flow.symbol)
                        and flow.lot_key not in missing_cost_assets
                    ):
                        missing_cost_assets.add(flow.lot_key)
                        issues.append(self._missing_cost_issue(tx, flow.lot_key))

            if tx.type not in DISPOSAL_TYPES:
                continue

            for flow in tx.economic_flows(FlowDirection.OUT):
                if flow.value is None:
                    if in_window:
                        issues.append(self._missing_price_issue(tx, flow))
                    continue
                if flow.value <= 0:
                    continue

                result = self._ledger.draw(flow.lot_key, flow.quantity, disposal_id=tx.id)
                replayed[flow.lot_key] = replayed.get(flow.lot_key, Decimal(0)) + result.matched
                if not in_window:
                    continue

                for draw in result.draws:
                    match = self._build_match(tx, flow, draw, flow_value=flow.value)
                    matches.append(match)
                    if (
                        not match.cost_resolved
                        and not is_stablecoin(flow.asset_id, flow.symbol)
                        and match.asset not in missing_cost_assets
                    ):
                        missing_cost_assets.add(match.asset)
                        issues.append(self._missing_cost_issue(tx, match.asset))

                if result.unmatched > 0:
                    unmatched.append(
                        UnmatchedDisposal(
                            transaction_id=tx.id,
                            flow_id=flow.id,
                            asset=flow.lot_key,
                            quantity=result.unmatched,
                            proceeds=flow.value * result.unmatched / flow.quantity,
                            disposed_at=tx.timestamp,
                        )
                    )
                    issues.append(self._unmatched_issue(tx, flow, result.unmatched))

        logger.info(
            "Matched %d disposal draws in window %s..%s (%d issues)",
            len(matches),
            self._window_start.date(),
            self._window_end.date(),
            len(issues),
        )
        return MatchingResult(
            ledger=self._ledger, matches=matches, issues=issues, unmatched=unmatched, replayed_quantity=replayed
        )

    def is_long_term(self, holding_days: int) -> bool:
        return holding_days >= self._long_term_days

    def _participates(self, tx: Transaction) -> bool:
        if tx.is_self_transfer:
            return False
        if not self._include_nfts and tx.type in NFT_TYPES:
            return False
        if not self._include_defi and tx.type in DEFI_TYPES:
            return False
        return True

    def _build_match(self, tx: Transaction, flow: Flow, draw: LotDraw, *, flow_value: Decimal) -> DisposalMatch:
        proceeds = flow_value * draw.quantity / flow.quantity
        holding_days = holding_period_days(draw.lot.acquired_at, tx.timestamp)
        return DisposalMatch(
            transaction_id=tx.id,
            flow_id=flow.id,
            lot_id=draw.lot.id,
            asset=flow.lot_key,
            quantity=draw.quantity,
            proceeds=proceeds,
            cost_basis=draw.cost_basis,
            gain_loss=proceeds - draw.cost_basis,
            acquired_at=draw.lot.acquired_at,
            disposed_at=tx.timestamp,
            holding_days=holding_days,
            term=HoldingTerm.LONG_TERM if self.is_long_term(holding_days) else HoldingTerm.SHORT_TERM,
            cost_resolved=draw.lot.cost_resolved,
        )

    @staticmethod
    def _reference(tx: Transaction) -> str:
        return tx.external_ref or str(tx.id)

    def _unmatched_issue(self, tx: Transaction, flow: Flow, quantity: Decimal) -> AuditIssue:
        return AuditIssue(
            severity=Severity.MEDIUM,
            type=IssueType.UNMATCHED_DISPOSAL,
            description=f"No acquisition lot covers {quantity} {flow.lot_key} disposed in {self._reference(tx)}",
            transaction=self._reference(tx),
            asset=flow.lot_key,
            quantity=quantity,
            recommendation="Import the wallet or exchange history where this asset was acquired",
        )

    def _missing_price_issue(self, tx: Transaction, flow: Flow) -> AuditIssue:
        return AuditIssue(
            severity=Severity.MEDIUM,
            type=IssueType.MISSING_PRICE,
            description=f"Missing settlement value for {flow.quantity} {flow.lot_key} in {self._reference(tx)}",
            transaction=self._reference(tx),
            asset=flow.lot_key,
            quantity=flow.quantity,
            recommendation="Provide the proceeds of this disposal",
        )

    def _missing_cost_issue(self, tx: Transaction, asset: str) -> AuditIssue:
        return AuditIssue(
            severity=Severity.HIGH,
            type=IssueType.MISSING_COST_BASIS,
            description=f"Missing cost basis for {asset}",
            transaction=self._reference(tx),
            asset=asset,
            recommendation="Provide acquisition date and cost for this asset",
        )
