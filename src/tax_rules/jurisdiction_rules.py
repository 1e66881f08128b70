from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from domain.audit import AuditOptions, HoldingsReport, IncomeReport, TravelRuleReport, TravelRuleViolation
from domain.disposals import CapitalGainsReport
from domain.issues import AuditIssue, IssueType, Severity
from domain.ledger import Transaction, TransactionType

from .foreign_accounts import ForeignAccountReport, aggregate_foreign_accounts
from .jurisdictions import JURISDICTIONS, Jurisdiction, JurisdictionCode, parse_jurisdiction
from .loss_carryforward import LossCarryforward, apply_loss_cap, taxable_terms
from .monthly_exemption import MonthlyBreakdown, build_monthly_breakdown
from .rates import RateType, get_tax_rate, progressive_tax
from .thresholds import TAX_THRESHOLDS

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
UNCLASSIFIED_VALUE_THRESHOLD = Decimal(1000)


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class RulesInput:
    capital_gains: CapitalGainsReport
    income: IncomeReport
    holdings: HoldingsReport
    # Tax-year window only.
    transactions: Sequence[Transaction]
    # Everything loaded for the run, including pre-period history.
    history: Sequence[Transaction]
    period_start: datetime
    period_end: datetime
    options: AuditOptions


@dataclass
class JurisdictionReport:
    estimated_tax: Decimal
    issues: list[AuditIssue] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    monthly_breakdown: MonthlyBreakdown | None = None
    loss_carryforward: LossCarryforward | None = None
    foreign_accounts: ForeignAccountReport | None = None
    travel_rule: TravelRuleReport | None = None


class JurisdictionRules:
    """Table-driven tax rules for one jurisdiction.

    Subclasses add sub-reports (monthly exemption, loss caps, foreign-account
    disclosure) and override the tax estimate where the jurisdiction departs
    from the plain rate-table computation.
    """

    code: JurisdictionCode
    version = "1.0.0"

    @property
    def jurisdiction(self) -> Jurisdiction:
        return JURISDICTIONS[self.code]

    @property
    def long_term_days(self) -> int:
        return self.jurisdiction.long_term_days

    def threshold(self, name: str) -> Decimal:
        return TAX_THRESHOLDS[self.code][name]

    def evaluate(self, data: RulesInput) -> JurisdictionReport:
        report = JurisdictionReport(estimated_tax=round_money(self.estimate_tax(data.capital_gains, data.income)))
        report.issues.extend(self.identify_issues(data.transactions))
        return report

    def estimate_tax(self, capital_gains: CapitalGainsReport, income: IncomeReport) -> Decimal:
        return self.gains_tax(capital_gains.net_short_term, capital_gains.net_long_term) + self.income_tax(income)

    def gains_tax(self, short_term: Decimal, long_term: Decimal) -> Decimal:
        """Tax on each term separately. Non-positive amounts are not taxed."""
        tax = Decimal(0)
        if short_term > 0:
            tax += short_term * get_tax_rate(self.code, RateType.CAPITAL_GAINS_SHORT, short_term)
        if long_term > 0:
            tax += long_term * get_tax_rate(self.code, RateType.CAPITAL_GAINS_LONG, long_term, self.long_term_days)
        return tax

    def income_tax(self, income: IncomeReport) -> Decimal:
        if income.total <= 0:
            return Decimal(0)
        return income.total * get_tax_rate(self.code, RateType.INCOME, income.total)

    def identify_issues(self, transactions: Sequence[Transaction]) -> list[AuditIssue]:
        issues: list[AuditIssue] = []
        for tx in transactions:
            if tx.type == TransactionType.UNKNOWN and (tx.total_value or Decimal(0)) > UNCLASSIFIED_VALUE_THRESHOLD:
                reference = tx.external_ref or str(tx.id)
                issues.append(
                    AuditIssue(
                        severity=Severity.MEDIUM,
                        type=IssueType.UNCLASSIFIED_TRANSACTION,
                        description=f"Large unclassified transaction: {reference}",
                        transaction=reference,
                        recommendation="Review and categorize this transaction manually",
                    )
                )
        return issues

    def recommendations(self, capital_gains: CapitalGainsReport, issues: Sequence[AuditIssue]) -> list[str]:
        recommendations: list[str] = []
        if capital_gains.short_term_losses > 0:
            recommendations.append("Consider tax-loss harvesting opportunities before year end")
        if any(issue.severity in (Severity.HIGH, Severity.CRITICAL) for issue in issues):
            recommendations.append("Address high-severity issues before filing")
        return recommendations

    def _foreign_accounts(self, data: RulesInput, threshold_name: str) -> ForeignAccountReport:
        return aggregate_foreign_accounts(
            data.history,
            period_start=data.period_start,
            period_end=data.period_end,
            threshold=self.threshold(threshold_name),
        )


class USRules(JurisdictionRules):
    """Form 8949 / Schedule D style estimate with the annual loss cap and FBAR."""

    code = JurisdictionCode.US

    def evaluate(self, data: RulesInput) -> JurisdictionReport:
        capped = apply_loss_cap(
            data.capital_gains.total_net,
            self.threshold("CAPITAL_LOSS_LIMIT"),
            prior_carryforward=data.options.prior_loss_carryforward,
        )
        short_term, long_term = taxable_terms(
            data.capital_gains.net_short_term,
            data.capital_gains.net_long_term,
            prior_carryforward=data.options.prior_loss_carryforward,
        )
        tax = self.gains_tax(short_term, long_term) + self.income_tax(data.income)
        if capped.deductible_loss > 0 and data.income.total > 0:
            # Deductible capital losses offset ordinary income.
            offset = min(capped.deductible_loss, data.income.total)
            tax -= offset * get_tax_rate(self.code, RateType.INCOME, data.income.total)

        report = JurisdictionReport(
            estimated_tax=round_money(max(Decimal(0), tax)),
            loss_carryforward=capped,
            foreign_accounts=self._foreign_accounts(data, "FBAR_THRESHOLD"),
        )
        report.issues.extend(self.identify_issues(data.transactions))
        if capped.carryforward > 0:
            report.recommendations.append(
                f"Capital loss of {round_money(capped.carryforward)} carries forward to next tax year"
            )
        if report.foreign_accounts.disclosure_required:
            report.recommendations.append("FBAR filing may be required: aggregate exchange balances exceeded threshold")
        if report.foreign_accounts.aggregate_peak > self.threshold("FORM_8938_THRESHOLD"):
            report.recommendations.append("Form 8938 may be required for specified foreign financial assets")
        return report


class EURules(JurisdictionRules):
    """Simplified EU estimate with the Travel Rule check."""

    code = JurisdictionCode.EU

    def estimate_tax(self, capital_gains: CapitalGainsReport, income: IncomeReport) -> Decimal:
        tax = Decimal(0)
        if capital_gains.total_net > 0:
            tax += capital_gains.total_net * get_tax_rate(self.code, RateType.CAPITAL_GAINS_SHORT)
        if income.total > 0:
            tax += income.total * get_tax_rate(self.code, RateType.INCOME)
        return tax

    def evaluate(self, data: RulesInput) -> JurisdictionReport:
        report = super().evaluate(data)
        report.travel_rule = self.check_travel_rule(data.transactions)
        if not report.travel_rule.compliant:
            report.recommendations.append(
                f"{len(report.travel_rule.violations)} transfers above the Travel Rule threshold need "
                "originator and beneficiary information"
            )
        return report

    def check_travel_rule(self, transactions: Sequence[Transaction]) -> TravelRuleReport:
        threshold = self.threshold("TRAVEL_RULE_THRESHOLD")
        violations = [
            TravelRuleViolation(transaction=tx.external_ref or str(tx.id), amount=tx.total_value)
            for tx in transactions
            if tx.total_value is not None and tx.total_value > threshold
        ]
        return TravelRuleReport(threshold=threshold, compliant=not violations, violations=violations)


class BRRules(JurisdictionRules):
    """Monthly R$35k sales exemption and progressive capital gains brackets."""

    code = JurisdictionCode.BR

    def evaluate(self, data: RulesInput) -> JurisdictionReport:
        breakdown = build_monthly_breakdown(
            data.capital_gains.matches,
            unmatched=data.capital_gains.unmatched,
            threshold=self.threshold("MONTHLY_EXEMPT_THRESHOLD"),
            currency=data.options.currency,
        )
        tax = progressive_tax(self.code, RateType.CAPITAL_GAINS_SHORT, breakdown.total_taxable_gains)
        if data.income.total > 0:
            tax += data.income.total * get_tax_rate(self.code, RateType.INCOME)

        report = JurisdictionReport(estimated_tax=round_money(tax), monthly_breakdown=breakdown)
        report.issues.extend(self.identify_issues(data.transactions))
        report.recommendations.extend(self._exemption_recommendations(breakdown))
        report.recommendations.extend(self._in1888_recommendations(breakdown))
        return report

    def _exemption_recommendations(self, breakdown: MonthlyBreakdown) -> list[str]:
        recommendations: list[str] = []
        taxable = [entry.label for entry in breakdown.entries if not entry.exempt]
        if taxable:
            recommendations.append(f"Sales above the monthly exemption in: {', '.join(taxable)}")
            recommendations.append("Capital gains tax (DARF) is due by the last business day of the following month")
        exempt = [entry.label for entry in breakdown.entries if entry.exempt and entry.sales_volume > 0]
        if exempt:
            recommendations.append(f"Months with exempt sales: {', '.join(exempt)}")
        if breakdown.total_exempt_gains > 0:
            recommendations.append(f"Total exempt gains: {round_money(breakdown.total_exempt_gains)}")
        return recommendations

    def _in1888_recommendations(self, breakdown: MonthlyBreakdown) -> list[str]:
        threshold = self.threshold("IN1888_THRESHOLD")
        months = [entry.label for entry in breakdown.entries if entry.sales_volume > threshold]
        if not months:
            return []
        return [f"IN 1888 monthly reporting applies to: {', '.join(months)}"]


class UKRules(JurisdictionRules):
    code = JurisdictionCode.UK

    def estimate_tax(self, capital_gains: CapitalGainsReport, income: IncomeReport) -> Decimal:
        tax = Decimal(0)
        taxable_gains = capital_gains.total_net - self.threshold("CGT_ANNUAL_EXEMPT")
        if taxable_gains > 0:
            tax += taxable_gains * get_tax_rate(self.code, RateType.CAPITAL_GAINS_SHORT, taxable_gains)
        if income.total > 0:
            tax += income.total * get_tax_rate(self.code, RateType.INCOME, income.total)
        return tax


class CARules(JurisdictionRules):
    code = JurisdictionCode.CA

    def evaluate(self, data: RulesInput) -> JurisdictionReport:
        report = super().evaluate(data)
        report.foreign_accounts = self._foreign_accounts(data, "T1135_THRESHOLD")
        if report.foreign_accounts.disclosure_required:
            report.recommendations.append("Form T1135 may be required for foreign property above threshold")
        return report


class JPRules(JurisdictionRules):
    code = JurisdictionCode.JP


class AURules(JurisdictionRules):
    code = JurisdictionCode.AU


class CHRules(JurisdictionRules):
    code = JurisdictionCode.CH


class SGRules(JurisdictionRules):
    code = JurisdictionCode.SG


RULES: dict[JurisdictionCode, type[JurisdictionRules]] = {
    JurisdictionCode.US: USRules,
    JurisdictionCode.EU: EURules,
    JurisdictionCode.BR: BRRules,
    JurisdictionCode.UK: UKRules,
    JurisdictionCode.JP: JPRules,
    JurisdictionCode.AU: AURules,
    JurisdictionCode.CA: CARules,
    JurisdictionCode.CH: CHRules,
    JurisdictionCode.SG: SGRules,
}


def get_rules(jurisdiction: str) -> JurisdictionRules:
    return RULES[parse_jurisdiction(jurisdiction)]()
