from __future__ import annotations

import logging
from datetime import datetime
from time import perf_counter
from typing import Callable, Iterable

from domain.audit import AuditJob, AuditMetadata, AuditResult, AuditSummary
from domain.disposals import DisposalMatcher
from domain.ledger import Transaction, TransactionId
from domain.lots import LotLedger
from tax_rules.jurisdiction_rules import RulesInput, get_rules
from tax_rules.jurisdictions import tax_year_bounds
from utils.hashing import content_hash
from utils.holdings_summary import compute_holdings
from utils.income_summary import compute_income

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


def _dedupe(transactions: Iterable[Transaction]) -> list[Transaction]:
    seen: set[TransactionId] = set()
    unique: list[Transaction] = []
    for tx in transactions:
        if tx.id in seen:
            continue
        seen.add(tx.id)
        unique.append(tx)
    unique.sort(key=lambda tx: (tx.timestamp, str(tx.id)))
    return unique


def compute_audit(
    job: AuditJob,
    transactions: Iterable[Transaction],
    *,
    processed_at: datetime | None = None,
    on_progress: ProgressCallback | None = None,
) -> AuditResult:
    """Build the hashed audit result for ``job`` from already loaded transactions.

    ``transactions`` is the full input of the run: on-chain history up to the
    end of the tax year plus the exchange lookback window. Lots are rebuilt
    from it on every call, so the same input always yields the same document
    and the same content hash. ``processed_at`` is informational only.
    """

    def report(progress: int) -> None:
        if on_progress is not None:
            on_progress(progress)

    start = perf_counter()
    options = job.options
    rules = get_rules(job.jurisdiction)
    period_start, period_end = tax_year_bounds(job.jurisdiction, job.tax_year)

    history = [tx for tx in _dedupe(transactions) if tx.timestamp <= period_end]
    window = [tx for tx in history if tx.timestamp >= period_start]

    ledger = LotLedger(options.cost_basis_method, specific_lots=options.specific_lots)
    matcher = DisposalMatcher(
        ledger,
        window_start=period_start,
        window_end=period_end,
        long_term_days=rules.long_term_days,
        include_nfts=options.include_nfts,
        include_defi=options.include_defi,
    )
    matching = matcher.process(history)
    capital_gains = matching.capital_gains
    report(40)

    income, income_issues = compute_income(window, options)
    holdings = compute_holdings(history, ledger, as_of=period_end)
    report(70)

    jurisdiction_report = rules.evaluate(
        RulesInput(
            capital_gains=capital_gains,
            income=income,
            holdings=holdings,
            transactions=window,
            history=history,
            period_start=period_start,
            period_end=period_end,
            options=options,
        )
    )
    issues = matching.issues + income_issues + jurisdiction_report.issues
    recommendations = rules.recommendations(capital_gains, issues) + jurisdiction_report.recommendations
    report(85)

    result = AuditResult(
        audit_id=job.audit_id,
        jurisdiction=rules.code.value,
        tax_year=job.tax_year,
        summary=AuditSummary(
            total_transactions=len(window),
            total_wallets=len(job.wallet_ids),
            total_exchange_accounts=len(job.exchange_connection_ids),
            period_start=period_start,
            period_end=period_end,
            net_gain_loss=capital_gains.total_net,
            total_income=income.total,
            estimated_tax=jurisdiction_report.estimated_tax,
            currency=options.currency,
        ),
        capital_gains=capital_gains,
        income=income,
        holdings=holdings,
        issues=issues,
        recommendations=recommendations,
        monthly_breakdown=jurisdiction_report.monthly_breakdown,
        loss_carryforward=jurisdiction_report.loss_carryforward,
        foreign_accounts=jurisdiction_report.foreign_accounts,
        travel_rule=jurisdiction_report.travel_rule,
        metadata=AuditMetadata(
            rules_version=rules.version,
            jurisdiction=rules.code.value,
            cost_basis_method=options.cost_basis_method,
            processed_at=processed_at,
        ),
    )
    result = result.model_copy(update={"content_hash": content_hash(result)})

    logger.info(
        "Audit %s (%s %d): %d transactions in window, %d matches, %d issues in %.3fs",
        job.audit_id,
        rules.code,
        job.tax_year,
        len(window),
        len(capital_gains.matches),
        len(issues),
        perf_counter() - start,
    )
    return result
