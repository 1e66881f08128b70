from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from domain.audit import AuditRecord, AuditResult, HoldingsReport
from domain.issues import AuditIssue


def format_decimal(value: Decimal) -> str:
    quantized = value.normalize()
    # Avoid scientific notation for integers.
    if quantized == quantized.to_integral():
        return f"{quantized:.0f}"
    return format(quantized, "f")


def format_currency(value: Decimal | None) -> str:
    if value is None:
        return "n/a"
    cents = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{cents:.2f}"


def render_audit_status(record: AuditRecord) -> None:
    print(f"Audit {record.audit_id}: {record.status} ({record.progress}%)")
    if record.error_message:
        print(f"  Error: {record.error_message}")
    if record.attestation_ref:
        print(f"  Attestation: {record.attestation_ref}")
    elif record.attestation_error:
        print(f"  Attestation failed: {record.attestation_error}")


def render_audit_summary(result: AuditResult) -> None:
    summary = result.summary
    gains = result.capital_gains
    currency = summary.currency
    print(f"Audit summary ({result.jurisdiction} {result.tax_year}, {result.metadata.cost_basis_method}):")
    print(f"  Period:             {summary.period_start:%Y-%m-%d} .. {summary.period_end:%Y-%m-%d}")
    print(f"  Transactions:       {summary.total_transactions}")
    print(f"  Wallets / accounts: {summary.total_wallets} / {summary.total_exchange_accounts}")
    print(f"  Short-term net:     {format_currency(gains.net_short_term)} {currency}")
    print(f"  Long-term net:      {format_currency(gains.net_long_term)} {currency}")
    print(f"  Net gain/loss:      {format_currency(summary.net_gain_loss)} {currency}")
    print(f"  Income:             {format_currency(summary.total_income)} {currency}")
    print(f"  Estimated tax:      {format_currency(summary.estimated_tax)} {currency}")
    print(f"  Content hash:       {result.content_hash}")
    render_holdings(result.holdings, currency=currency)
    render_issues(result.issues)
    if result.recommendations:
        print("Recommendations:")
        for recommendation in result.recommendations:
            print(f"  - {recommendation}")


def render_holdings(holdings: HoldingsReport, *, currency: str) -> None:
    print(f"Holdings as of {holdings.as_of:%Y-%m-%d}:")
    if not holdings.assets:
        print("  (empty)")
        return

    balance_label = "Balance"
    cost_label = f"Cost {currency}"
    value_label = f"Value {currency}"

    rows = [
        (asset.asset, format_decimal(asset.balance), format_currency(asset.cost_basis), format_currency(asset.value))
        for asset in holdings.assets
    ]
    asset_width = max(len("Asset"), max(len(row[0]) for row in rows))
    balance_width = max(len(balance_label), max(len(row[1]) for row in rows))
    cost_width = max(len(cost_label), max(len(row[2]) for row in rows))
    value_width = max(len(value_label), max(len(row[3]) for row in rows))

    header = (
        f"{'Asset':<{asset_width}} {balance_label:>{balance_width}} "
        f"{cost_label:>{cost_width}} {value_label:>{value_width}}"
    )
    lines = [header, "-" * len(header)]
    for asset, balance, cost, value in rows:
        lines.append(
            f"{asset:<{asset_width}} {balance:>{balance_width}} {cost:>{cost_width}} {value:>{value_width}}"
        )
    lines.append("-" * len(header))
    total = format_currency(holdings.total_value)
    lines.append(f"{'Total':<{len(header) - value_width - 1}} {total:>{value_width}}")
    print("\n".join(lines))


def render_issues(issues: list[AuditIssue]) -> None:
    if not issues:
        return
    print(f"Issues ({len(issues)}):")
    for issue in issues:
        where = f" [{issue.transaction}]" if issue.transaction else ""
        print(f"  {issue.severity:<8} {issue.type}{where}: {issue.description}")
