from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from domain.audit import AuditRecord, AuditStatus, HoldingAsset, HoldingsReport
from utils.formatting import format_currency, format_decimal, render_audit_status, render_holdings


@pytest.mark.parametrize(
    "value, expected",
    [
        (Decimal("1.500"), "1.5"),
        (Decimal("100"), "100"),
        (Decimal("1E+2"), "100"),
        (Decimal("0.00000001"), "0.00000001"),
    ],
)
def test_format_decimal(value: Decimal, expected: str) -> None:
    assert format_decimal(value) == expected


def test_format_currency() -> None:
    assert format_currency(Decimal("12.345")) == "12.35"
    assert format_currency(None) == "n/a"


def test_render_holdings_table(capsys: pytest.CaptureFixture[str]) -> None:
    holdings = HoldingsReport(
        as_of=datetime(2024, 12, 31, tzinfo=timezone.utc),
        total_value=Decimal(3000),
        assets=[
            HoldingAsset(asset="ETH", balance=Decimal(1), cost_basis=Decimal(2000), value=Decimal(3000)),
            HoldingAsset(asset="MEME", balance=Decimal(1000), cost_basis=Decimal(0)),
        ],
    )

    render_holdings(holdings, currency="USD")

    out = capsys.readouterr().out
    assert "Holdings as of 2024-12-31" in out
    assert "Value USD" in out
    assert "n/a" in out
    assert out.rstrip().endswith("3000.00")


def test_render_audit_status(capsys: pytest.CaptureFixture[str]) -> None:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    record = AuditRecord(
        audit_id="audit-1",
        jurisdiction="US",
        tax_year=2024,
        status=AuditStatus.FAILED,
        progress=35,
        error_message="boom",
        created_at=now,
        updated_at=now,
    )

    render_audit_status(record)

    assert capsys.readouterr().out.splitlines() == ["Audit audit-1: FAILED (35%)", "  Error: boom"]
