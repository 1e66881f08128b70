from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel

from domain.errors import UnsupportedJurisdictionError


class JurisdictionCode(StrEnum):
    US = "US"
    EU = "EU"
    BR = "BR"
    UK = "UK"
    JP = "JP"
    AU = "AU"
    CA = "CA"
    CH = "CH"
    SG = "SG"


class MonthDay(BaseModel):
    month: int
    day: int


class Jurisdiction(BaseModel):
    code: JurisdictionCode
    name: str
    currency: str
    tax_year_start: MonthDay
    tax_year_end: MonthDay
    long_term_days: int = 366
    capital_gains_taxed: bool = True
    report_formats: list[str] = []


def _calendar(code: JurisdictionCode, name: str, currency: str, formats: list[str], **extra: object) -> Jurisdiction:
    return Jurisdiction(
        code=code,
        name=name,
        currency=currency,
        tax_year_start=MonthDay(month=1, day=1),
        tax_year_end=MonthDay(month=12, day=31),
        report_formats=formats,
        **extra,
    )


JURISDICTIONS: dict[JurisdictionCode, Jurisdiction] = {
    JurisdictionCode.US: _calendar(
        JurisdictionCode.US, "United States", "USD", ["Form 8949", "Schedule D", "FBAR", "Form 8938"]
    ),
    JurisdictionCode.EU: _calendar(
        JurisdictionCode.EU, "European Union", "EUR", ["MiCA Report", "DAC8", "Travel Rule Report"]
    ),
    JurisdictionCode.BR: _calendar(JurisdictionCode.BR, "Brazil", "BRL", ["IN 1888", "GCAP", "DIRPF"]),
    JurisdictionCode.UK: Jurisdiction(
        code=JurisdictionCode.UK,
        name="United Kingdom",
        currency="GBP",
        tax_year_start=MonthDay(month=4, day=6),
        tax_year_end=MonthDay(month=4, day=5),
        report_formats=["Self Assessment", "Capital Gains Summary"],
    ),
    JurisdictionCode.JP: _calendar(
        JurisdictionCode.JP, "Japan", "JPY", ["Kokuzei Report", "Crypto Income Declaration"]
    ),
    JurisdictionCode.AU: Jurisdiction(
        code=JurisdictionCode.AU,
        name="Australia",
        currency="AUD",
        tax_year_start=MonthDay(month=7, day=1),
        tax_year_end=MonthDay(month=6, day=30),
        report_formats=["CGT Schedule", "myTax Report"],
    ),
    JurisdictionCode.CA: _calendar(JurisdictionCode.CA, "Canada", "CAD", ["Schedule 3", "T1135"]),
    JurisdictionCode.CH: _calendar(
        JurisdictionCode.CH, "Switzerland", "CHF", ["Wealth Declaration", "Cantonal Tax Form"]
    ),
    JurisdictionCode.SG: _calendar(
        JurisdictionCode.SG,
        "Singapore",
        "SGD",
        ["Form B/B1", "Business Income Declaration"],
        capital_gains_taxed=False,
    ),
}


def parse_jurisdiction(code: str) -> JurisdictionCode:
    """Resolve a jurisdiction code, failing fast on anything unknown."""
    try:
        return JurisdictionCode(code.upper())
    except ValueError as err:
        raise UnsupportedJurisdictionError(code) from err


def get_jurisdiction(code: str) -> Jurisdiction:
    return JURISDICTIONS[parse_jurisdiction(code)]


def tax_year_bounds(code: str, tax_year: int) -> tuple[datetime, datetime]:
    """Inclusive UTC bounds of ``tax_year``.

    Tax years that do not follow the calendar are labelled by the year in
    which they start, e.g. UK 2024 runs from 2024-04-06 to 2025-04-05.
    """
    jurisdiction = get_jurisdiction(code)
    start = jurisdiction.tax_year_start
    end = jurisdiction.tax_year_end
    end_year = tax_year if (end.month, end.day) >= (start.month, start.day) else tax_year + 1
    return (
        datetime(tax_year, start.month, start.day, tzinfo=timezone.utc),
        datetime(end_year, end.month, end.day, 23, 59, 59, 999999, tzinfo=timezone.utc),
    )
