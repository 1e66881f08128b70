from __future__ import annotations

from decimal import Decimal

from .jurisdictions import JurisdictionCode, parse_jurisdiction

# Amounts are in the jurisdiction's currency, day counts in days.
TAX_THRESHOLDS: dict[JurisdictionCode, dict[str, Decimal]] = {
    JurisdictionCode.US: {
        "FBAR_THRESHOLD": Decimal(10000),
        "FORM_8938_THRESHOLD": Decimal(50000),
        "CAPITAL_LOSS_LIMIT": Decimal(3000),
        # Not enforced for crypto.
        "WASH_SALE_DAYS": Decimal(30),
    },
    JurisdictionCode.EU: {
        "TRAVEL_RULE_THRESHOLD": Decimal(1000),
        # Every transaction is reported.
        "DAC8_THRESHOLD": Decimal(0),
    },
    JurisdictionCode.BR: {
        "MONTHLY_EXEMPT_THRESHOLD": Decimal(35000),
        "IN1888_THRESHOLD": Decimal(30000),
    },
    JurisdictionCode.UK: {
        "CGT_ANNUAL_EXEMPT": Decimal(6000),
        "TRADING_ALLOWANCE": Decimal(1000),
    },
    JurisdictionCode.JP: {
        "MISCELLANEOUS_DEDUCTION": Decimal(200000),
    },
    JurisdictionCode.AU: {
        "CGT_DISCOUNT_HOLDING_PERIOD": Decimal(365),
        "PERSONAL_USE_THRESHOLD": Decimal(10000),
    },
    JurisdictionCode.CA: {
        "T1135_THRESHOLD": Decimal(100000),
    },
    JurisdictionCode.CH: {
        "WEALTH_TAX_THRESHOLD": Decimal(0),
    },
    JurisdictionCode.SG: {
        "TRADING_INCOME_THRESHOLD": Decimal(0),
    },
}


def get_threshold(jurisdiction: str, name: str) -> Decimal | None:
    return TAX_THRESHOLDS[parse_jurisdiction(jurisdiction)].get(name)
