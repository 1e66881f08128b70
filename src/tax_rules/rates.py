from __future__ import annotations

from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from .jurisdictions import JurisdictionCode, parse_jurisdiction


class RateType(StrEnum):
    CAPITAL_GAINS_SHORT = "capital_gains_short"
    CAPITAL_GAINS_LONG = "capital_gains_long"
    INCOME = "income"
    STAKING = "staking"
    MINING = "mining"


class TaxRate(BaseModel):
    """One row of a jurisdiction's rate table.

    ``upper`` is the inclusive top of the amount bracket (``None`` means
    unbounded). Brackets of one type are listed in ascending order, so the
    lower bound is implied by the previous row. ``holding_days`` marks rates
    that only apply once a position was held at least that long.
    """

    model_config = ConfigDict(frozen=True)

    type: RateType
    rate: Decimal
    upper: Decimal | None = None
    holding_days: int | None = None


def _r(type_: RateType, rate: str, upper: int | None = None, holding_days: int | None = None) -> TaxRate:
    return TaxRate(
        type=type_,
        rate=Decimal(rate),
        upper=Decimal(upper) if upper is not None else None,
        holding_days=holding_days,
    )


_SHORT = RateType.CAPITAL_GAINS_SHORT
_LONG = RateType.CAPITAL_GAINS_LONG
_INCOME = RateType.INCOME
_STAKING = RateType.STAKING
_MINING = RateType.MINING

TAX_RATES: dict[JurisdictionCode, list[TaxRate]] = {
    JurisdictionCode.US: [
        # Short-term gains follow ordinary income brackets.
        _r(_SHORT, "0.10", 11000),
        _r(_SHORT, "0.12", 44725),
        _r(_SHORT, "0.22", 95375),
        _r(_SHORT, "0.24", 183250),
        _r(_SHORT, "0.32", 231250),
        _r(_SHORT, "0.35", 578125),
        _r(_SHORT, "0.37"),
        _r(_LONG, "0.00", 44625, holding_days=366),
        _r(_LONG, "0.15", 492300, holding_days=366),
        _r(_LONG, "0.20", holding_days=366),
        # Income follows the staking rate.
        _r(_INCOME, "0.22"),
        _r(_STAKING, "0.22"),
        _r(_MINING, "0.22"),
    ],
    JurisdictionCode.EU: [
        # Simplified, member states differ.
        _r(_SHORT, "0.25"),
        _r(_LONG, "0.25", holding_days=366),
        _r(_INCOME, "0.30"),
        _r(_STAKING, "0.30"),
        _r(_MINING, "0.30"),
    ],
    JurisdictionCode.BR: [
        _r(_SHORT, "0.15", 5_000_000),
        _r(_SHORT, "0.175", 10_000_000),
        _r(_SHORT, "0.20", 30_000_000),
        _r(_SHORT, "0.225"),
        _r(_LONG, "0.15"),
        _r(_INCOME, "0.275"),
        _r(_STAKING, "0.275"),
        _r(_MINING, "0.275"),
    ],
    JurisdictionCode.UK: [
        _r(_SHORT, "0.10", 37700),
        _r(_SHORT, "0.20"),
        _r(_LONG, "0.10", 37700),
        _r(_LONG, "0.20"),
        _r(_INCOME, "0.40"),
        _r(_STAKING, "0.40"),
        _r(_MINING, "0.40"),
    ],
    JurisdictionCode.JP: [
        # Miscellaneous income, top marginal rate.
        _r(_SHORT, "0.55"),
        _r(_LONG, "0.55"),
        _r(_INCOME, "0.55"),
        _r(_STAKING, "0.55"),
        _r(_MINING, "0.55"),
    ],
    JurisdictionCode.AU: [
        _r(_SHORT, "0.45"),
        # 50% CGT discount after twelve months.
        _r(_LONG, "0.225", holding_days=366),
        _r(_INCOME, "0.45"),
        _r(_STAKING, "0.45"),
        _r(_MINING, "0.45"),
    ],
    JurisdictionCode.CA: [
        # 50% inclusion of the top marginal rate.
        _r(_SHORT, "0.265"),
        _r(_LONG, "0.265"),
        _r(_INCOME, "0.53"),
        _r(_STAKING, "0.53"),
        _r(_MINING, "0.53"),
    ],
    JurisdictionCode.CH: [
        _r(_SHORT, "0"),
        _r(_LONG, "0"),
        _r(_INCOME, "0.40"),
        _r(_STAKING, "0.40"),
        _r(_MINING, "0.40"),
    ],
    JurisdictionCode.SG: [
        _r(_SHORT, "0"),
        _r(_LONG, "0"),
        _r(_INCOME, "0.22"),
        _r(_STAKING, "0.22"),
        _r(_MINING, "0.22"),
    ],
}


def get_tax_rate(
    jurisdiction: str,
    rate_type: RateType,
    amount: Decimal | None = None,
    holding_days: int | None = None,
) -> Decimal:
    """Look up the applicable rate.

    Holding-period qualified rates win when ``holding_days`` reaches their
    threshold, then the amount bracket is selected. Amounts above every
    bracket get the last (highest) rate and a type without any rate is 0.
    """
    rates = [rate for rate in TAX_RATES[parse_jurisdiction(jurisdiction)] if rate.type == rate_type]
    if not rates:
        return Decimal(0)

    if holding_days is not None:
        qualified = [rate for rate in rates if rate.holding_days is not None and holding_days >= rate.holding_days]
        if qualified:
            return _rate_for_amount(qualified, amount)

    return _rate_for_amount(rates, amount)


def _rate_for_amount(rates: list[TaxRate], amount: Decimal | None) -> Decimal:
    if amount is None or len(rates) == 1:
        return rates[0].rate

    for rate in rates:
        if rate.upper is None or amount <= rate.upper:
            return rate.rate
    return rates[-1].rate


def progressive_tax(jurisdiction: str, rate_type: RateType, amount: Decimal) -> Decimal:
    """Tax on ``amount`` where each bracket's rate applies only to its slice."""
    if amount <= 0:
        return Decimal(0)
    rates = [rate for rate in TAX_RATES[parse_jurisdiction(jurisdiction)] if rate.type == rate_type]
    tax = Decimal(0)
    lower = Decimal(0)
    for rate in rates:
        upper = rate.upper if rate.upper is not None else amount
        if amount <= lower:
            break
        taxed = min(amount, upper) - lower
        if taxed > 0:
            tax += taxed * rate.rate
        lower = upper
    return tax
