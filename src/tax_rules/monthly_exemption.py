from __future__ import annotations

import calendar
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel

from domain.disposals import DisposalMatch, UnmatchedDisposal


class MonthlyBreakdownEntry(BaseModel):
    month: int
    label: str
    sales_volume: Decimal
    capital_gains: Decimal
    exempt: bool
    taxable_gains: Decimal
    threshold: Decimal


class MonthlyBreakdown(BaseModel):
    entries: list[MonthlyBreakdownEntry]
    currency: str
    total_exempt_gains: Decimal
    total_taxable_gains: Decimal
    exempt_months: int
    taxable_months: int


def build_monthly_breakdown(
    matches: Iterable[DisposalMatch],
    *,
    unmatched: Iterable[UnmatchedDisposal] = (),
    threshold: Decimal,
    currency: str,
) -> MonthlyBreakdown:
    """Roll disposals up by calendar month and apply a sales-volume exemption.

    A month is exempt when its total disposal proceeds stay at or below
    ``threshold``; its gains are then excluded from taxable gains but still
    reported. Losses never produce negative taxable gains. Proceeds of
    ``unmatched`` disposals count towards the volume but carry no gain.
    """
    sales = [Decimal(0)] * 12
    gains = [Decimal(0)] * 12
    for match in matches:
        idx = match.disposed_at.month - 1
        sales[idx] += match.proceeds
        gains[idx] += match.gain_loss
    for entry in unmatched:
        sales[entry.disposed_at.month - 1] += entry.proceeds

    entries: list[MonthlyBreakdownEntry] = []
    total_exempt = Decimal(0)
    total_taxable = Decimal(0)
    exempt_months = 0
    taxable_months = 0

    for idx in range(12):
        exempt = sales[idx] <= threshold
        month_gains = gains[idx]
        taxable = Decimal(0) if exempt else max(Decimal(0), month_gains)

        if month_gains > 0:
            if exempt:
                total_exempt += month_gains
            else:
                total_taxable += month_gains

        if exempt and sales[idx] > 0:
            exempt_months += 1
        if not exempt:
            taxable_months += 1

        entries.append(
            MonthlyBreakdownEntry(
                month=idx + 1,
                label=calendar.month_abbr[idx + 1],
                sales_volume=sales[idx],
                capital_gains=month_gains,
                exempt=exempt,
                taxable_gains=taxable,
                threshold=threshold,
            )
        )

    return MonthlyBreakdown(
        entries=entries,
        currency=currency,
        total_exempt_gains=total_exempt,
        total_taxable_gains=total_taxable,
        exempt_months=exempt_months,
        taxable_months=taxable_months,
    )
