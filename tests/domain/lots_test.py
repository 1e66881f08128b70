from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from domain.ledger import LotId, TransactionId
from domain.lots import CostBasisMethod, LotLedger, LotLedgerError
from tests.constants import BTC, ETH

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _add(ledger: LotLedger, amount: str, cost: str | None, *, days: int, asset: str = ETH) -> TransactionId:
    tx_id = TransactionId(uuid4())
    ledger.add(
        lot_id=LotId(uuid4()),
        asset=asset,
        transaction_id=tx_id,
        amount=Decimal(amount),
        cost=Decimal(cost) if cost is not None else None,
        acquired_at=START + timedelta(days=days),
    )
    return tx_id


def _three_lots(method: CostBasisMethod, **kwargs: object) -> tuple[LotLedger, list[TransactionId]]:
    ledger = LotLedger(method, **kwargs)  # type: ignore[arg-type]
    ids = [
        _add(ledger, "1", "100", days=0),
        _add(ledger, "1", "300", days=1),
        _add(ledger, "1", "200", days=2),
    ]
    return ledger, ids


@pytest.mark.parametrize(
    ("method", "expected_cost"),
    [
        (CostBasisMethod.FIFO, Decimal(100)),
        (CostBasisMethod.LIFO, Decimal(200)),
        (CostBasisMethod.HIFO, Decimal(300)),
        (CostBasisMethod.AVERAGE, Decimal(200)),
    ],
)
def test_draw_order_by_method(method: CostBasisMethod, expected_cost: Decimal) -> None:
    ledger, _ = _three_lots(method)

    result = ledger.draw(ETH, Decimal(1))

    assert result.unmatched == 0
    cost = sum((draw.cost_basis for draw in result.draws), Decimal(0))
    assert cost.quantize(Decimal("0.01")) == expected_cost


def test_partial_fill_spans_lots_with_one_draw_per_lot() -> None:
    ledger, ids = _three_lots(CostBasisMethod.FIFO)

    result = ledger.draw(ETH, Decimal("1.5"))

    assert [draw.lot.transaction_id for draw in result.draws] == ids[:2]
    assert [draw.quantity for draw in result.draws] == [Decimal(1), Decimal("0.5")]
    assert sum(draw.cost_basis for draw in result.draws) == Decimal(250)


def test_specific_id_draws_designated_lots_first_then_fifo() -> None:
    disposal = TransactionId(uuid4())
    first, second, third = (TransactionId(uuid4()) for _ in range(3))
    ledger = LotLedger(CostBasisMethod.SPECIFIC_ID, specific_lots={disposal: [third]})
    for days, (tx_id, cost) in enumerate(((first, "100"), (second, "300"), (third, "200"))):
        ledger.add(
            lot_id=LotId(uuid4()),
            asset=ETH,
            transaction_id=tx_id,
            amount=Decimal(1),
            cost=Decimal(cost),
            acquired_at=START + timedelta(days=days),
        )

    result = ledger.draw(ETH, Decimal("1.5"), disposal_id=disposal)

    assert [draw.lot.transaction_id for draw in result.draws] == [third, first]
    assert sum(draw.cost_basis for draw in result.draws) == Decimal(250)


def test_specific_id_without_designation_falls_back_to_fifo() -> None:
    ledger, ids = _three_lots(CostBasisMethod.SPECIFIC_ID)

    result = ledger.draw(ETH, Decimal(1), disposal_id=TransactionId(uuid4()))

    assert result.draws[0].lot.transaction_id == ids[0]


def test_average_depletes_lots_proportionally() -> None:
    ledger = LotLedger(CostBasisMethod.AVERAGE)
    _add(ledger, "1", "100", days=0)
    _add(ledger, "3", "900", days=1)

    result = ledger.draw(ETH, Decimal(2))

    assert [draw.quantity for draw in result.draws] == [Decimal("0.5"), Decimal("1.5")]
    assert sum(draw.cost_basis for draw in result.draws) == Decimal(500)
    assert ledger.available(ETH) == Decimal(2)


def test_hifo_ties_keep_insertion_order() -> None:
    ledger = LotLedger(CostBasisMethod.HIFO)
    first = _add(ledger, "1", "100", days=0)
    _add(ledger, "1", "100", days=1)

    result = ledger.draw(ETH, Decimal(1))

    assert result.draws[0].lot.transaction_id == first


def test_lot_conservation_and_monotonic_depletion() -> None:
    ledger, _ = _three_lots(CostBasisMethod.FIFO)
    initial = sum(lot.amount for lot in ledger.lots(ETH))
    previous = {lot.id: lot.remaining for lot in ledger.lots(ETH)}

    drawn = Decimal(0)
    for quantity in ("0.4", "1.1", "0.9"):
        result = ledger.draw(ETH, Decimal(quantity))
        drawn += result.matched
        for lot in ledger.lots(ETH):
            assert 0 <= lot.remaining <= previous[lot.id]
            previous[lot.id] = lot.remaining

    assert ledger.available(ETH) + drawn == initial


def test_disposal_beyond_available_reports_unmatched() -> None:
    ledger = LotLedger()
    _add(ledger, "1", "100", days=0)

    result = ledger.draw(ETH, Decimal("1.25"))

    assert result.matched == Decimal(1)
    assert result.unmatched == Decimal("0.25")
    assert ledger.lots(ETH)[0].is_exhausted


def test_draw_without_lots_is_fully_unmatched() -> None:
    ledger = LotLedger()
    _add(ledger, "1", "100", days=0, asset=BTC)

    result = ledger.draw(ETH, Decimal(1))

    assert result.draws == []
    assert result.unmatched == Decimal(1)


def test_unresolved_cost_opens_zero_cost_lot() -> None:
    ledger = LotLedger()
    _add(ledger, "2", None, days=0)

    lot = ledger.lots(ETH)[0]

    assert lot.cost == 0
    assert not lot.cost_resolved


def test_invalid_amounts_raise_lot_ledger_error() -> None:
    ledger = LotLedger()

    with pytest.raises(LotLedgerError) as exc_info:
        _add(ledger, "0", "10", days=0)
    assert exc_info.value.asset == ETH

    with pytest.raises(LotLedgerError):
        ledger.draw(ETH, Decimal(0))


def test_snapshot_lists_lots_sorted_by_asset() -> None:
    ledger = LotLedger()
    _add(ledger, "1", "100", days=0, asset=ETH)
    _add(ledger, "1", "30000", days=0, asset=BTC)

    snapshot = ledger.snapshot()

    assert [lot.asset for lot in snapshot] == [BTC, ETH]
