from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Iterable, Iterator, Mapping, Sequence

from pydantic import BaseModel

from .ledger import LotId, TransactionId

logger = logging.getLogger(__name__)


class CostBasisMethod(StrEnum):
    FIFO = "FIFO"
    LIFO = "LIFO"
    HIFO = "HIFO"
    SPECIFIC_ID = "SPECIFIC_ID"
    AVERAGE = "AVERAGE"


class LotLedgerError(Exception):
    def __init__(
        self,
        message: str,
        *,
        asset: str | None = None,
        lot_id: LotId | None = None,
        quantity: Decimal | None = None,
    ) -> None:
        super().__init__(message)
        self.asset = asset
        self.lot_id = lot_id
        self.quantity = quantity


@dataclass
class CostBasisLot:
    id: LotId
    asset: str
    transaction_id: TransactionId
    amount: Decimal
    cost: Decimal
    acquired_at: datetime
    remaining: Decimal
    cost_resolved: bool = True
    sequence: int = 0

    @property
    def unit_cost(self) -> Decimal:
        return self.cost / self.amount

    @property
    def is_exhausted(self) -> bool:
        return self.remaining == 0

    def cost_for(self, quantity: Decimal) -> Decimal:
        return self.cost * quantity / self.amount

    def deplete(self, quantity: Decimal) -> None:
        if quantity <= 0:
            raise LotLedgerError(
                f"Depletion must be positive, got {quantity}", asset=self.asset, lot_id=self.id, quantity=quantity
            )
        if quantity > self.remaining:
            raise LotLedgerError(
                f"Cannot take {quantity} from lot {self.id} with {self.remaining} remaining",
                asset=self.asset,
                lot_id=self.id,
                quantity=quantity,
            )
        self.remaining -= quantity


class LotSnapshot(BaseModel):
    lot_id: LotId
    asset: str
    transaction_id: TransactionId
    acquired_at: datetime
    amount: Decimal
    cost: Decimal
    remaining: Decimal
    cost_resolved: bool


@dataclass(frozen=True)
class LotDraw:
    lot: CostBasisLot
    quantity: Decimal
    cost_basis: Decimal


@dataclass(frozen=True)
class DrawResult:
    draws: list[LotDraw]
    unmatched: Decimal

    @property
    def matched(self) -> Decimal:
        return sum((draw.quantity for draw in self.draws), Decimal(0))


class LotLedger:
    """Per-asset acquisition lots for one audit run.

    Built fresh for every run and owned by the caller. Lots are depleted in
    place and exhausted lots stay in the ledger for the audit trail.
    """

    def __init__(
        self,
        method: CostBasisMethod = CostBasisMethod.FIFO,
        *,
        specific_lots: Mapping[TransactionId, Sequence[TransactionId]] | None = None,
    ) -> None:
        self._method = method
        self._specific_lots = dict(specific_lots or {})
        self._lots: dict[str, list[CostBasisLot]] = defaultdict(list)
        self._sequence = 0

    @property
    def method(self) -> CostBasisMethod:
        return self._method

    def add(
        self,
        *,
        lot_id: LotId,
        asset: str,
        transaction_id: TransactionId,
        amount: Decimal,
        cost: Decimal | None,
        acquired_at: datetime,
    ) -> CostBasisLot:
        """Open a lot. An unresolved cost still opens a lot at zero cost."""
        if amount <= 0:
            raise LotLedgerError(f"Lot amount must be positive, got {amount}", asset=asset, quantity=amount)
        if cost is not None and cost < 0:
            raise LotLedgerError(f"Lot cost must be >= 0, got {cost}", asset=asset)

        lot = CostBasisLot(
            id=lot_id,
            asset=asset,
            transaction_id=transaction_id,
            amount=amount,
            cost=cost if cost is not None else Decimal(0),
            acquired_at=acquired_at,
            remaining=amount,
            cost_resolved=cost is not None,
            sequence=self._sequence,
        )
        self._sequence += 1
        self._lots[asset].append(lot)
        return lot

    def assets(self) -> list[str]:
        return sorted(self._lots)

    def lots(self, asset: str | None = None) -> list[CostBasisLot]:
        if asset is not None:
            return list(self._lots.get(asset, []))
        return [lot for key in self.assets() for lot in self._lots[key]]

    def available(self, asset: str) -> Decimal:
        return sum((lot.remaining for lot in self._lots.get(asset, [])), Decimal(0))

    def draw(self, asset: str, quantity: Decimal, *, disposal_id: TransactionId | None = None) -> DrawResult:
        """Deplete lots of ``asset`` for a disposal of ``quantity``.

        Returns one draw per lot consumed plus any quantity no lot could cover.
        """
        if quantity <= 0:
            raise LotLedgerError(f"Disposal quantity must be positive, got {quantity}", asset=asset, quantity=quantity)

        eligible = [lot for lot in self._lots.get(asset, []) if lot.remaining > 0]
        if not eligible:
            return DrawResult(draws=[], unmatched=quantity)

        if self._method == CostBasisMethod.AVERAGE:
            draws = list(self._draw_pooled(eligible, quantity))
        else:
            draws = list(self._draw_ordered(self._order(eligible, disposal_id), quantity))

        matched = sum((draw.quantity for draw in draws), Decimal(0))
        unmatched = quantity - matched
        if unmatched > 0:
            logger.debug("Asset %s short by %s for disposal %s", asset, unmatched, disposal_id)
        return DrawResult(draws=draws, unmatched=unmatched)

    def snapshot(self) -> list[LotSnapshot]:
        return [
            LotSnapshot(
                lot_id=lot.id,
                asset=lot.asset,
                transaction_id=lot.transaction_id,
                acquired_at=lot.acquired_at,
                amount=lot.amount,
                cost=lot.cost,
                remaining=lot.remaining,
                cost_resolved=lot.cost_resolved,
            )
            for lot in self.lots()
        ]

    def _order(self, eligible: list[CostBasisLot], disposal_id: TransactionId | None) -> list[CostBasisLot]:
        fifo = sorted(eligible, key=lambda lot: (lot.acquired_at, lot.sequence))
        if self._method == CostBasisMethod.FIFO:
            return fifo
        if self._method == CostBasisMethod.LIFO:
            return sorted(eligible, key=lambda lot: (lot.acquired_at, lot.sequence), reverse=True)
        if self._method == CostBasisMethod.HIFO:
            # Stable sort on FIFO order keeps ties deterministic.
            return sorted(fifo, key=lambda lot: lot.unit_cost, reverse=True)

        designated = self._specific_lots.get(disposal_id, []) if disposal_id is not None else []
        if not designated:
            return fifo
        rank = {transaction_id: idx for idx, transaction_id in enumerate(designated)}
        picked = sorted((lot for lot in fifo if lot.transaction_id in rank), key=lambda lot: rank[lot.transaction_id])
        return picked + [lot for lot in fifo if lot.transaction_id not in rank]

    @staticmethod
    def _draw_ordered(ordered: Iterable[CostBasisLot], quantity: Decimal) -> Iterator[LotDraw]:
        remaining = quantity
        for lot in ordered:
            if remaining <= 0:
                break
            take = min(remaining, lot.remaining)
            cost_basis = lot.cost_for(take)
            lot.deplete(take)
            remaining -= take
            yield LotDraw(lot=lot, quantity=take, cost_basis=cost_basis)

    @staticmethod
    def _draw_pooled(eligible: list[CostBasisLot], quantity: Decimal) -> Iterator[LotDraw]:
        """Treat all eligible lots as one pool at the weighted-average unit cost."""
        pool = sum((lot.remaining for lot in eligible), Decimal(0))
        ordered = sorted(eligible, key=lambda lot: (lot.acquired_at, lot.sequence))

        if quantity >= pool:
            takes = [lot.remaining for lot in ordered]
        else:
            takes = [lot.remaining * quantity / pool for lot in ordered[:-1]]
            # The last lot absorbs rounding so the pool shrinks by exactly ``quantity``.
            takes.append(min(ordered[-1].remaining, quantity - sum(takes, Decimal(0))))

        for lot, take in zip(ordered, takes):
            if take <= 0:
                continue
            cost_basis = lot.cost_for(take)
            lot.deplete(take)
            yield LotDraw(lot=lot, quantity=take, cost_basis=cost_basis)
