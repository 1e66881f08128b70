from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from domain.ledger import FlowDirection, LotId, Provenance, TransactionType
from domain.lots import CostBasisMethod, LotLedger
from tests.constants import BINANCE, ETH, SOL
from tests.helpers.time_utils import inflow, leg, make_transaction, outflow
from utils.holdings_summary import compute_holdings

AS_OF = datetime(2024, 12, 31, tzinfo=timezone.utc)


def test_deposit_moves_coins_between_accounts() -> None:
    bought = make_transaction(
        tx_type=TransactionType.BUY,
        flows=[inflow(ETH, 2, 4000)],
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    sent = make_transaction(
        tx_type=TransactionType.TRANSFER_OUT,
        flows=[outflow(ETH, 1), leg(ETH, "0.01", FlowDirection.OUT, is_fee=True)],
        timestamp=datetime(2024, 2, 1, tzinfo=timezone.utc),
    )
    received = make_transaction(
        tx_type=TransactionType.EXCHANGE_DEPOSIT,
        flows=[inflow(ETH, 1)],
        timestamp=datetime(2024, 2, 1, 0, 5, tzinfo=timezone.utc),
        provenance=Provenance.EXCHANGE,
        exchange_connection_id=BINANCE,
    )
    ledger = LotLedger(CostBasisMethod.FIFO)
    ledger.add(
        lot_id=LotId(bought.flows[0].id),
        asset=ETH,
        transaction_id=bought.id,
        amount=Decimal(2),
        cost=Decimal(4000),
        acquired_at=bought.timestamp,
    )

    report = compute_holdings([bought, sent, received], ledger, as_of=AS_OF)

    (eth,) = report.assets
    assert eth.balance == Decimal("1.99")
    assert eth.cost_basis == Decimal(4000)
    assert eth.value == Decimal("1.99") * Decimal(2000)
    assert eth.unrealized_gain_loss == eth.value - Decimal(4000)


def test_unpriced_and_dust_balances() -> None:
    airdrop = make_transaction(tx_type=TransactionType.AIRDROP, flows=[inflow("MEME", 1000)])
    dust = make_transaction(tx_type=TransactionType.TRANSFER_IN, flows=[inflow(SOL, "0.0000001", "0.00001")])
    later = make_transaction(
        tx_type=TransactionType.TRANSFER_IN,
        flows=[inflow(SOL, 5, 500)],
        timestamp=datetime(2025, 1, 2, tzinfo=timezone.utc),
    )

    report = compute_holdings([airdrop, dust, later], LotLedger(CostBasisMethod.FIFO), as_of=AS_OF)

    (meme,) = report.assets
    assert meme.asset == "MEME"
    assert meme.value is None
    assert meme.unrealized_gain_loss is None
    assert report.total_value == Decimal(0)
