from datetime import datetime, timezone
from decimal import Decimal
from random import Random

from domain.ledger import TransactionType
from tests.constants import ETH
from tests.helpers.time_utils import TimeGenerator, inflow, make_transaction


def test_time_generator_increases_with_seed() -> None:
    rng = Random(42)
    gen = TimeGenerator(_rng=rng)

    ts1 = gen()
    ts2 = gen()
    ts3 = gen()

    assert ts1 < ts2 < ts3
    gaps = [(ts2 - ts1).total_seconds(), (ts3 - ts2).total_seconds()]
    for gap in gaps:
        assert 5 <= gap <= 60

    # Deterministic given the same seed
    gen_again = TimeGenerator(_rng=Random(42))
    ts1_b, ts2_b, ts3_b = gen_again(), gen_again(), gen_again()
    gaps_b = [(ts2_b - ts1_b).total_seconds(), (ts3_b - ts2_b).total_seconds()]
    assert gaps == gaps_b


def test_make_transaction_uses_generator_when_timestamp_missing() -> None:
    gen = TimeGenerator(_rng=Random(1))

    tx1 = make_transaction(tx_type=TransactionType.REWARD, flows=[inflow(ETH, "1", 10)], ts_gen=gen)
    tx2 = make_transaction(tx_type=TransactionType.REWARD, flows=[inflow(ETH, "1", 10)], ts_gen=gen)

    assert tx1.timestamp < tx2.timestamp
    assert tx1.timestamp.tzinfo == timezone.utc


def test_make_transaction_respects_provided_timestamp() -> None:
    explicit_ts = datetime(2024, 2, 1, tzinfo=timezone.utc)

    tx = make_transaction(tx_type=TransactionType.REWARD, flows=[inflow(ETH, "1", 10)], timestamp=explicit_ts)

    assert tx.timestamp == explicit_ts


def test_make_transaction_derives_total_value_from_inbound_flows() -> None:
    tx = make_transaction(tx_type=TransactionType.BUY, flows=[inflow(ETH, "1", 2000), inflow(ETH, "0.5", 1000)])

    assert tx.total_value == Decimal(3000)


def test_default_generator_is_reset_between_tests() -> None:
    first = make_transaction(tx_type=TransactionType.REWARD, flows=[inflow(ETH, "1", 10)])
    second = make_transaction(tx_type=TransactionType.REWARD, flows=[inflow(ETH, "1", 10)])

    assert first.timestamp < second.timestamp
    assert first.timestamp.date() == datetime(2024, 1, 1).date()


def test_generators_do_not_share_random_state() -> None:
    used = TimeGenerator()
    for _ in range(3):
        used()

    assert TimeGenerator()() == TimeGenerator()()
