from __future__ import annotations

from decimal import Decimal

import pytest

from tax_rules.loss_carryforward import apply_loss_cap, taxable_terms

CAP = Decimal(3000)


def test_loss_above_cap_carries_forward() -> None:
    result = apply_loss_cap(Decimal(-10000), CAP)

    assert result.deductible_loss == Decimal(3000)
    assert result.carryforward == Decimal(7000)
    assert result.taxable_net == Decimal(-3000)


def test_gain_is_reduced_by_prior_carryforward() -> None:
    result = apply_loss_cap(Decimal(5000), CAP, prior_carryforward=Decimal(2000))

    assert result.deductible_loss == Decimal(0)
    assert result.carryforward == Decimal(0)
    assert result.taxable_net == Decimal(3000)


def test_prior_carryforward_larger_than_gain() -> None:
    result = apply_loss_cap(Decimal(1000), CAP, prior_carryforward=Decimal(5000))

    assert result.deductible_loss == Decimal(3000)
    assert result.carryforward == Decimal(1000)


def test_small_loss_is_fully_deductible() -> None:
    result = apply_loss_cap(Decimal(-500), CAP)

    assert result.deductible_loss == Decimal(500)
    assert result.carryforward == Decimal(0)


@pytest.mark.parametrize("cap, prior", [(Decimal(-1), Decimal(0)), (CAP, Decimal(-1))])
def test_negative_inputs_are_rejected(cap: Decimal, prior: Decimal) -> None:
    with pytest.raises(ValueError):
        apply_loss_cap(Decimal(0), cap, prior_carryforward=prior)


@pytest.mark.parametrize(
    ("short_term", "long_term", "prior", "expected"),
    [
        (10000, 0, 10000, (0, 0)),
        (10000, -20000, 0, (0, 0)),
        (30000, -10000, 0, (20000, 0)),
        (-5000, 8000, 0, (0, 3000)),
        (4000, 6000, 5000, (0, 5000)),
    ],
)
def test_taxable_terms_net_losses_and_carryforward(
    short_term: int, long_term: int, prior: int, expected: tuple[int, int]
) -> None:
    result = taxable_terms(Decimal(short_term), Decimal(long_term), prior_carryforward=Decimal(prior))

    assert result == (Decimal(expected[0]), Decimal(expected[1]))
    capped = apply_loss_cap(Decimal(short_term + long_term), CAP, prior_carryforward=Decimal(prior))
    assert sum(result, Decimal(0)) == max(capped.taxable_net, Decimal(0))
