from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel


class LossCarryforward(BaseModel):
    net_gain_loss: Decimal
    prior_carryforward: Decimal
    cap: Decimal
    deductible_loss: Decimal
    carryforward: Decimal
    taxable_net: Decimal


def apply_loss_cap(
    net_gain_loss: Decimal, cap: Decimal, *, prior_carryforward: Decimal = Decimal(0)
) -> LossCarryforward:
    """Cap deductible capital losses for the year.

    Losses carried in from earlier years offset this year's result first. A
    net loss beyond ``cap`` is reported as carryforward, never discarded.
    """
    if cap < 0:
        raise ValueError("cap must be >= 0")
    if prior_carryforward < 0:
        raise ValueError("prior_carryforward must be >= 0")

    combined = net_gain_loss - prior_carryforward
    if combined >= 0:
        deductible = Decimal(0)
        carryforward = Decimal(0)
        taxable_net = combined
    else:
        loss = -combined
        deductible = min(loss, cap)
        carryforward = loss - deductible
        taxable_net = -deductible

    return LossCarryforward(
        net_gain_loss=net_gain_loss,
        prior_carryforward=prior_carryforward,
        cap=cap,
        deductible_loss=deductible,
        carryforward=carryforward,
        taxable_net=taxable_net,
    )


def taxable_terms(
    net_short_term: Decimal, net_long_term: Decimal, *, prior_carryforward: Decimal = Decimal(0)
) -> tuple[Decimal, Decimal]:
    """Split the taxable part of a year's result into short and long term.

    A net loss in either term offsets gains in the other, then the prior
    carryforward is used up against short-term gains before long-term ones.
    The two parts sum to ``apply_loss_cap(...).taxable_net`` when that is
    positive, and are both zero otherwise.
    """
    short_term = max(net_short_term, Decimal(0))
    long_term = max(net_long_term, Decimal(0))
    losses = max(-net_short_term, Decimal(0)) + max(-net_long_term, Decimal(0)) + prior_carryforward

    absorbed = min(losses, short_term)
    short_term -= absorbed
    losses -= absorbed
    long_term -= min(losses, long_term)
    return short_term, long_term
