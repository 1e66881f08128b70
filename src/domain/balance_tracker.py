from __future__ import annotations

from collections import defaultdict
from decimal import Decimal


class BalanceError(Exception):
    def __init__(
        self,
        *,
        asset: str,
        account: str,
        attempted_quantity: Decimal,
        available_balance: Decimal,
    ) -> None:
        self.asset = asset
        self.account = account
        self.attempted_quantity = attempted_quantity
        self.available_balance = available_balance
        message = (
            f"Insufficient balance for asset={asset} account={account} "
            f"attempted={attempted_quantity} available={available_balance}"
        )
        super().__init__(message)


class BalanceTracker:
    """Running per-account, per-asset quantities.

    Imported history is often truncated, so by default balances may go
    negative. ``strict=True`` rejects movements that overdraw an account.
    """

    def __init__(self, *, strict: bool = False) -> None:
        self._strict = strict
        self._balances: dict[str, dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: Decimal(0)))

    def apply_movement(self, *, asset: str, account: str, quantity: Decimal) -> None:
        current_balance = self._balances[account][asset]
        new_balance = current_balance + quantity
        if self._strict and new_balance < 0:
            raise BalanceError(
                asset=asset,
                account=account,
                attempted_quantity=quantity,
                available_balance=current_balance,
            )
        self._balances[account][asset] = new_balance

    def get_balance(self, *, asset: str, account: str) -> Decimal:
        return self._balances[account][asset]

    def accounts(self) -> list[str]:
        return sorted(self._balances)

    def balances_for(self, account: str) -> dict[str, Decimal]:
        return dict(self._balances[account])

    def asset_totals(self, accounts: set[str] | None = None) -> dict[str, Decimal]:
        totals: dict[str, Decimal] = defaultdict(lambda: Decimal(0))
        for account, balances in self._balances.items():
            if accounts is not None and account not in accounts:
                continue
            for asset, balance in balances.items():
                totals[asset] += balance
        return dict(totals)
