"""Monthly net-worth series rebuilt from current balances by reverse replay.

Transactions carry no historical balance snapshot, so the series starts from
the sum of today's account balances and walks the ledger backwards, undoing
each transaction's signed effect. The result is only as good as the balances:
if a cached ``Account.balance_cents`` has drifted from its transactions the
whole series is shifted by that drift.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, Optional

from ledger import TransactionSnapshot, signed_effect
from periods import month_key, trailing_months


logger = logging.getLogger(__name__)


class NetWorthReconstructor:
    def __init__(
        self,
        balances: Iterable[int],
        transactions: Iterable[TransactionSnapshot],
    ) -> None:
        self.balances = [int(b) for b in balances]
        self.transactions = list(transactions)

    def series(self, months: int, today: date) -> list[dict[str, object]]:
        if months < 1:
            raise ValueError("months must be at least 1")

        current_month = month_key(today)
        month_keys = [month_key(m) for m in trailing_months(today, months)]
        current_net_worth = sum(self.balances)

        if not self.balances:
            return [{"month": m, "net_worth_cents": 0} for m in month_keys]

        values: dict[str, Optional[int]] = {m: None for m in month_keys}
        values[current_month] = current_net_worth
        if months == 1:
            return [{"month": current_month, "net_worth_cents": current_net_worth}]

        # Same-day ties are broken by id so the walk is deterministic.
        ordered = sorted(
            (t for t in self.transactions if t.account_id is not None),
            key=lambda t: (t.date, t.id or 0),
            reverse=True,
        )

        running = current_net_worth
        last_month = current_month
        for txn in ordered:
            txn_month = month_key(txn.date)
            if txn_month != last_month:
                for m, value in values.items():
                    if value is None and txn_month < m <= last_month:
                        values[m] = running
                last_month = txn_month

            running -= signed_effect(txn)

            # The current month stays pinned to today's balances.
            if txn_month in values and txn_month != current_month:
                values[txn_month] = running

        for m, value in values.items():
            if value is None:
                values[m] = running

        logger.debug(
            f"net_worth_series: months={months} current={current_net_worth} "
            f"transactions={len(ordered)} oldest={running}"
        )
        return [
            {"month": m, "net_worth_cents": values[m]} for m in sorted(values.keys())
        ]
