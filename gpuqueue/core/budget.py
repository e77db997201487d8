"""
BudgetGate — admission control on spend.

Spend is re-read from the job store's cost ledger on every call; nothing is
cached. Between the check and the spend other activity can log new costs,
so this is a best-effort gate and not a transactional guarantee.
"""
from __future__ import annotations

import dataclasses

from gpuqueue.domain.errors import BudgetExceededError
from gpuqueue.domain.models import BudgetAlert, BudgetStatus, BudgetWindow, CostEntry
from gpuqueue.ports.storage import JobStorePort


@dataclasses.dataclass
class BudgetGate:
    store: JobStorePort
    daily_limit: float
    monthly_limit: float = float("inf")

    async def can_spend(self, estimated_cost: float = 0.0) -> bool:
        """True while today's spend plus `estimated_cost` stays within the limit."""
        spent = await self.store.get_today_spend()
        return spent + estimated_cost <= self.daily_limit

    async def check_admission(self) -> float:
        """
        Gate a new submission. Returns today's spend.

        Raises BudgetExceededError once today's spend has reached the limit.
        """
        spent = await self.store.get_today_spend()
        if spent >= self.daily_limit:
            raise BudgetExceededError(limit=self.daily_limit, spent=spent)
        return spent

    async def record_cost(self, entry: CostEntry) -> None:
        await self.store.log_cost(entry)

    async def status(self) -> BudgetStatus:
        today = BudgetWindow(
            spent=await self.store.get_today_spend(), limit=self.daily_limit
        )
        month = BudgetWindow(
            spent=await self.store.get_month_spend(), limit=self.monthly_limit
        )
        return BudgetStatus(today=today, month=month, alerts=_alerts(today, month))


def _alerts(today: BudgetWindow, month: BudgetWindow) -> tuple[BudgetAlert, ...]:
    alerts: list[BudgetAlert] = []

    day_pct = today.percent_used
    if day_pct >= 100:
        alerts.append(BudgetAlert(level="critical", message="Daily budget exceeded!"))
    elif day_pct >= 80:
        alerts.append(
            BudgetAlert(level="warning", message=f"Daily budget at {day_pct:.0f}%")
        )
    elif day_pct >= 50:
        alerts.append(BudgetAlert(level="info", message=f"Daily budget at {day_pct:.0f}%"))

    month_pct = month.percent_used
    if month_pct >= 100:
        alerts.append(
            BudgetAlert(level="critical", message="Monthly budget exceeded!")
        )
    elif month_pct >= 80:
        alerts.append(
            BudgetAlert(level="warning", message=f"Monthly budget at {month_pct:.0f}%")
        )

    return tuple(alerts)
