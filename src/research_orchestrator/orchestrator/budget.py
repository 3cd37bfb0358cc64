"""Monthly provider budget gate with lazy month rollover."""

from __future__ import annotations

import calendar
import logging
from datetime import datetime

from research_orchestrator.orchestrator.events import ActivitySink
from research_orchestrator.orchestrator.models import BudgetLedgerView, QuotaDecision, Severity
from research_orchestrator.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


def add_calendar_month(value: datetime) -> datetime:
    """Same day-of-month next month, clamped to the month's last day."""

    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class BudgetGatekeeper:
    """Decides whether a provider may be called, and books what it cost.

    A provider without a ledger row is not budgeted and always allowed.
    Once spend reaches the monthly limit the ledger is auto-throttled; the
    throttle clears only when a calendar month has passed since
    ``budget_month_start`` (checked lazily on the next read), which also
    resets spend to zero and restarts the month.
    """

    def __init__(self, *, repository: OrchestratorRepository, sink: ActivitySink) -> None:
        self.repository = repository
        self.sink = sink

    def check_quota(self, provider: str) -> QuotaDecision:
        ledger = self.repository.get_ledger(provider=provider)
        if ledger is None:
            return QuotaDecision(allowed=True)
        if not ledger.is_enabled:
            return QuotaDecision(
                allowed=False,
                reason=f"Provider {provider} is disabled",
                action_required=True,
            )
        if ledger.is_paused:
            return QuotaDecision(
                allowed=False,
                reason=f"Provider {provider} budget is paused",
                action_required=True,
            )

        ledger = self._rollover_if_due(ledger)
        if ledger.current_month_spend_usd >= ledger.monthly_limit_usd:
            self._throttle(ledger)
            return QuotaDecision(
                allowed=False,
                reason=_exhausted_reason(ledger),
                action_required=True,
            )
        if ledger.is_auto_throttled:
            return QuotaDecision(
                allowed=False,
                reason=_exhausted_reason(ledger),
                action_required=True,
            )
        return QuotaDecision(allowed=True)

    @staticmethod
    def check_daily_ceiling(daily_cost_usd: float, max_daily_cost_usd: float) -> QuotaDecision:
        if daily_cost_usd >= max_daily_cost_usd:
            return QuotaDecision(
                allowed=False,
                reason=(
                    f"Daily cost limit reached: ${daily_cost_usd:.2f} / ${max_daily_cost_usd:.2f}"
                ),
            )
        return QuotaDecision(allowed=True)

    def record_spend(self, provider: str, cost_usd: float) -> BudgetLedgerView | None:
        """Add spend to the provider ledger; throttle when the limit is crossed."""

        if cost_usd <= 0:
            return self.repository.get_ledger(provider=provider)
        ledger = self.repository.get_ledger(provider=provider)
        if ledger is None:
            logger.debug("No budget ledger for %s; spend of $%.6f not booked", provider, cost_usd)
            return None
        self._rollover_if_due(ledger)
        updated = self.repository.add_spend(provider=provider, cost_usd=cost_usd)
        if updated is None:
            return None
        if updated.current_month_spend_usd >= updated.monthly_limit_usd:
            self._throttle(updated)
            updated = self.repository.get_ledger(provider=provider) or updated
        return updated

    def set_limit(self, provider: str, monthly_limit_usd: float) -> BudgetLedgerView:
        if monthly_limit_usd < 0:
            raise ValueError("Monthly limit must be >= 0.")
        ledger = self.repository.upsert_ledger(
            provider=provider,
            monthly_limit_usd=monthly_limit_usd,
        )
        self.sink.emit(
            "budget_limit_changed",
            f"{provider} monthly limit set to ${monthly_limit_usd:.2f}",
            payload={"provider": provider, "monthly_limit_usd": monthly_limit_usd},
        )
        return ledger

    def pause(self, provider: str) -> BudgetLedgerView:
        ledger = self.repository.upsert_ledger(provider=provider, is_paused=True)
        self.sink.emit("budget_paused", f"{provider} budget paused", payload={"provider": provider})
        return ledger

    def resume(self, provider: str) -> BudgetLedgerView:
        ledger = self.repository.upsert_ledger(provider=provider, is_paused=False)
        self.sink.emit(
            "budget_resumed",
            f"{provider} budget resumed",
            payload={"provider": provider},
        )
        return ledger

    def enable(self, provider: str) -> BudgetLedgerView:
        return self.repository.upsert_ledger(provider=provider, is_enabled=True)

    def disable(self, provider: str) -> BudgetLedgerView:
        return self.repository.upsert_ledger(provider=provider, is_enabled=False)

    def get_ledger(self, provider: str) -> BudgetLedgerView | None:
        ledger = self.repository.get_ledger(provider=provider)
        if ledger is None:
            return None
        return self._rollover_if_due(ledger)

    def list_ledgers(self) -> list[BudgetLedgerView]:
        return [self._rollover_if_due(ledger) for ledger in self.repository.list_ledgers()]

    def _rollover_if_due(self, ledger: BudgetLedgerView) -> BudgetLedgerView:
        now = self.repository.now()
        if now < add_calendar_month(ledger.budget_month_start):
            return ledger
        if not self.repository.reset_budget_month(
            provider=ledger.provider,
            month_start=now,
            expected_month_start=ledger.budget_month_start,
        ):
            return self.repository.get_ledger(provider=ledger.provider) or ledger
        was_throttled = ledger.is_auto_throttled
        logger.info("Budget month rolled over for %s", ledger.provider)
        if was_throttled:
            self.sink.emit(
                "budget_reset",
                f"{ledger.provider} budget throttle cleared by month rollover",
                payload={
                    "provider": ledger.provider,
                    "previous_spend_usd": ledger.current_month_spend_usd,
                },
            )
        return self.repository.get_ledger(provider=ledger.provider) or ledger

    def _throttle(self, ledger: BudgetLedgerView) -> None:
        if not self.repository.mark_throttled(provider=ledger.provider):
            return
        self.sink.emit(
            "budget_throttled",
            f"{ledger.provider} auto-throttled: {_exhausted_reason(ledger)}",
            severity=Severity.WARN,
            payload={
                "provider": ledger.provider,
                "current_month_spend_usd": ledger.current_month_spend_usd,
                "monthly_limit_usd": ledger.monthly_limit_usd,
            },
        )


def _exhausted_reason(ledger: BudgetLedgerView) -> str:
    return (
        f"Monthly budget exhausted: ${ledger.current_month_spend_usd:.2f} / "
        f"${ledger.monthly_limit_usd:.2f}"
    )
