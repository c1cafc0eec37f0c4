from typing import Optional
from uuid import UUID

import structlog

from core.errors import NotFound
from core.periods import period_bounds
from core.storage import InMemoryStorage, budget_key
from ledger.models import AWARD_KINDS
from ledger.service import LedgerService
from .models import ProfitabilityAnalysis, RewardConfiguration
from .store import ConfigurationStore

logger = structlog.get_logger()


class BudgetEnforcer:
    """Monthly spend counters per configuration, rebuilt from ledger sums on demand.

    Callers that need reservation and ledger append to commit together hold
    ``budget_key(config_id, period)`` around both and ``release`` on failure.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerService,
        configurations: ConfigurationStore,
        company_share_rate: float = 0.40,
        point_value: float = 1.0,
    ):
        self.storage = storage
        self.ledger = ledger
        self.configurations = configurations
        self.company_share_rate = company_share_rate
        self.point_value = point_value

    def spent_this_period(self, configuration_id: UUID, period: str) -> int:
        with self.storage.locks.hold(budget_key(configuration_id, period)):
            spent = self.storage.budget_spend.get((configuration_id, period))
            if spent is None:
                spent = self.rebuild(configuration_id, period)
            return spent

    def rebuild(self, configuration_id: UUID, period: str) -> int:
        with self.storage.locks.hold(budget_key(configuration_id, period)):
            spent = self._ledger_spend(configuration_id, period)
            self.storage.budget_spend[(configuration_id, period)] = spent
            return spent

    def _ledger_spend(self, configuration_id: UUID, period: str) -> int:
        start, end = period_bounds(period)
        entries = self.ledger.entries_between(start, end, kinds=AWARD_KINDS, configuration_id=configuration_id)
        return sum(e.amount for e in entries)

    def reserve(self, configuration_id: UUID, period: str, amount: int) -> bool:
        config = self.configurations.get(configuration_id)
        with self.storage.locks.hold(budget_key(configuration_id, period)):
            spent = self.spent_this_period(configuration_id, period)
            limit = config.profitability_controls.monthly_referral_budget
            if spent + amount > limit:
                logger.warning(
                    "budget.denied",
                    configuration_id=str(configuration_id),
                    period=period,
                    spent=spent,
                    requested=amount,
                    limit=limit,
                )
                return False
            self.storage.budget_spend[(configuration_id, period)] = spent + amount
            return True

    def release(self, configuration_id: UUID, period: str, amount: int) -> None:
        with self.storage.locks.hold(budget_key(configuration_id, period)):
            spent = self.spent_this_period(configuration_id, period)
            self.storage.budget_spend[(configuration_id, period)] = max(spent - amount, 0)
        logger.info("budget.released", configuration_id=str(configuration_id), period=period, amount=amount)

    def profitability(
        self,
        period: str,
        configuration_id: Optional[UUID] = None,
        total_revenue: float = 0.0,
        scope: str = "default",
    ) -> ProfitabilityAnalysis:
        config = self._resolve(configuration_id, scope)
        controls = config.profitability_controls

        points = self._ledger_spend(config.id, period)
        referral_costs = points * self.point_value
        company_share = total_revenue * self.company_share_rate
        monthly_budget = controls.monthly_referral_budget
        share_cap = company_share * controls.max_referral_budget_percentage / 100

        max_budget = monthly_budget * self.point_value
        if total_revenue > 0:
            max_budget = min(max_budget, share_cap)

        if monthly_budget:
            budget_usage = round(points / monthly_budget * 100, 2)
        else:
            budget_usage = 100.0 if points else 0.0

        return ProfitabilityAnalysis(
            configuration_id=config.id,
            period=period,
            total_revenue=total_revenue,
            company_share=round(company_share, 2),
            referral_costs=round(referral_costs, 2),
            net_profit=round(company_share - referral_costs, 2),
            points_awarded=points,
            budget_usage=budget_usage,
            monthly_budget=monthly_budget,
            max_budget=round(max_budget, 2),
            per_referee_limit=controls.max_points_per_referee,
            within_budget_percentage=total_revenue <= 0 or referral_costs <= share_cap,
        )

    def _resolve(self, configuration_id: Optional[UUID], scope: str) -> RewardConfiguration:
        if configuration_id:
            return self.configurations.get(configuration_id)
        config = self.configurations.get_active(scope)
        if not config:
            raise NotFound(f"No active configuration for scope {scope}")
        return config
