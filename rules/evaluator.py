"""
Policy evaluation for referral lifecycle events.

Every event is applied under the locks of the drivers it touches and of the
budget period it spends from, so the referral progress update, the budget
reservations and the ledger entries it produces commit together.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Type, Union
from uuid import UUID

import structlog

from core.errors import BonusExpired, BudgetExceeded, CapExceeded, DuplicateEvent, RewardsError, ValidationError
from core.periods import period_key, utc_now
from core.storage import InMemoryStorage, budget_key, driver_key
from ledger.models import REFERRAL_KINDS, EntryKind, NewLedgerEntry
from ledger.service import LedgerService
from referrals.models import DeliveryCompleted, Referral, ReferralRedeemed, ReferralStatus
from referrals.service import ReferralService
from .budget import BudgetEnforcer
from .models import EvaluationOutcome, EvaluationStatus, RewardConfiguration, SkippedAward
from .store import ConfigurationStore

logger = structlog.get_logger()

Event = Union[ReferralRedeemed, DeliveryCompleted]


@dataclass
class AwardPlan:
    configuration: RewardConfiguration
    period: str
    entries: list[NewLedgerEntry] = field(default_factory=list)
    skipped: list[SkippedAward] = field(default_factory=list)
    reserved: int = 0
    referral_points: int = 0


class PolicyEvaluator:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerService,
        configurations: ConfigurationStore,
        budget: BudgetEnforcer,
        referrals: ReferralService,
        clock: Callable[[], datetime] = utc_now,
        scope: str = "default",
    ):
        self.storage = storage
        self.ledger = ledger
        self.configurations = configurations
        self.budget = budget
        self.referrals = referrals
        self.clock = clock
        self.scope = scope

    def handle(self, event: Event) -> EvaluationOutcome:
        if isinstance(event, ReferralRedeemed):
            return self.referral_redeemed(event)
        if isinstance(event, DeliveryCompleted):
            return self.delivery_completed(event)
        raise ValidationError(f"Unsupported event type {type(event).__name__}")

    def referral_redeemed(self, event: ReferralRedeemed) -> EvaluationOutcome:
        key = event.idempotency_key
        lock_keys = [driver_key(event.referee_id)]
        owner = self.storage.referral_codes.get(event.code)
        if owner:
            lock_keys.append(driver_key(owner.driver_id))

        with self.storage.locks.hold(*lock_keys):
            processed = self.storage.processed_events.get(key)
            if processed:
                logger.info("evaluator.duplicate_event", event_key=key)
                outcome = self._outcome(key, EvaluationStatus.DUPLICATE, self.referrals.get(UUID(processed)))
                outcome.reason = DuplicateEvent.code
                return outcome
            referral = self.referrals.create_referral(event.referee_id, event.code, event.referrer_id)
            self.storage.processed_events[key] = str(referral.id)

        return self._outcome(key, EvaluationStatus.APPLIED, referral)

    def delivery_completed(self, event: DeliveryCompleted) -> EvaluationOutcome:
        key = event.idempotency_key
        referral = self.referrals.get_for_referee(event.referee_id)
        if referral is None:
            logger.info("evaluator.unknown_referee", referee_id=event.referee_id, delivery_id=event.delivery_id)
            return EvaluationOutcome(event_key=key, status=EvaluationStatus.UNKNOWN_REFEREE)

        config = self.configurations.get_active(self.scope)
        now = self.clock()
        period = period_key(now)
        lock_keys = [driver_key(referral.referrer_id), driver_key(referral.referee_id), f"referral:{referral.id}"]
        if config:
            lock_keys.append(budget_key(config.id, period))

        with self.storage.locks.hold(*lock_keys):
            if key in self.storage.processed_events:
                logger.info("evaluator.duplicate_event", event_key=key)
                outcome = self._outcome(key, EvaluationStatus.DUPLICATE, self.referrals.get(referral.id))
                outcome.reason = DuplicateEvent.code
                return outcome

            referral = self.referrals.get(referral.id)
            if referral.status == ReferralStatus.CANCELLED:
                self.storage.processed_events[key] = str(referral.id)
                logger.info("evaluator.cancelled_referral", referral_id=str(referral.id), event_key=key)
                return self._outcome(key, EvaluationStatus.IGNORED, referral)

            draft = referral.model_copy(deep=True)
            draft.progress.deliveries_completed += 1
            if draft.status == ReferralStatus.PENDING:
                draft.status = ReferralStatus.IN_PROGRESS

            plan = None
            if config is None:
                logger.warning("evaluator.no_active_configuration", scope=self.scope, event_key=key)
            else:
                plan = AwardPlan(configuration=config, period=period)
                self._evaluate(plan, referral, draft, event.delivery_id, now)

            ids = self._commit(draft, plan)
            self.storage.processed_events[key] = str(draft.id)

        outcome = self._outcome(key, EvaluationStatus.APPLIED, draft)
        outcome.entries = [self.ledger.get_entry(i) for i in ids]
        outcome.skipped = plan.skipped if plan else []
        return outcome

    def _evaluate(self, plan: AwardPlan, referral: Referral, draft: Referral, delivery_id: str, now: datetime) -> None:
        config = plan.configuration
        count = draft.progress.deliveries_completed
        was_activated = referral.is_activated()

        if not was_activated and count >= config.activation_bonus.required_deliveries:
            draft.status = ReferralStatus.ACTIVATED
            draft.activated_at = now
            logger.info("evaluator.referral_activated", referral_id=str(draft.id), deliveries=count)
            if config.activation_bonus.enabled:
                self._plan_activation(plan, draft, now)

        if was_activated and config.per_delivery_reward.enabled:
            self._plan_per_delivery(plan, draft, delivery_id, now)

        milestone = config.milestone_for(count)
        if milestone:
            entry = self._entry(
                plan, draft, f"milestone:{draft.id}:{milestone.delivery_count}", draft.referrer_id,
                milestone.points, EntryKind.MILESTONE,
                milestone.description or f"{milestone.delivery_count} deliveries milestone",
                delivery_count=milestone.delivery_count,
            )
            self._gate(plan, draft, EntryKind.MILESTONE, [entry], f"adjustment:milestone:{draft.id}:{count}")

    def _plan_activation(self, plan: AwardPlan, draft: Referral, now: datetime) -> None:
        bonus = plan.configuration.activation_bonus
        entries = [
            self._entry(
                plan, draft, f"activation:{draft.id}:referrer", draft.referrer_id, bonus.referrer_points,
                EntryKind.ACTIVATION, f"Activation bonus for referring {draft.referee_id}",
            ),
            self._entry(
                plan, draft, f"activation:{draft.id}:referee", draft.referee_id, bonus.referee_points,
                EntryKind.ACTIVATION, f"Activation bonus for joining with code {draft.code}", role="referee",
            ),
        ]
        audit_key = f"adjustment:activation:{draft.id}"

        expiry_days = plan.configuration.time_limits.activation_bonus_expiry_days
        if expiry_days and now - draft.created_at > timedelta(days=expiry_days):
            self._withhold(
                plan, draft, EntryKind.ACTIVATION, entries, BonusExpired,
                f"activation came more than {expiry_days} days after the referral", audit_key,
            )
            return
        self._gate(plan, draft, EntryKind.ACTIVATION, entries, audit_key)

    def _plan_per_delivery(self, plan: AwardPlan, draft: Referral, delivery_id: str, now: datetime) -> None:
        reward = plan.configuration.per_delivery_reward
        paid = len(self.ledger.entries_for_referral(draft.id, EntryKind.PER_DELIVERY))
        entry = self._entry(
            plan, draft, f"per_delivery:{draft.id}:{delivery_id}", draft.referrer_id, reward.referrer_points,
            EntryKind.PER_DELIVERY, f"Delivery {delivery_id} completed by {draft.referee_id}",
            delivery_id=delivery_id,
        )
        audit_key = f"adjustment:per_delivery:{draft.id}:{delivery_id}"

        if paid >= reward.max_deliveries_per_referee:
            self._withhold(
                plan, draft, EntryKind.PER_DELIVERY, [entry], CapExceeded,
                f"per-delivery allowance of {reward.max_deliveries_per_referee} deliveries used", audit_key,
            )
            self._complete(draft, now)
            return
        if self._gate(plan, draft, EntryKind.PER_DELIVERY, [entry], audit_key):
            paid += 1
        if paid >= reward.max_deliveries_per_referee:
            self._complete(draft, now)

    def _gate(
        self, plan: AwardPlan, draft: Referral, kind: EntryKind, entries: list[NewLedgerEntry], audit_key: str,
    ) -> bool:
        """Admit an award group whole, or record why it was withheld."""
        entries = [e for e in entries if e.amount > 0 and self.ledger.find(e.idempotency_key) is None]
        if not entries:
            return False
        amount = sum(e.amount for e in entries)
        config = plan.configuration

        cap = config.profitability_controls.max_points_per_referee
        earned = self._referral_points(draft.id) + plan.referral_points
        if earned + amount > cap:
            self._withhold(
                plan, draft, kind, entries, CapExceeded,
                f"{earned} of {cap} points already attributed to referee {draft.referee_id}", audit_key,
            )
            return False

        if not self.budget.reserve(config.id, plan.period, amount):
            plan.skipped.append(SkippedAward(
                kind=kind,
                driver_ids=[e.driver_id for e in entries],
                amount=amount,
                reason=BudgetExceeded.code,
                detail=f"monthly budget of {config.profitability_controls.monthly_referral_budget} for {plan.period}",
            ))
            logger.warning("evaluator.budget_exceeded", referral_id=str(draft.id), kind=kind.value, amount=amount)
            return False

        plan.reserved += amount
        plan.referral_points += amount
        plan.entries.extend(entries)
        return True

    def _withhold(
        self,
        plan: AwardPlan,
        draft: Referral,
        kind: EntryKind,
        entries: list[NewLedgerEntry],
        error: Type[RewardsError],
        detail: str,
        audit_key: str,
    ) -> None:
        amount = sum(e.amount for e in entries)
        plan.skipped.append(SkippedAward(
            kind=kind, driver_ids=[e.driver_id for e in entries], amount=amount, reason=error.code, detail=detail,
        ))
        plan.entries.append(self._entry(
            plan, draft, audit_key, entries[0].driver_id, 0, EntryKind.ADJUSTMENT,
            f"{kind.value} award of {amount} points withheld: {detail}",
            reason=error.code, withheld_kind=kind.value, withheld_amount=amount,
        ))
        logger.info(
            "evaluator.award_withheld", referral_id=str(draft.id), kind=kind.value, amount=amount, reason=error.code,
        )

    def _commit(self, draft: Referral, plan: Optional[AwardPlan]) -> list[UUID]:
        ids: list[UUID] = []
        if plan and plan.entries:
            try:
                ids = self.ledger.append_many(plan.entries)
            except Exception:
                if plan.reserved:
                    self.budget.release(plan.configuration.id, plan.period, plan.reserved)
                raise
        self.referrals.save(draft)
        return ids

    def _referral_points(self, referral_id: UUID) -> int:
        return sum(
            e.amount for e in self.ledger.entries_for_referral(referral_id) if e.kind in REFERRAL_KINDS
        )

    @staticmethod
    def _complete(draft: Referral, now: datetime) -> None:
        if draft.status == ReferralStatus.ACTIVATED:
            draft.status = ReferralStatus.COMPLETED
            draft.completed_at = now

    @staticmethod
    def _entry(
        plan: AwardPlan,
        draft: Referral,
        key: str,
        driver_id: str,
        amount: int,
        kind: EntryKind,
        description: str,
        role: str = "referrer",
        **metadata,
    ) -> NewLedgerEntry:
        return NewLedgerEntry(
            idempotency_key=key,
            driver_id=driver_id,
            amount=amount,
            kind=kind,
            description=description,
            referral_id=draft.id,
            configuration_id=plan.configuration.id,
            metadata={"role": role, "referee_id": draft.referee_id, **metadata},
        )

    @staticmethod
    def _outcome(key: str, status: EvaluationStatus, referral: Referral) -> EvaluationOutcome:
        return EvaluationOutcome(
            event_key=key,
            status=status,
            referral_id=referral.id,
            referral_status=referral.status.value,
            deliveries_completed=referral.progress.deliveries_completed,
        )
