from datetime import datetime
from typing import Callable, Optional
from uuid import UUID, uuid4

import structlog

from core.errors import (
    BelowMinimum,
    FreeDeliveriesDisabled,
    InsufficientBalance,
    MonthlyLimitReached,
    NotFound,
    RewardsError,
    ValidationError,
)
from core.periods import period_key, utc_now
from core.storage import InMemoryStorage, driver_key
from ledger.models import EntryKind, NewLedgerEntry
from ledger.service import LedgerService
from rules.models import RewardConfiguration
from rules.store import ConfigurationStore
from .models import RedemptionMethod, RedemptionRequest, RedemptionStatus

logger = structlog.get_logger()

REJECTIONS = (ValidationError, BelowMinimum, InsufficientBalance, MonthlyLimitReached)


class RedemptionProcessor:
    """Validates and records cash-out and free-delivery requests against the ledger.

    A rejected request is stored with its reason code and never touches the
    ledger. A completed one is stored together with a single ``redemption``
    entry debiting the points plus any cash-out fee.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerService,
        configurations: ConfigurationStore,
        clock: Callable[[], datetime] = utc_now,
        scope: str = "default",
    ):
        self.storage = storage
        self.ledger = ledger
        self.configurations = configurations
        self.clock = clock
        self.scope = scope

    def request_redemption(
        self,
        driver_id: str,
        amount: int,
        method: RedemptionMethod = RedemptionMethod.CASHOUT,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RedemptionRequest:
        config = self.configurations.get_active(self.scope)
        if not config:
            raise NotFound(f"No active configuration for scope {self.scope}")

        with self.storage.locks.hold(driver_key(driver_id)):
            if idempotency_key:
                existing_id = self.storage.redemption_keys.get(idempotency_key)
                if existing_id:
                    logger.info("redemption.duplicate_request", driver_id=driver_id, idempotency_key=idempotency_key)
                    return self.storage.redemptions[existing_id]

            now = self.clock()
            request = RedemptionRequest(
                id=uuid4(),
                driver_id=driver_id,
                amount=amount,
                method=method,
                description=description,
                idempotency_key=idempotency_key,
                configuration_id=config.id,
                requested_at=now,
            )
            try:
                fee, points, free_deliveries = self._validate(request, config, period_key(now))
            except REJECTIONS as e:
                return self._reject(request, e, now)

            entry_id = self.ledger.append(NewLedgerEntry(
                idempotency_key=f"redemption:{request.id}",
                driver_id=driver_id,
                amount=-(points + fee),
                kind=EntryKind.REDEMPTION,
                description=description or self._describe(method, points, fee, free_deliveries),
                configuration_id=config.id,
                metadata={
                    "redemption_id": str(request.id),
                    "method": method.value,
                    "fee": fee,
                    "free_deliveries": free_deliveries,
                },
            ))
            completed = request.model_copy(update={
                "status": RedemptionStatus.COMPLETED,
                "fee": fee,
                "points_debited": points + fee,
                "free_deliveries": free_deliveries,
                "ledger_entry_id": entry_id,
                "processed_at": now,
            })
            self._store(completed)

        logger.info(
            "redemption.completed",
            redemption_id=str(completed.id),
            driver_id=driver_id,
            method=method.value,
            points=points,
            fee=fee,
        )
        return completed

    def _validate(self, request: RedemptionRequest, config: RewardConfiguration, period: str) -> tuple[int, int, int]:
        settings = config.redemption_settings
        amount = request.amount
        if amount <= 0:
            raise ValidationError("Valid amount is required")
        if amount < settings.minimum_points_for_cashout:
            raise BelowMinimum(f"Minimum redemption is {settings.minimum_points_for_cashout} points")

        fee = settings.cashout_fee if request.method == RedemptionMethod.CASHOUT else 0
        available = self.ledger.balance_of(request.driver_id).available_points
        if amount + fee > available:
            raise InsufficientBalance(f"Requested {amount} points plus {fee} fee, {available} available")

        completed = self.completed_in_period(request.driver_id, period)
        if completed >= settings.max_cashouts_per_month:
            raise MonthlyLimitReached(f"{completed} of {settings.max_cashouts_per_month} redemptions used in {period}")

        if request.method == RedemptionMethod.FREE_DELIVERY:
            if not settings.allow_free_deliveries:
                raise FreeDeliveriesDisabled("Free delivery redemptions are disabled")
            free_deliveries = amount // settings.points_per_free_delivery
            if free_deliveries < 1:
                raise ValidationError(f"A free delivery costs {settings.points_per_free_delivery} points")
            return fee, free_deliveries * settings.points_per_free_delivery, free_deliveries

        return fee, amount, 0

    def _reject(self, request: RedemptionRequest, error: RewardsError, now: datetime) -> RedemptionRequest:
        rejected = request.model_copy(update={
            "status": RedemptionStatus.REJECTED,
            "reason": error.code,
            "detail": error.message,
            "processed_at": now,
        })
        self._store(rejected)
        logger.warning(
            "redemption.rejected",
            redemption_id=str(rejected.id),
            driver_id=rejected.driver_id,
            amount=rejected.amount,
            reason=error.code,
        )
        return rejected

    def _store(self, request: RedemptionRequest) -> None:
        self.storage.redemptions[request.id] = request
        if request.idempotency_key:
            self.storage.redemption_keys[request.idempotency_key] = request.id

    @staticmethod
    def _describe(method: RedemptionMethod, points: int, fee: int, free_deliveries: int) -> str:
        if method == RedemptionMethod.FREE_DELIVERY:
            return f"Redeemed {points} points for {free_deliveries} free deliveries"
        if fee:
            return f"Cash-out of {points} points ({fee} points fee)"
        return f"Cash-out of {points} points"

    def completed_in_period(self, driver_id: str, period: str) -> int:
        return sum(
            1 for r in list(self.storage.redemptions.values())
            if r.driver_id == driver_id and r.is_completed() and period_key(r.processed_at) == period
        )

    def get(self, redemption_id: UUID) -> RedemptionRequest:
        request = self.storage.redemptions.get(redemption_id)
        if not request:
            raise NotFound(f"Redemption {redemption_id} not found")
        return request

    def list_requests(self, driver_id: str, status: Optional[RedemptionStatus] = None) -> list[RedemptionRequest]:
        requests = [
            r for r in list(self.storage.redemptions.values())
            if r.driver_id == driver_id and (status is None or r.status == status)
        ]
        requests.sort(key=lambda r: r.requested_at, reverse=True)
        return requests
