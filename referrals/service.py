from collections import Counter
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID, uuid4

import structlog

from core.errors import InvalidReferralCode, InvalidStateTransition, NotFound, ValidationError
from core.periods import utc_now
from core.storage import InMemoryStorage, driver_key
from ledger.models import EntryKind
from ledger.service import LedgerService
from rules.store import ConfigurationStore
from .codes import ReferralCodeService
from .models import (
    ActivityItem,
    DriverReferralStats,
    Referral,
    ReferralListResponse,
    ReferralStatistics,
    ReferralStatus,
)

logger = structlog.get_logger()

OPEN_STATUSES = (ReferralStatus.PENDING, ReferralStatus.IN_PROGRESS, ReferralStatus.ACTIVATED)


class ReferralService:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerService,
        codes: ReferralCodeService,
        configurations: ConfigurationStore,
        clock: Callable[[], datetime] = utc_now,
        scope: str = "default",
    ):
        self.storage = storage
        self.ledger = ledger
        self.codes = codes
        self.configurations = configurations
        self.clock = clock
        self.scope = scope

    def create_referral(self, referee_id: str, code: str, referrer_id: Optional[str] = None) -> Referral:
        """Link a new driver to the owner of ``code``. Each driver can be referred once."""
        record = self.codes.require_active(code)
        if referrer_id and referrer_id != record.driver_id:
            raise InvalidReferralCode(f"Referral code {code} does not belong to driver {referrer_id}")
        referrer_id = record.driver_id
        if referrer_id == referee_id:
            raise InvalidReferralCode("Cannot use your own referral code")

        with self.storage.locks.hold(driver_key(referrer_id), driver_key(referee_id)):
            if referee_id in self.storage.referral_by_referee:
                raise ValidationError(f"Driver {referee_id} has already been referred")
            upstream = self.get_for_referee(referrer_id)
            if upstream and upstream.referrer_id == referee_id:
                raise ValidationError("Referral relationship already exists in the opposite direction")

            config = self.configurations.get_active(self.scope)
            referral = Referral(
                id=uuid4(),
                referrer_id=referrer_id,
                referee_id=referee_id,
                code=code,
                configuration_id=config.id if config else None,
                created_at=self.clock(),
            )
            self.codes.mark_used(code)
            self.save(referral)

        logger.info(
            "referral.created",
            referral_id=str(referral.id),
            referrer_id=referrer_id,
            referee_id=referee_id,
            code=code,
        )
        return referral

    def save(self, referral: Referral) -> None:
        self.storage.referrals[referral.id] = referral
        self.storage.referral_by_referee[referral.referee_id] = referral.id

    def get(self, referral_id: UUID) -> Referral:
        referral = self.storage.referrals.get(referral_id)
        if not referral:
            raise NotFound(f"Referral {referral_id} not found")
        return referral

    def get_for_referee(self, referee_id: str) -> Optional[Referral]:
        referral_id = self.storage.referral_by_referee.get(referee_id)
        return self.storage.referrals.get(referral_id) if referral_id else None

    def referrals_by(self, referrer_id: str) -> list[Referral]:
        referrals = [r for r in list(self.storage.referrals.values()) if r.referrer_id == referrer_id]
        referrals.sort(key=lambda r: r.created_at, reverse=True)
        return referrals

    def list_referrals(
        self, status: Optional[ReferralStatus] = None, page: int = 1, limit: int = 20,
    ) -> ReferralListResponse:
        referrals = [r for r in list(self.storage.referrals.values()) if status is None or r.status == status]
        referrals.sort(key=lambda r: r.created_at, reverse=True)
        start = (max(page, 1) - 1) * limit
        return ReferralListResponse(
            referrals=referrals[start:start + limit],
            total_count=len(referrals),
            page=page,
            limit=limit,
        )

    def cancel(self, referral_id: UUID, performed_by: Optional[str] = None) -> Referral:
        referral = self.get(referral_id)
        with self.storage.locks.hold(driver_key(referral.referrer_id), driver_key(referral.referee_id)):
            referral = self.get(referral_id)
            if not referral.can_cancel():
                raise InvalidStateTransition("Only pending referrals can be cancelled")
            cancelled = referral.model_copy(update={"status": ReferralStatus.CANCELLED, "cancelled_at": self.clock()})
            self.save(cancelled)
        logger.info("referral.cancelled", referral_id=str(referral_id), performed_by=performed_by)
        return cancelled

    def driver_stats(self, driver_id: str) -> DriverReferralStats:
        referrals = self.referrals_by(driver_id)
        counts = Counter(r.status for r in referrals)
        balance = self.ledger.balance_of(driver_id)
        return DriverReferralStats(
            driver_id=driver_id,
            total_referrals=len(referrals),
            active_referrals=sum(counts[s] for s in OPEN_STATUSES),
            pending_referrals=counts[ReferralStatus.PENDING] + counts[ReferralStatus.IN_PROGRESS],
            activated_referrals=counts[ReferralStatus.ACTIVATED],
            completed_referrals=counts[ReferralStatus.COMPLETED],
            total_points_earned=balance.lifetime_total,
            available_points=balance.available_points,
            referrals_as_referrer=referrals,
            referred_by=self.get_for_referee(driver_id),
        )

    def statistics(self) -> ReferralStatistics:
        referrals = list(self.storage.referrals.values())
        counts = Counter(r.status for r in referrals)
        entries = list(self.storage.ledger_entries.values())

        awarded = sum(e.amount for e in entries if e.kind != EntryKind.REDEMPTION)
        redeemed = -sum(e.amount for e in entries if e.kind == EntryKind.REDEMPTION)
        earners = {e.driver_id for e in entries if e.kind != EntryKind.REDEMPTION and e.amount > 0}
        active_referrers = {r.referrer_id for r in referrals if r.status in OPEN_STATUSES}

        reached = counts[ReferralStatus.ACTIVATED] + counts[ReferralStatus.COMPLETED]
        return ReferralStatistics(
            total_referrals=len(referrals),
            pending_referrals=counts[ReferralStatus.PENDING],
            in_progress_referrals=counts[ReferralStatus.IN_PROGRESS],
            activated_referrals=counts[ReferralStatus.ACTIVATED],
            completed_referrals=counts[ReferralStatus.COMPLETED],
            cancelled_referrals=counts[ReferralStatus.CANCELLED],
            total_points_awarded=awarded,
            total_points_redeemed=redeemed,
            active_referrers=len(active_referrers),
            total_drivers_with_points=len(earners),
            completion_rate=round(reached / len(referrals) * 100, 2) if referrals else 0.0,
        )

    def activity(self, limit: int = 20, driver_id: Optional[str] = None) -> list[ActivityItem]:
        """Recent referral sign-ups and points movements, newest first."""
        items = [
            ActivityItem(
                type="referral",
                driver_id=r.referrer_id,
                description=f"{r.referee_id} joined with code {r.code}",
                referral_id=r.id,
                occurred_at=r.created_at,
            )
            for r in list(self.storage.referrals.values())
            if driver_id is None or driver_id in (r.referrer_id, r.referee_id)
        ]
        items.extend(
            ActivityItem(
                type=e.kind.value,
                driver_id=e.driver_id,
                description=e.description,
                amount=e.amount,
                referral_id=e.referral_id,
                occurred_at=e.created_at,
            )
            for e in list(self.storage.ledger_entries.values())
            if (driver_id is None or e.driver_id == driver_id) and e.amount != 0
        )
        items.sort(key=lambda i: i.occurred_at, reverse=True)
        return items[:limit]
