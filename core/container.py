from datetime import datetime
from typing import Callable, Optional

import structlog

from core.config import Settings, get_settings
from core.periods import utc_now
from core.storage import InMemoryStorage
from ledger.service import LedgerService
from payouts.leaderboard import LeaderboardEngine
from payouts.redemption import RedemptionProcessor
from referrals.codes import ReferralCodeService
from referrals.ingest import EventIngestor
from referrals.service import ReferralService
from rules.budget import BudgetEnforcer
from rules.evaluator import PolicyEvaluator
from rules.models import ConfigurationStatus, CreateConfigurationRequest
from rules.store import ConfigurationStore

logger = structlog.get_logger()


class RewardsEngine:
    """Every engine component wired over one shared storage."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        storage: Optional[InMemoryStorage] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.clock = clock
        scope = self.settings.default_scope

        self.ledger = LedgerService(self.storage, clock)
        self.configurations = ConfigurationStore(self.storage, clock)
        self.budget = BudgetEnforcer(
            self.storage,
            self.ledger,
            self.configurations,
            company_share_rate=self.settings.company_share_rate,
            point_value=self.settings.point_value,
        )
        self.codes = ReferralCodeService(self.storage, clock)
        self.referrals = ReferralService(self.storage, self.ledger, self.codes, self.configurations, clock, scope)
        self.evaluator = PolicyEvaluator(
            self.storage, self.ledger, self.configurations, self.budget, self.referrals, clock, scope,
        )
        self.leaderboard = LeaderboardEngine(
            self.storage, self.ledger, self.configurations, self.budget, clock, scope,
        )
        self.redemptions = RedemptionProcessor(self.storage, self.ledger, self.configurations, clock, scope)
        # Shared intake for served traffic; started on the serving event loop.
        self.intake = self.ingestor()

        if self.settings.seed_default_configuration and self.configurations.get_active(scope) is None:
            self.seed_default_configuration()

    def seed_default_configuration(self):
        config_id = self.configurations.create(CreateConfigurationRequest(
            name="Default referral rewards",
            description="Standard referral programme",
            scope=self.settings.default_scope,
            status=ConfigurationStatus.ACTIVE,
            created_by="system",
        ))
        logger.info("engine.seeded_configuration", config_id=str(config_id), scope=self.settings.default_scope)
        return config_id

    def ingestor(self) -> EventIngestor:
        return EventIngestor(
            self.evaluator,
            workers=self.settings.ingest_workers,
            queue_size=self.settings.ingest_queue_size,
        )
