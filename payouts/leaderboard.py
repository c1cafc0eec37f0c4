"""
Monthly referrer leaderboard.

Referrers are ranked by the referral points (activation, per-delivery and
milestone) they earned inside the period. Equal totals are ordered by who
reached that total first, then by driver id, so a re-run always yields the
same ranking. Closing a period pays each rewarded rank at most once through
the ``leaderboard:<period>:rank:<n>`` idempotency key.
"""

from collections import Counter
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

import structlog

from core.errors import NotFound, ValidationError
from core.periods import is_closed, period_bounds, period_key, utc_now
from core.storage import InMemoryStorage, budget_key, driver_key
from ledger.models import REFERRAL_KINDS, EntryKind, LedgerEntry, NewLedgerEntry
from ledger.service import LedgerService
from rules.budget import BudgetEnforcer
from rules.models import RewardConfiguration
from rules.store import ConfigurationStore
from .models import LeaderboardEntry, LeaderboardResponse

logger = structlog.get_logger()


def award_key(period: str, rank: int) -> str:
    return f"leaderboard:{period}:rank:{rank}"


class LeaderboardEngine:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerService,
        configurations: ConfigurationStore,
        budget: BudgetEnforcer,
        clock: Callable[[], datetime] = utc_now,
        scope: str = "default",
    ):
        self.storage = storage
        self.ledger = ledger
        self.configurations = configurations
        self.budget = budget
        self.clock = clock
        self.scope = scope

    def run(self, period: str, configuration_id: Optional[UUID] = None) -> LeaderboardResponse:
        """Close ``period``: persist its ranking and pay rank rewards. Safe to repeat."""
        if not is_closed(period, self.clock()):
            raise ValidationError(f"Period {period} is still open")
        config = self._resolve(configuration_id)

        with self.storage.locks.hold(f"leaderboard:{period}"):
            snapshot = self.storage.leaderboards.get(period)
            ranking = snapshot if snapshot is not None else self._rank(period)
            awards = self._pay(period, ranking, config)

            if snapshot is None:
                snapshot = [
                    row.model_copy(update={
                        "monthly_reward": awards[row.rank].amount if row.rank in awards else 0,
                        "configuration_id": config.id,
                    })
                    for row in ranking
                ]
                self.storage.leaderboards[period] = snapshot
                logger.info("leaderboard.closed", period=period, drivers=len(snapshot), awards=len(awards))
            else:
                logger.info("leaderboard.rerun", period=period)

        return LeaderboardResponse(period=period, closed=True, entries=snapshot, awards=list(awards.values()))

    def snapshot(self, period: str) -> LeaderboardResponse:
        entries = self.storage.leaderboards.get(period)
        if entries is None:
            raise NotFound(f"No leaderboard has been recorded for {period}")
        awards = [e for e in (self.ledger.find(award_key(period, row.rank)) for row in entries) if e]
        return LeaderboardResponse(period=period, closed=True, entries=entries, awards=awards)

    def standings(self, period: Optional[str] = None, limit: Optional[int] = None) -> LeaderboardResponse:
        """Live ranking; closed periods are served from their snapshot."""
        period = period or period_key(self.clock())
        if period in self.storage.leaderboards:
            response = self.snapshot(period)
        else:
            config = self.configurations.get_active(self.scope)
            entries = [
                row.model_copy(update={"monthly_reward": self._prospective(config, row.rank)})
                for row in self._rank(period)
            ]
            response = LeaderboardResponse(period=period, closed=False, entries=entries)
        if limit is not None:
            response.entries = response.entries[:limit]
        return response

    def _rank(self, period: str) -> list[LeaderboardEntry]:
        start, end = period_bounds(period)
        entries = self.ledger.entries_between(start, end, kinds=REFERRAL_KINDS)
        entries.sort(key=lambda e: e.created_at)

        totals: Counter = Counter()
        reached_at: dict[str, datetime] = {}
        for entry in entries:
            if entry.metadata.get("role", "referrer") != "referrer" or entry.amount <= 0:
                continue
            totals[entry.driver_id] += entry.amount
            reached_at[entry.driver_id] = entry.created_at

        referrals = Counter(
            r.referrer_id for r in list(self.storage.referrals.values()) if start <= r.created_at < end
        )
        ordered = sorted(totals, key=lambda driver: (-totals[driver], reached_at[driver], driver))
        return [
            LeaderboardEntry(
                period=period,
                driver_id=driver,
                rank=position,
                total_points=totals[driver],
                total_referrals=referrals[driver],
                reached_total_at=reached_at[driver],
            )
            for position, driver in enumerate(ordered, start=1)
        ]

    def _pay(self, period: str, ranking: list[LeaderboardEntry], config: RewardConfiguration) -> dict[int, LedgerEntry]:
        awards: dict[int, LedgerEntry] = {}
        for row in ranking:
            reward = config.reward_for_rank(row.rank)
            if not reward or reward.points <= 0:
                continue
            key = award_key(period, row.rank)
            existing = self.ledger.find(key)
            if existing:
                awards[row.rank] = existing
                continue

            spend_period = period_key(self.clock())
            with self.storage.locks.hold(budget_key(config.id, spend_period), driver_key(row.driver_id)):
                if self.budget.reserve(config.id, spend_period, reward.points):
                    try:
                        entry_id = self.ledger.append(NewLedgerEntry(
                            idempotency_key=key,
                            driver_id=row.driver_id,
                            amount=reward.points,
                            kind=EntryKind.LEADERBOARD,
                            description=reward.description or f"Rank {row.rank} referrer for {period}",
                            configuration_id=config.id,
                            metadata={"period": period, "rank": row.rank},
                        ))
                    except Exception:
                        self.budget.release(config.id, spend_period, reward.points)
                        raise
                else:
                    entry_id = self.ledger.append(NewLedgerEntry(
                        idempotency_key=key,
                        driver_id=row.driver_id,
                        amount=0,
                        kind=EntryKind.ADJUSTMENT,
                        description=f"Rank {row.rank} reward of {reward.points} points for {period} withheld: budget exhausted",
                        configuration_id=config.id,
                        metadata={"period": period, "rank": row.rank, "reason": "BudgetExceeded",
                                  "withheld_amount": reward.points},
                    ))
            awards[row.rank] = self.ledger.get_entry(entry_id)
            logger.info("leaderboard.rank_paid", period=period, rank=row.rank, driver_id=row.driver_id,
                        amount=awards[row.rank].amount)
        return awards

    @staticmethod
    def _prospective(config: Optional[RewardConfiguration], rank: int) -> int:
        reward = config.reward_for_rank(rank) if config else None
        return reward.points if reward else 0

    def _resolve(self, configuration_id: Optional[UUID]) -> RewardConfiguration:
        if configuration_id:
            return self.configurations.get(configuration_id)
        config = self.configurations.get_active(self.scope)
        if not config:
            raise NotFound(f"No active configuration for scope {self.scope}")
        return config
