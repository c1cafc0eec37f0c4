import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator
from uuid import UUID

from core.errors import ResourceBusy

if TYPE_CHECKING:
    from ledger.models import LedgerEntry
    from payouts.models import LeaderboardEntry, RedemptionRequest
    from referrals.models import Referral, ReferralCode
    from rules.models import ConfigurationStatusChange, RewardConfiguration


class KeyedLocks:
    """Registry of re-entrant locks, one per resource key.

    Keys are acquired in sorted order so two callers holding overlapping
    key sets cannot deadlock each other.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        acquired: list[threading.RLock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                if not lock.acquire(timeout=self.timeout):
                    raise ResourceBusy(f"Timed out waiting for {key}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


def driver_key(driver_id: str) -> str:
    return f"driver:{driver_id}"


def budget_key(configuration_id: UUID, period: str) -> str:
    return f"budget:{configuration_id}:{period}"


class InMemoryStorage:
    def __init__(self, lock_timeout: float = 5.0):
        self.locks = KeyedLocks(timeout=lock_timeout)

        self.ledger_entries: dict[UUID, "LedgerEntry"] = {}
        self.entries_by_driver: dict[str, list[UUID]] = {}
        self.entries_by_referral: dict[UUID, list[UUID]] = {}
        self.idempotency_index: dict[str, UUID] = {}
        self.balances: dict[str, dict] = {}

        self.configurations: dict[UUID, "RewardConfiguration"] = {}
        self.configuration_status_changes: list["ConfigurationStatusChange"] = []

        self.referral_codes: dict[str, "ReferralCode"] = {}
        self.code_by_driver: dict[str, str] = {}
        self.code_sequence = 0

        self.referrals: dict[UUID, "Referral"] = {}
        self.referral_by_referee: dict[str, UUID] = {}
        self.processed_events: dict[str, str] = {}

        self.budget_spend: dict[tuple[UUID, str], int] = {}

        self.redemptions: dict[UUID, "RedemptionRequest"] = {}
        self.redemption_keys: dict[str, UUID] = {}

        self.leaderboards: dict[str, list["LeaderboardEntry"]] = {}
