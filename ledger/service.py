from datetime import datetime
from typing import Callable, Iterable, Iterator, Optional
from uuid import UUID, uuid4

import structlog

from core.errors import NotFound, ValidationError
from core.periods import utc_now
from core.storage import InMemoryStorage, driver_key
from .models import (
    EntryKind,
    LedgerEntry,
    LedgerHistoryResponse,
    NewLedgerEntry,
    PointsBalance,
)

logger = structlog.get_logger()


class LedgerService:
    """Append-only points ledger; balances are projections of the entry stream."""

    def __init__(self, storage: Optional[InMemoryStorage] = None, clock: Callable[[], datetime] = utc_now):
        self.storage = storage or InMemoryStorage()
        self.clock = clock

    def append(self, entry: NewLedgerEntry) -> UUID:
        return self.append_many([entry])[0]

    def append_many(self, entries: list[NewLedgerEntry]) -> list[UUID]:
        """Append a batch atomically. Entries whose key already exists are skipped
        and their existing id is returned in place."""
        with self.storage.locks.hold(*(driver_key(e.driver_id) for e in entries)):
            ids: list[Optional[UUID]] = []
            pending: list[NewLedgerEntry] = []
            batch_keys: set[str] = set()
            for entry in entries:
                if not entry.idempotency_key:
                    raise ValidationError("Ledger entries require an idempotency key")
                if entry.idempotency_key in batch_keys:
                    raise ValidationError(f"Duplicate idempotency key {entry.idempotency_key} in batch")
                batch_keys.add(entry.idempotency_key)

                existing_id = self.storage.idempotency_index.get(entry.idempotency_key)
                if existing_id:
                    logger.info("ledger.duplicate_append", idempotency_key=entry.idempotency_key)
                    ids.append(existing_id)
                else:
                    ids.append(None)
                    pending.append(entry)

            written = iter([self._write(entry) for entry in pending])
            return [entry_id or next(written) for entry_id in ids]

    def _write(self, entry: NewLedgerEntry) -> UUID:
        record = LedgerEntry(
            id=uuid4(),
            driver_id=entry.driver_id,
            amount=entry.amount,
            kind=entry.kind,
            description=entry.description,
            referral_id=entry.referral_id,
            configuration_id=entry.configuration_id,
            idempotency_key=entry.idempotency_key,
            created_at=self.clock(),
            metadata=entry.metadata,
        )
        self.storage.ledger_entries[record.id] = record
        self.storage.entries_by_driver.setdefault(record.driver_id, []).append(record.id)
        if record.referral_id:
            self.storage.entries_by_referral.setdefault(record.referral_id, []).append(record.id)
        self.storage.idempotency_index[record.idempotency_key] = record.id

        cached = self.storage.balances.get(record.driver_id)
        if cached is not None:
            self._apply(cached, record)

        logger.info(
            "ledger.appended",
            entry_id=str(record.id),
            driver_id=record.driver_id,
            kind=record.kind.value,
            amount=record.amount,
        )
        return record.id

    @staticmethod
    def _apply(projection: dict, entry: LedgerEntry) -> None:
        if entry.kind == EntryKind.REDEMPTION:
            projection["redeemed_points"] -= entry.amount
        else:
            projection["lifetime_total"] += entry.amount
        projection["available_points"] += entry.amount
        projection["total_entries"] += 1
        projection["last_transaction_at"] = entry.created_at

    def _project(self, entries: Iterable[LedgerEntry]) -> dict:
        projection = {
            "lifetime_total": 0,
            "redeemed_points": 0,
            "available_points": 0,
            "total_entries": 0,
            "last_transaction_at": None,
        }
        for entry in entries:
            self._apply(projection, entry)
        return projection

    def balance_of(self, driver_id: str) -> PointsBalance:
        with self.storage.locks.hold(driver_key(driver_id)):
            cached = self.storage.balances.get(driver_id)
            if cached is None:
                cached = self.rebuild_balance(driver_id)
            return PointsBalance(driver_id=driver_id, **cached)

    def rebuild_balance(self, driver_id: str) -> dict:
        with self.storage.locks.hold(driver_key(driver_id)):
            projection = self._project(self._driver_entries(driver_id))
            self.storage.balances[driver_id] = projection
            return projection

    def rebuild_balances(self) -> None:
        self.storage.balances.clear()
        for driver_id in list(self.storage.entries_by_driver):
            self.rebuild_balance(driver_id)

    def _driver_entries(self, driver_id: str) -> list[LedgerEntry]:
        return [self.storage.ledger_entries[i] for i in self.storage.entries_by_driver.get(driver_id, [])]

    def entries_for(self, driver_id: str, since: Optional[datetime] = None) -> Iterator[LedgerEntry]:
        with self.storage.locks.hold(driver_key(driver_id)):
            entries = self._driver_entries(driver_id)
        for entry in entries:
            if since is None or entry.created_at >= since:
                yield entry

    def entries_between(
        self,
        start: datetime,
        end: datetime,
        kinds: Optional[Iterable[EntryKind]] = None,
        configuration_id: Optional[UUID] = None,
    ) -> list[LedgerEntry]:
        wanted = set(kinds) if kinds else None
        return [
            e for e in list(self.storage.ledger_entries.values())
            if start <= e.created_at < end
            and (wanted is None or e.kind in wanted)
            and (configuration_id is None or e.configuration_id == configuration_id)
        ]

    def entries_for_referral(self, referral_id: UUID, kind: Optional[EntryKind] = None) -> list[LedgerEntry]:
        entries = [self.storage.ledger_entries[i] for i in list(self.storage.entries_by_referral.get(referral_id, []))]
        return [e for e in entries if kind is None or e.kind == kind]

    def find(self, idempotency_key: str) -> Optional[LedgerEntry]:
        entry_id = self.storage.idempotency_index.get(idempotency_key)
        return self.storage.ledger_entries.get(entry_id) if entry_id else None

    def get_entry(self, entry_id: UUID) -> LedgerEntry:
        entry = self.storage.ledger_entries.get(entry_id)
        if not entry:
            raise NotFound(f"Ledger entry {entry_id} not found")
        return entry

    def history(self, driver_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        all_entries = list(self.entries_for(driver_id))
        all_entries.reverse()
        return LedgerHistoryResponse(
            driver_id=driver_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            balance=self.balance_of(driver_id),
        )

    def recent(self, limit: int = 20) -> list[LedgerEntry]:
        entries = list(self.storage.ledger_entries.values())
        entries.reverse()
        return entries[:limit]
