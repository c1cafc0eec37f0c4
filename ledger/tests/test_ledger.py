"""
Unit Tests for the Points Ledger

Tests cover:
1. Idempotent appends
2. Atomic batch appends
3. Balance projection and rebuild
4. History and range queries
"""

import pytest
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from core.errors import NotFound, ValidationError
from core.storage import InMemoryStorage
from ledger.models import EntryKind, NewLedgerEntry
from ledger.service import LedgerService


DRIVER_A = "driver-a"
DRIVER_B = "driver-b"


def award(key, driver_id=DRIVER_A, amount=20, kind=EntryKind.ACTIVATION):
    return NewLedgerEntry(
        idempotency_key=key,
        driver_id=driver_id,
        amount=amount,
        kind=kind,
        description=f"{kind.value} award",
    )


class TestAppend:
    """Tests for single and batch appends."""

    def test_append_records_entry(self, clock):
        """Test that an appended entry is stored with the clock's timestamp."""
        service = LedgerService(clock=clock)

        entry_id = service.append(award("activation:r1:referrer"))

        entry = service.get_entry(entry_id)
        assert entry.driver_id == DRIVER_A
        assert entry.amount == 20
        assert entry.kind == EntryKind.ACTIVATION
        assert entry.created_at == clock.now

    def test_same_key_returns_existing_entry(self):
        """Test that a repeated idempotency key does not write a second entry."""
        service = LedgerService()

        first = service.append(award("milestone:r1:10", amount=25, kind=EntryKind.MILESTONE))
        second = service.append(award("milestone:r1:10", amount=25, kind=EntryKind.MILESTONE))

        assert first == second
        assert len(service.storage.ledger_entries) == 1
        assert service.balance_of(DRIVER_A).available_points == 25

    def test_empty_key_rejected(self):
        """Test that entries without an idempotency key are refused."""
        service = LedgerService()

        with pytest.raises(ValidationError):
            service.append(award(""))

    def test_batch_is_all_or_nothing(self):
        """Test that a batch with a repeated key writes nothing."""
        service = LedgerService()

        with pytest.raises(ValidationError):
            service.append_many([
                award("activation:r1:referrer"),
                award("activation:r1:referee", driver_id=DRIVER_B, amount=10),
                award("activation:r1:referrer"),
            ])

        assert service.storage.ledger_entries == {}
        assert service.balance_of(DRIVER_B).available_points == 0

    def test_batch_mixes_new_and_existing_entries(self):
        """Test that a batch returns existing ids in place and writes only new keys."""
        service = LedgerService()
        existing = service.append(award("activation:r1:referrer"))

        ids = service.append_many([
            award("activation:r1:referrer"),
            award("activation:r1:referee", driver_id=DRIVER_B, amount=10),
        ])

        assert ids[0] == existing
        assert service.get_entry(ids[1]).driver_id == DRIVER_B
        assert len(service.storage.ledger_entries) == 2

    def test_missing_entry_raises(self):
        """Test that looking up an unknown entry raises NotFound."""
        with pytest.raises(NotFound):
            LedgerService().get_entry(uuid4())


class TestBalances:
    """Tests for balance projections."""

    def test_balance_sums_awards_and_redemptions(self):
        """Test lifetime, redeemed and available totals."""
        service = LedgerService()
        service.append(award("a1", amount=20))
        service.append(award("a2", amount=8, kind=EntryKind.PER_DELIVERY))
        service.append(award("r1", amount=-18, kind=EntryKind.REDEMPTION))

        balance = service.balance_of(DRIVER_A)

        assert balance.lifetime_total == 28
        assert balance.redeemed_points == 18
        assert balance.available_points == 10
        assert balance.total_entries == 3

    def test_zero_adjustment_counts_as_entry_only(self):
        """Test that audit adjustments leave the totals untouched."""
        service = LedgerService()
        service.append(award("a1", amount=20))
        service.append(award("adjustment:a2", amount=0, kind=EntryKind.ADJUSTMENT))

        balance = service.balance_of(DRIVER_A)

        assert balance.available_points == 20
        assert balance.total_entries == 2

    def test_rebuild_matches_cached_projection(self):
        """Test that rebuilding from the entry stream reproduces the cache."""
        service = LedgerService()
        service.append(award("a1", amount=20))
        service.balance_of(DRIVER_A)
        service.append(award("a2", amount=5))
        service.append(award("b1", driver_id=DRIVER_B, amount=10))
        cached = service.balance_of(DRIVER_A)

        service.rebuild_balances()

        assert service.balance_of(DRIVER_A) == cached
        assert service.balance_of(DRIVER_B).available_points == 10

    def test_unknown_driver_has_empty_balance(self):
        """Test that a driver without entries reports zero points."""
        balance = LedgerService().balance_of("nobody")

        assert balance.available_points == 0
        assert balance.last_transaction_at is None


class TestQueries:
    """Tests for history and range queries."""

    def test_history_is_newest_first_and_paged(self, clock):
        """Test ordering, paging and the embedded balance."""
        service = LedgerService(clock=clock)
        for i in range(5):
            service.append(award(f"k{i}", amount=i + 1))
            clock.advance(minutes=1)

        history = service.history(DRIVER_A, limit=2, offset=1)

        assert history.total_count == 5
        assert [e.idempotency_key for e in history.entries] == ["k3", "k2"]
        assert history.balance.available_points == 15

    def test_entries_for_since(self, clock):
        """Test that entries_for filters by timestamp."""
        service = LedgerService(clock=clock)
        service.append(award("old"))
        cutoff = clock.advance(days=1)
        service.append(award("new"))

        keys = [e.idempotency_key for e in service.entries_for(DRIVER_A, since=cutoff)]

        assert keys == ["new"]

    def test_entries_between_filters_kind_and_window(self, clock):
        """Test the half-open window and kind filter."""
        service = LedgerService(clock=clock)
        service.append(award("inside", kind=EntryKind.MILESTONE))
        service.append(award("other-kind", kind=EntryKind.ADJUSTMENT, amount=0))
        clock.set(datetime(2025, 9, 1, tzinfo=timezone.utc))
        service.append(award("boundary", kind=EntryKind.MILESTONE))

        start = datetime(2025, 8, 1, tzinfo=timezone.utc)
        entries = service.entries_between(start, start + timedelta(days=31), kinds=[EntryKind.MILESTONE])

        assert [e.idempotency_key for e in entries] == ["inside"]

    def test_find_and_recent(self):
        """Test key lookup and the recent feed."""
        service = LedgerService()
        service.append(award("first"))
        service.append(award("second", driver_id=DRIVER_B))

        assert service.find("first").driver_id == DRIVER_A
        assert service.find("missing") is None
        assert [e.idempotency_key for e in service.recent(limit=1)] == ["second"]

    def test_shared_storage_between_services(self):
        """Test that two services over one storage see the same entries."""
        storage = InMemoryStorage()
        LedgerService(storage).append(award("shared"))

        assert LedgerService(storage).balance_of(DRIVER_A).available_points == 20

    def test_entries_for_referral_uses_referral_index(self):
        """Test that referral lookups return only that referral's entries, filtered by kind."""
        service = LedgerService()
        referral, other = uuid4(), uuid4()
        for key, referral_id, kind in [
            ("activation:r1:referrer", referral, EntryKind.ACTIVATION),
            ("per_delivery:r1:d4", referral, EntryKind.PER_DELIVERY),
            ("activation:r2:referrer", other, EntryKind.ACTIVATION),
            ("unlinked", None, EntryKind.ACTIVATION),
        ]:
            entry = award(key, kind=kind)
            service.append(entry.model_copy(update={"referral_id": referral_id}))

        keys = [e.idempotency_key for e in service.entries_for_referral(referral)]
        activations = service.entries_for_referral(referral, EntryKind.ACTIVATION)

        assert keys == ["activation:r1:referrer", "per_delivery:r1:d4"]
        assert [e.idempotency_key for e in activations] == ["activation:r1:referrer"]
        assert set(service.storage.entries_by_referral) == {referral, other}
