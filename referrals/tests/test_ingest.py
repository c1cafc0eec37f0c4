"""
Tests for the asynchronous event ingestor.
"""

import asyncio

import pytest

from core.errors import InvalidReferralCode, ValidationError
from referrals.ingest import EventIngestor, shard_for
from referrals.models import DeliveryCompleted, ReferralRedeemed, ReferralStatus
from rules.models import EvaluationStatus


class TestSharding:
    """Tests for shard assignment."""

    def test_same_referee_same_shard(self):
        """Test that a referee always maps to one worker."""
        assert shard_for("driver-b", 4) == shard_for("driver-b", 4)
        assert 0 <= shard_for("driver-b", 4) < 4

    def test_needs_a_worker(self, engine):
        """Test that an ingestor without workers is refused."""
        with pytest.raises(ValidationError):
            EventIngestor(engine.evaluator, workers=0)


class TestIngestion:
    """Tests for queued evaluation."""

    async def test_process_returns_outcome(self, engine, refer):
        """Test that a processed event resolves to its evaluation outcome."""
        refer("driver-a", "driver-b")
        ingestor = EventIngestor(engine.evaluator, workers=2, queue_size=10)
        await ingestor.start()

        outcome = await ingestor.process(DeliveryCompleted(referee_id="driver-b", delivery_id="d1"))
        await ingestor.stop()

        assert outcome.status == EvaluationStatus.APPLIED
        assert outcome.deliveries_completed == 1

    async def test_concurrent_events_for_many_referees(self, engine, refer):
        """Test that a burst of events awards every activation exactly once."""
        referees = [f"driver-{i}" for i in range(6)]
        for referee in referees:
            refer("driver-a", referee)
        ingestor = engine.ingestor()
        await ingestor.start()

        futures = [
            await ingestor.submit(DeliveryCompleted(referee_id=referee, delivery_id=f"{referee}-d{n}"))
            for n in range(1, 4)
            for referee in referees
        ]
        replays = [
            await ingestor.submit(DeliveryCompleted(referee_id=referee, delivery_id=f"{referee}-d3"))
            for referee in referees
        ]
        await ingestor.join()
        outcomes = await asyncio.gather(*futures, *replays)
        await ingestor.stop()

        assert all(o.status == EvaluationStatus.APPLIED for o in outcomes[:18])
        assert all(o.status == EvaluationStatus.DUPLICATE for o in outcomes[18:])
        assert engine.ledger.balance_of("driver-a").available_points == 6 * 20
        assert all(engine.referrals.get_for_referee(r).status == ReferralStatus.ACTIVATED for r in referees)

    async def test_errors_reach_the_caller(self, engine):
        """Test that evaluator errors are set on the returned future."""
        code = engine.codes.generate("driver-a", "Ayesha").code
        ingestor = EventIngestor(engine.evaluator, workers=1)
        await ingestor.start()

        with pytest.raises(InvalidReferralCode):
            await ingestor.process(ReferralRedeemed(referee_id="driver-a", code=code))
        outcome = await ingestor.process(ReferralRedeemed(referee_id="driver-b", code=code))
        await ingestor.stop()

        assert outcome.status == EvaluationStatus.APPLIED

    async def test_submit_requires_start(self, engine):
        """Test that events cannot be queued before the workers run."""
        ingestor = EventIngestor(engine.evaluator)

        with pytest.raises(ValidationError):
            await ingestor.submit(DeliveryCompleted(referee_id="driver-b", delivery_id="d1"))

    async def test_stop_drains_queue(self, engine, refer):
        """Test that stopping waits for queued events."""
        refer("driver-a", "driver-b")
        ingestor = EventIngestor(engine.evaluator, workers=1)
        await ingestor.start()
        for n in range(1, 4):
            await ingestor.submit(DeliveryCompleted(referee_id="driver-b", delivery_id=f"d{n}"))

        await ingestor.stop()

        assert not ingestor.running
        assert engine.referrals.get_for_referee("driver-b").progress.deliveries_completed == 3
