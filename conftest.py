from datetime import datetime, timedelta, timezone

import pytest

from core.config import Settings
from core.container import RewardsEngine
from referrals.models import DeliveryCompleted, ReferralRedeemed
from rules.models import ConfigurationStatus, CreateConfigurationRequest


class FakeClock:
    """Settable clock shared by every service of a test engine."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 8, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(_env_file=None, log_format="console")


@pytest.fixture
def engine(settings, clock):
    return RewardsEngine(settings, clock=clock)


@pytest.fixture
def activate(engine):
    """Create and activate a configuration with the given rule groups."""

    def _activate(**groups):
        config_id = engine.configurations.create(CreateConfigurationRequest(
            name="Test policy",
            status=ConfigurationStatus.ACTIVE,
            created_by="tests",
            **groups,
        ))
        return engine.configurations.get(config_id)

    return _activate


@pytest.fixture
def refer(engine):
    """Give ``referrer`` a code and redeem it for ``referee``."""

    def _refer(referrer: str, referee: str, name: str = "Ayesha"):
        code = engine.codes.generate(referrer, name)
        outcome = engine.evaluator.handle(ReferralRedeemed(referee_id=referee, code=code.code))
        return engine.referrals.get(outcome.referral_id)

    return _refer


@pytest.fixture
def deliver(engine):
    """Complete deliveries ``start`` to ``start + count - 1`` for ``referee``."""

    def _deliver(referee: str, count: int, start: int = 1):
        return [
            engine.evaluator.handle(DeliveryCompleted(referee_id=referee, delivery_id=f"{referee}-d{i}"))
            for i in range(start, start + count)
        ]

    return _deliver
