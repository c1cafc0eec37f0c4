"""
Tests for the configuration store: validation, single-active activation,
versioned revisions and the status audit trail.
"""

import pytest
from uuid import uuid4

from core.errors import NotFound, ValidationError
from rules.models import (
    ActivationBonus,
    ConfigurationStatus,
    CreateConfigurationRequest,
    LeaderboardRewards,
    MilestoneReward,
    Milestones,
    ProfitabilityControls,
    RankReward,
    ReviseConfigurationRequest,
)
from rules.store import ConfigurationStore


def request(name="Policy", **groups):
    return CreateConfigurationRequest(name=name, created_by="admin-1", **groups)


class TestCreate:
    """Tests for creating configurations."""

    def test_create_defaults_to_inactive(self, clock):
        """Test that a new configuration starts inactive with version 1."""
        store = ConfigurationStore(clock=clock)

        config = store.get(store.create(request()))

        assert config.status == ConfigurationStatus.INACTIVE
        assert config.version == 1
        assert config.lineage_id == config.id
        assert config.activation_bonus.required_deliveries == 3
        assert store.get_active() is None

    def test_create_active(self):
        """Test that creating with status active activates it."""
        store = ConfigurationStore()

        config_id = store.create(request(status=ConfigurationStatus.ACTIVE))

        assert store.get_active().id == config_id

    def test_negative_value_rejected(self):
        """Test that negative numeric fields are refused."""
        store = ConfigurationStore()

        with pytest.raises(ValidationError, match="activation_bonus.referrer_points"):
            store.create(request(activation_bonus=ActivationBonus(referrer_points=-5)))
        assert store.list_configurations() == []

    def test_duplicate_milestone_rejected(self):
        """Test that repeated milestone counts are refused."""
        milestones = Milestones(rewards=[
            MilestoneReward(delivery_count=10, points=25),
            MilestoneReward(delivery_count=10, points=50),
        ])

        with pytest.raises(ValidationError, match="duplicate delivery counts"):
            ConfigurationStore().create(request(milestones=milestones))

    def test_duplicate_rank_rejected(self):
        """Test that repeated leaderboard ranks are refused."""
        rewards = LeaderboardRewards(rewards=[RankReward(rank=1, points=300), RankReward(rank=1, points=150)])

        with pytest.raises(ValidationError, match="duplicate ranks"):
            ConfigurationStore().create(request(leaderboard_rewards=rewards))

    def test_percentage_over_100_rejected(self):
        """Test that a budget percentage above 100 is refused."""
        controls = ProfitabilityControls(max_referral_budget_percentage=120)

        with pytest.raises(ValidationError, match="max_referral_budget_percentage"):
            ConfigurationStore().create(request(profitability_controls=controls))

    def test_blank_name_rejected(self):
        """Test that a configuration needs a name."""
        with pytest.raises(ValidationError):
            ConfigurationStore().create(request(name="  "))


class TestActivation:
    """Tests for the single-active rule."""

    def test_activating_deactivates_others_in_scope(self):
        """Test that at most one configuration is active per scope."""
        store = ConfigurationStore()
        first = store.create(request("First", status=ConfigurationStatus.ACTIVE))
        second = store.create(request("Second"))

        store.set_status(second, ConfigurationStatus.ACTIVE, "admin-2")

        assert store.get_active().id == second
        assert store.get(first).status == ConfigurationStatus.INACTIVE

    def test_scopes_are_independent(self):
        """Test that activation in one scope leaves another scope alone."""
        store = ConfigurationStore()
        default = store.create(request(status=ConfigurationStatus.ACTIVE))
        city = store.create(CreateConfigurationRequest(
            name="City pilot", scope="pune", status=ConfigurationStatus.ACTIVE,
        ))

        assert store.get_active().id == default
        assert store.get_active("pune").id == city
        assert [c.id for c in store.list_configurations("pune")] == [city]

    def test_deactivate(self):
        """Test that the active configuration can be switched off."""
        store = ConfigurationStore()
        config_id = store.create(request(status=ConfigurationStatus.ACTIVE))

        store.set_status(config_id, ConfigurationStatus.INACTIVE)

        assert store.get_active() is None

    def test_status_history_records_changes(self):
        """Test the audit trail of creation, activation and supersession."""
        store = ConfigurationStore()
        first = store.create(request("First", status=ConfigurationStatus.ACTIVE))
        store.create(request("Second", status=ConfigurationStatus.ACTIVE))

        history = store.status_history(first)

        assert [(h.from_status, h.to_status) for h in history] == [
            (None, ConfigurationStatus.INACTIVE),
            (ConfigurationStatus.INACTIVE, ConfigurationStatus.ACTIVE),
            (ConfigurationStatus.ACTIVE, ConfigurationStatus.INACTIVE),
        ]
        assert history[1].changed_by == "admin-1"
        assert history[2].reason.startswith("superseded by")

    def test_unknown_configuration(self):
        """Test that unknown ids raise NotFound."""
        store = ConfigurationStore()

        with pytest.raises(NotFound):
            store.get(uuid4())
        with pytest.raises(NotFound):
            store.set_status(uuid4(), ConfigurationStatus.ACTIVE)


class TestRevise:
    """Tests for versioned revisions."""

    def test_revision_is_new_version_of_same_lineage(self):
        """Test that revising keeps the base untouched and carries omitted groups."""
        store = ConfigurationStore()
        base_id = store.create(request(status=ConfigurationStatus.ACTIVE))

        revised_id = store.revise(base_id, ReviseConfigurationRequest(
            activation_bonus=ActivationBonus(referrer_points=15, referee_points=5),
        ))

        base, revised = store.get(base_id), store.get(revised_id)
        assert revised.version == 2
        assert revised.lineage_id == base.lineage_id
        assert revised.activation_bonus.referrer_points == 15
        assert base.activation_bonus.referrer_points == 20
        assert revised.per_delivery_reward == base.per_delivery_reward

    def test_revision_of_active_takes_over(self):
        """Test that revising the active configuration activates the new version."""
        store = ConfigurationStore()
        base_id = store.create(request(status=ConfigurationStatus.ACTIVE))

        revised_id = store.revise(base_id, ReviseConfigurationRequest(name="Policy v2"))

        assert store.get_active().id == revised_id
        assert store.get_active().name == "Policy v2"
        assert store.get(base_id).status == ConfigurationStatus.INACTIVE

    def test_invalid_revision_rejected(self):
        """Test that revisions are validated like new configurations."""
        store = ConfigurationStore()
        base_id = store.create(request())

        with pytest.raises(ValidationError):
            store.revise(base_id, ReviseConfigurationRequest(
                profitability_controls=ProfitabilityControls(monthly_referral_budget=-1),
            ))
        assert len(store.list_configurations()) == 1
