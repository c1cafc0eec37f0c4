from datetime import datetime
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

import structlog

from core.errors import NotFound, ValidationError
from core.periods import utc_now
from core.storage import InMemoryStorage
from .models import (
    ConfigurationStatus,
    ConfigurationStatusChange,
    CreateConfigurationRequest,
    ReviseConfigurationRequest,
    RewardConfiguration,
    RewardRules,
)

logger = structlog.get_logger()

RULE_GROUPS = tuple(RewardRules.model_fields)


def _negative_fields(data: Any, path: str = "") -> list[str]:
    if isinstance(data, bool):
        return []
    if isinstance(data, (int, float)):
        return [path] if data < 0 else []
    if isinstance(data, dict):
        return [p for key, value in data.items() for p in _negative_fields(value, f"{path}.{key}" if path else key)]
    if isinstance(data, list):
        return [p for i, value in enumerate(data) for p in _negative_fields(value, f"{path}[{i}]")]
    return []


def validate_rules(rules: RewardRules) -> None:
    """Raise ValidationError describing every problem found in a rule set."""
    problems = [f"{field} must not be negative" for field in _negative_fields(rules.model_dump())]

    counts = [m.delivery_count for m in rules.milestones.rewards]
    if len(counts) != len(set(counts)):
        problems.append("milestones.rewards contains duplicate delivery counts")
    if any(count < 1 for count in counts):
        problems.append("milestones.rewards delivery counts must be at least 1")

    ranks = [r.rank for r in rules.leaderboard_rewards.rewards]
    if len(ranks) != len(set(ranks)):
        problems.append("leaderboard_rewards.rewards contains duplicate ranks")
    if any(rank < 1 for rank in ranks):
        problems.append("leaderboard_rewards.rewards ranks must be at least 1")

    if rules.activation_bonus.required_deliveries < 1:
        problems.append("activation_bonus.required_deliveries must be at least 1")
    if rules.profitability_controls.max_referral_budget_percentage > 100:
        problems.append("profitability_controls.max_referral_budget_percentage must not exceed 100")
    settings = rules.redemption_settings
    if settings.allow_free_deliveries and settings.points_per_free_delivery < 1:
        problems.append("redemption_settings.points_per_free_delivery must be at least 1")

    if problems:
        raise ValidationError("; ".join(problems))


class ConfigurationStore:
    """Versioned reward policies; at most one active configuration per scope."""

    def __init__(self, storage: Optional[InMemoryStorage] = None, clock: Callable[[], datetime] = utc_now):
        self.storage = storage or InMemoryStorage()
        self.clock = clock

    def create(self, request: CreateConfigurationRequest) -> UUID:
        if not request.name.strip():
            raise ValidationError("Configuration name is required")
        validate_rules(request)

        config_id = uuid4()
        config = RewardConfiguration(
            id=config_id,
            lineage_id=config_id,
            version=1,
            status=ConfigurationStatus.INACTIVE,
            created_at=self.clock(),
            **request.model_dump(exclude={"status"}),
        )
        self._insert(config, request.status, request.created_by)
        return config_id

    def revise(self, config_id: UUID, request: ReviseConfigurationRequest) -> UUID:
        """Store an amended copy as a new version; the base version is left untouched."""
        base = self.get(config_id)
        changes = request.model_dump(exclude_none=True, exclude={"created_by"})
        merged = RewardRules(**{
            group: changes.get(group, getattr(base, group).model_dump()) for group in RULE_GROUPS
        })
        validate_rules(merged)

        latest = max(c.version for c in list(self.storage.configurations.values()) if c.lineage_id == base.lineage_id)
        config = RewardConfiguration(
            id=uuid4(),
            lineage_id=base.lineage_id,
            version=latest + 1,
            scope=base.scope,
            name=changes.get("name", base.name),
            description=changes.get("description", base.description),
            status=ConfigurationStatus.INACTIVE,
            created_at=self.clock(),
            created_by=request.created_by,
            **merged.model_dump(),
        )
        self._insert(config, base.status, request.created_by)
        logger.info("config.revised", base_id=str(base.id), config_id=str(config.id), version=config.version)
        return config.id

    def _insert(self, config: RewardConfiguration, status: ConfigurationStatus, changed_by: Optional[str]) -> None:
        with self.storage.locks.hold(self._scope_key(config.scope)):
            self.storage.configurations[config.id] = config
            self._record(config.id, None, ConfigurationStatus.INACTIVE, changed_by, "created")
        logger.info("config.created", config_id=str(config.id), scope=config.scope, name=config.name)
        if status == ConfigurationStatus.ACTIVE:
            self.set_status(config.id, ConfigurationStatus.ACTIVE, changed_by)

    def get(self, config_id: UUID) -> RewardConfiguration:
        config = self.storage.configurations.get(config_id)
        if not config:
            raise NotFound(f"Configuration {config_id} not found")
        return config

    def list_configurations(self, scope: Optional[str] = None) -> list[RewardConfiguration]:
        configs = [c for c in list(self.storage.configurations.values()) if scope is None or c.scope == scope]
        configs.sort(key=lambda c: c.created_at, reverse=True)
        return configs

    def get_active(self, scope: str = "default") -> Optional[RewardConfiguration]:
        for config in list(self.storage.configurations.values()):
            if config.scope == scope and config.is_active():
                return config
        return None

    def set_status(
        self, config_id: UUID, status: ConfigurationStatus, changed_by: Optional[str] = None,
    ) -> RewardConfiguration:
        config = self.get(config_id)
        with self.storage.locks.hold(self._scope_key(config.scope)):
            if status == ConfigurationStatus.ACTIVE:
                for other in list(self.storage.configurations.values()):
                    if other.id != config_id and other.scope == config.scope and other.is_active():
                        self._change(other, ConfigurationStatus.INACTIVE, changed_by, f"superseded by {config_id}")
            config = self._change(self.get(config_id), status, changed_by, "status update")
        return config

    def status_history(self, config_id: UUID) -> list[ConfigurationStatusChange]:
        self.get(config_id)
        return [c for c in self.storage.configuration_status_changes if c.configuration_id == config_id]

    def _change(
        self, config: RewardConfiguration, status: ConfigurationStatus, changed_by: Optional[str], reason: str,
    ) -> RewardConfiguration:
        if config.status == status:
            return config
        updated = config.model_copy(update={"status": status})
        self.storage.configurations[config.id] = updated
        self._record(config.id, config.status, status, changed_by, reason)
        logger.info(
            "config.status_changed",
            config_id=str(config.id),
            from_status=config.status.value,
            to_status=status.value,
            changed_by=changed_by,
        )
        return updated

    def _record(
        self,
        config_id: UUID,
        from_status: Optional[ConfigurationStatus],
        to_status: ConfigurationStatus,
        changed_by: Optional[str],
        reason: str,
    ) -> None:
        self.storage.configuration_status_changes.append(ConfigurationStatusChange(
            configuration_id=config_id,
            from_status=from_status,
            to_status=to_status,
            changed_by=changed_by,
            changed_at=self.clock(),
            reason=reason,
        ))

    @staticmethod
    def _scope_key(scope: str) -> str:
        return f"config-scope:{scope}"
