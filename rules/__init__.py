"""
Reward Policy Package

Versioned reward configurations, their validation, and the monthly budget
enforcement applied to every award.
"""

from .models import (
    ConfigurationStatus,
    CreateConfigurationRequest,
    RewardConfiguration,
    RewardRules,
)
from .store import ConfigurationStore, validate_rules
from .budget import BudgetEnforcer

__all__ = [
    "ConfigurationStatus",
    "CreateConfigurationRequest",
    "RewardConfiguration",
    "RewardRules",
    "ConfigurationStore",
    "validate_rules",
    "BudgetEnforcer",
]
