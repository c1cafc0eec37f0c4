"""
Payouts: monthly leaderboard rewards and point redemptions.
"""

from .models import LeaderboardEntry, RedemptionMethod, RedemptionRequest, RedemptionStatus
from .leaderboard import LeaderboardEngine
from .redemption import RedemptionProcessor

__all__ = [
    "LeaderboardEntry",
    "RedemptionMethod",
    "RedemptionRequest",
    "RedemptionStatus",
    "LeaderboardEngine",
    "RedemptionProcessor",
]
