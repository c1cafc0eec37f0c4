"""
Referral codes and the referral relationships created when they are used.
"""

from .models import (
    DeliveryCompleted,
    Referral,
    ReferralCode,
    ReferralRedeemed,
    ReferralStatus,
)
from .codes import ReferralCodeService
from .service import ReferralService

__all__ = [
    "DeliveryCompleted",
    "Referral",
    "ReferralCode",
    "ReferralRedeemed",
    "ReferralStatus",
    "ReferralCodeService",
    "ReferralService",
]
