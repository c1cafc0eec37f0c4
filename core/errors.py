"""
Error taxonomy shared by every engine component.

Each error carries a stable ``code`` that is stored on rejected records and
returned to callers verbatim.
"""


class RewardsError(Exception):
    code = "RewardsError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(RewardsError):
    code = "ValidationError"


class InvalidReferralCode(ValidationError):
    code = "InvalidReferralCode"


class FreeDeliveriesDisabled(ValidationError):
    code = "FreeDeliveriesDisabled"


class BudgetExceeded(RewardsError):
    code = "BudgetExceeded"


class CapExceeded(RewardsError):
    code = "CapExceeded"


class DuplicateEvent(RewardsError):
    code = "DuplicateEvent"


class InsufficientBalance(RewardsError):
    code = "InsufficientBalance"


class BelowMinimum(RewardsError):
    code = "BelowMinimum"


class MonthlyLimitReached(RewardsError):
    code = "MonthlyLimitReached"


class NotFound(RewardsError):
    code = "NotFound"


class InvalidStateTransition(RewardsError):
    code = "InvalidStateTransition"


class ResourceBusy(RewardsError):
    code = "ResourceBusy"


class BonusExpired(RewardsError):
    code = "BonusExpired"
