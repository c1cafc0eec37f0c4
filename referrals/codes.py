"""
Permanent referral codes in the ``GRP-SDS001-AY`` format.

The numeric part is a global sequence; the suffix is the first two letters of
the owner's first name, ``DR`` when no name is known.
"""

import re
import string
from datetime import datetime
from typing import Callable, Optional

import structlog

from core.errors import InvalidReferralCode, NotFound
from core.periods import utc_now
from core.storage import InMemoryStorage
from .models import CodeStatus, CodeUsage, CodeValidation, ReferralCode

logger = structlog.get_logger()

CODE_PATTERN = re.compile(r"^GRP-SDS\d{3,}-[A-Z]{2}$")


def code_suffix(driver_name: Optional[str]) -> str:
    if not driver_name or not driver_name.strip():
        return "DR"
    first_name = driver_name.strip().split()[0]
    letters = "".join(c for c in first_name if c in string.ascii_letters).upper()
    return (letters + "XX")[:2]


def format_code(sequence: int, driver_name: Optional[str]) -> str:
    return f"GRP-SDS{sequence:03d}-{code_suffix(driver_name)}"


class ReferralCodeService:
    def __init__(self, storage: Optional[InMemoryStorage] = None, clock: Callable[[], datetime] = utc_now):
        self.storage = storage or InMemoryStorage()
        self.clock = clock

    def generate(self, driver_id: str, driver_name: Optional[str] = None) -> ReferralCode:
        """Return the driver's code, creating it on first request."""
        with self.storage.locks.hold("referral-codes"):
            existing = self.storage.code_by_driver.get(driver_id)
            if existing:
                return self.storage.referral_codes[existing]

            self.storage.code_sequence += 1
            code = ReferralCode(
                code=format_code(self.storage.code_sequence, driver_name),
                driver_id=driver_id,
                driver_name=driver_name,
                created_at=self.clock(),
            )
            self.storage.referral_codes[code.code] = code
            self.storage.code_by_driver[driver_id] = code.code

        logger.info("referral_code.generated", driver_id=driver_id, code=code.code)
        return code

    def get(self, code: str) -> ReferralCode:
        record = self.storage.referral_codes.get(code)
        if not record:
            raise NotFound(f"Referral code {code} not found")
        return record

    def get_for_driver(self, driver_id: str) -> ReferralCode:
        code = self.storage.code_by_driver.get(driver_id)
        if not code:
            raise NotFound(f"Driver {driver_id} has no referral code")
        return self.storage.referral_codes[code]

    def validate(self, code: str) -> CodeValidation:
        if not CODE_PATTERN.match(code):
            return CodeValidation(code=code, valid=False, reason="Invalid referral code format. Expected format: GRP-SDS001-XX")
        record = self.storage.referral_codes.get(code)
        if not record:
            return CodeValidation(code=code, valid=False, reason="Unknown referral code")
        return CodeValidation(
            code=code,
            valid=record.is_active(),
            status=record.status,
            driver_id=record.driver_id,
            total_uses=record.total_uses,
            reason=None if record.is_active() else "Referral code is inactive",
        )

    def require_active(self, code: str) -> ReferralCode:
        validation = self.validate(code)
        if not validation.valid:
            raise InvalidReferralCode(validation.reason or "Invalid referral code")
        return self.storage.referral_codes[code]

    def mark_used(self, code: str) -> ReferralCode:
        with self.storage.locks.hold("referral-codes"):
            record = self.require_active(code)
            updated = record.model_copy(update={"total_uses": record.total_uses + 1})
            self.storage.referral_codes[code] = updated
        logger.info("referral_code.used", code=code, total_uses=updated.total_uses)
        return updated

    def set_status(self, code: str, status: CodeStatus) -> ReferralCode:
        with self.storage.locks.hold("referral-codes"):
            record = self.get(code)
            updated = record.model_copy(update={"status": status})
            self.storage.referral_codes[code] = updated
        logger.info("referral_code.status_changed", code=code, status=status.value)
        return updated

    def list_active(self) -> list[ReferralCode]:
        return [c for c in list(self.storage.referral_codes.values()) if c.is_active()]

    def usage(self, code: str) -> CodeUsage:
        record = self.get(code)
        referrals = [r for r in list(self.storage.referrals.values()) if r.code == code]
        referrals.sort(key=lambda r: r.created_at, reverse=True)
        return CodeUsage(
            code=record.code,
            driver_id=record.driver_id,
            status=record.status,
            total_uses=record.total_uses,
            referrals=referrals,
        )
