"""
Tests for referral code generation, validation and usage.
"""

import pytest

from core.errors import InvalidReferralCode, NotFound
from referrals.codes import ReferralCodeService, code_suffix, format_code
from referrals.models import CodeStatus


class TestFormat:
    """Tests for the code format."""

    @pytest.mark.parametrize("name, suffix", [
        ("Ayesha Khan", "AY"),
        ("ravi", "RA"),
        ("J", "JX"),
        ("", "DR"),
        (None, "DR"),
        ("  ", "DR"),
    ])
    def test_suffix(self, name, suffix):
        """Test the two-letter suffix taken from the first name."""
        assert code_suffix(name) == suffix

    def test_format(self):
        """Test the zero-padded sequence number."""
        assert format_code(1, "Ayesha") == "GRP-SDS001-AY"
        assert format_code(1234, None) == "GRP-SDS1234-DR"


class TestGenerate:
    """Tests for code generation."""

    def test_codes_are_sequential(self, clock):
        """Test that each driver gets the next number in sequence."""
        service = ReferralCodeService(clock=clock)

        first = service.generate("driver-a", "Ayesha")
        second = service.generate("driver-b", "Sunil")

        assert first.code == "GRP-SDS001-AY"
        assert second.code == "GRP-SDS002-SU"
        assert first.created_at == clock.now

    def test_generate_is_idempotent_per_driver(self):
        """Test that a driver keeps the same permanent code."""
        service = ReferralCodeService()

        first = service.generate("driver-a", "Ayesha")
        again = service.generate("driver-a", "Someone Else")

        assert again == first
        assert service.get_for_driver("driver-a").code == first.code

    def test_driver_without_code(self):
        """Test that asking for a missing code raises NotFound."""
        with pytest.raises(NotFound):
            ReferralCodeService().get_for_driver("driver-z")


class TestValidate:
    """Tests for code validation."""

    def test_valid_code(self):
        """Test that an active code validates with its owner."""
        service = ReferralCodeService()
        code = service.generate("driver-a", "Ayesha").code

        validation = service.validate(code)

        assert validation.valid
        assert validation.driver_id == "driver-a"

    def test_bad_format(self):
        """Test that malformed codes are reported without raising."""
        validation = ReferralCodeService().validate("HELLO")

        assert not validation.valid
        assert "format" in validation.reason

    def test_unknown_code(self):
        """Test that well-formed but unknown codes are invalid."""
        assert not ReferralCodeService().validate("GRP-SDS999-ZZ").valid

    def test_inactive_code_cannot_be_used(self):
        """Test that deactivated codes are refused."""
        service = ReferralCodeService()
        code = service.generate("driver-a", "Ayesha").code
        service.set_status(code, CodeStatus.INACTIVE)

        assert not service.validate(code).valid
        assert service.list_active() == []
        with pytest.raises(InvalidReferralCode):
            service.mark_used(code)


class TestUsage:
    """Tests for use counts and usage history."""

    def test_mark_used_counts(self):
        """Test that each use increments the counter."""
        service = ReferralCodeService()
        code = service.generate("driver-a", "Ayesha").code

        service.mark_used(code)
        service.mark_used(code)

        assert service.get(code).total_uses == 2

    def test_usage_lists_referrals(self, engine, refer):
        """Test that usage history shows the referrals made with the code."""
        refer("driver-a", "driver-b")
        refer("driver-a", "driver-c")
        code = engine.codes.get_for_driver("driver-a").code

        usage = engine.codes.usage(code)

        assert usage.total_uses == 2
        assert {r.referee_id for r in usage.referrals} == {"driver-b", "driver-c"}
