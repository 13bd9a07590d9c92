"""
Tests for magic-link token validation
"""

from types import SimpleNamespace

import pytest

from app.config import settings
from app.exceptions import InvalidToken, TokenExpired
from app.services.token_validation import (
    grace_period_seconds,
    revalidate_token_before_operation,
    validate_booking_token,
    validate_token_expiration,
)

EXPIRES_AT = 1800000000


def _booking(token="tok-current", token_expires_at=EXPIRES_AT):
    return SimpleNamespace(id="b1", response_token=token, token_expires_at=token_expires_at)


class TestExpiration:

    def test_one_second_before_grace_ends_is_accepted(self):
        grace = grace_period_seconds()
        assert validate_token_expiration(EXPIRES_AT, now=EXPIRES_AT + grace - 1).valid

    def test_after_grace_is_rejected(self):
        grace = grace_period_seconds()
        result = validate_token_expiration(EXPIRES_AT, now=EXPIRES_AT + grace + 1)
        assert not result.valid
        assert "grace period" in result.reason

    def test_extended_grace_covers_slow_operations(self):
        now = EXPIRES_AT + settings.token_grace_period_seconds + 60
        assert not validate_token_expiration(EXPIRES_AT, now=now).valid
        assert validate_token_expiration(EXPIRES_AT, use_extended_grace_period=True, now=now).valid

    def test_missing_expiry_never_expires(self):
        assert validate_token_expiration(None, now=EXPIRES_AT * 2).valid

    def test_uses_clock_when_now_omitted(self, fake_clock):
        fake_clock.now = EXPIRES_AT + grace_period_seconds() + 1
        assert not validate_token_expiration(EXPIRES_AT).valid

    def test_grace_periods_come_from_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "token_grace_period_seconds", 120)
        monkeypatch.setattr(settings, "token_extended_grace_period_seconds", 600)
        assert grace_period_seconds() == 120
        assert grace_period_seconds(use_extended_grace_period=True) == 600


class TestBookingToken:

    def test_current_token_inside_window(self):
        validate_booking_token(_booking(), "tok-current", now=EXPIRES_AT)

    def test_replaced_token_is_invalid_even_if_not_expired(self):
        with pytest.raises(InvalidToken):
            validate_booking_token(_booking(), "tok-from-old-email", now=EXPIRES_AT - 3600)

    def test_empty_token_is_invalid(self):
        with pytest.raises(InvalidToken):
            validate_booking_token(_booking(), "", now=EXPIRES_AT)

    def test_expired_token_raises_token_expired(self):
        with pytest.raises(TokenExpired) as exc_info:
            validate_booking_token(_booking(), "tok-current", now=EXPIRES_AT + 3600)
        assert exc_info.value.status_code == 410
        assert exc_info.value.details["token_expires_at"] == EXPIRES_AT


class TestRevalidateBeforeOperation:

    def test_passes_inside_window(self):
        revalidate_token_before_operation(_booking(), "cancel", now=EXPIRES_AT + 10)

    def test_fails_once_window_lapsed_mid_flight(self):
        grace = grace_period_seconds(use_extended_grace_period=True)
        with pytest.raises(TokenExpired) as exc_info:
            revalidate_token_before_operation(
                _booking(), "deposit_upload", use_extended_grace_period=True, now=EXPIRES_AT + grace + 1
            )
        assert exc_info.value.details["operation"] == "deposit_upload"
        assert exc_info.value.details["grace_period_seconds"] == grace
        assert "deposit_upload" in exc_info.value.message
