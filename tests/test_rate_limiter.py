"""
Tests for the per-operation rate limits on the anonymous endpoints
"""

from app.config import settings
from app.utils.rate_limiter import RATE_LIMITS, get_rate_limit


class TestRateLimits:

    def test_each_anonymous_operation_has_its_own_limit(self):
        assert get_rate_limit("booking_create") == "10/minute"
        assert get_rate_limit("token_response") == "20/minute"
        assert get_rate_limit("deposit_upload") == settings.deposit_rate_limit

    def test_unknown_operation_gets_default(self):
        assert get_rate_limit("lock_acquire") == "100/minute"
        assert set(RATE_LIMITS) == {"booking_create", "token_response", "deposit_upload"}
