"""
Test Suite: OTP challenges and mobile verification

Tests:
1. Mismatch / max attempts / not found lifecycle
2. Lazy expiry
3. Overwrite on resend, resend cooldown and purging
4. VerificationService send/verify
"""

import asyncio
import sys
import os
from datetime import datetime, timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend.errors import (
    ExpiredError,
    MaxAttemptsExceededError,
    MismatchError,
    NotFoundError,
    RateLimitError,
    RecordValidationError,
)
from backend.otp_service import ChallengeTable, VerificationService, generate_numeric_code, normalize_mobile
from backend.outcome_policy import FixedOutcomePolicy


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 15, 10, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_table(clock=None, cooldown_seconds=0, codes=None):
    codes = iter(codes or ["111111", "222222", "333333"])
    return ChallengeTable(
        ttl_minutes=5,
        max_attempts=3,
        code_length=6,
        cooldown_seconds=cooldown_seconds,
        clock=clock or FakeClock(),
        code_generator=lambda length: next(codes),
    )


def test_otp_lifecycle():
    """Wrong code leaves attempts=1; three misses delete the challenge; a fourth verify is NotFound."""
    print("\nTEST 1: OTP lifecycle")
    table = make_table()
    table.issue("9876543210")

    with pytest.raises(MismatchError) as exc:
        table.verify("9876543210", "000000")
    assert exc.value.remaining_attempts == 2
    assert table.get("9876543210").attempts == 1

    with pytest.raises(MismatchError):
        table.verify("9876543210", "000000")
    with pytest.raises(MaxAttemptsExceededError):
        table.verify("9876543210", "000000")
    assert table.get("9876543210") is None

    with pytest.raises(NotFoundError):
        table.verify("9876543210", "111111")
    print("   PASSED: OTP lifecycle")


def test_otp_success_consumes_challenge():
    """A correct code returns the challenge and removes it."""
    table = make_table()
    table.issue("9876543210", purpose="self-kyc")
    challenge = table.verify("9876543210", " 111111 ")
    assert challenge.purpose == "self-kyc"
    assert len(table) == 0


def test_otp_expiry():
    """An expired challenge fails with Expired even with the right code."""
    print("\nTEST 2: OTP expiry")
    clock = FakeClock()
    table = make_table(clock=clock)
    table.issue("9876543210")
    clock.advance(minutes=5, seconds=1)

    with pytest.raises(ExpiredError):
        table.verify("9876543210", "111111")
    assert table.get("9876543210") is None
    print("   PASSED: OTP expiry")


def test_new_send_overwrites_prior_challenge():
    """At most one live challenge per target; attempts reset on resend."""
    table = make_table()
    table.issue("9876543210")
    with pytest.raises(MismatchError):
        table.verify("9876543210", "000000")

    table.issue("9876543210")
    assert len(table) == 1
    assert table.get("9876543210").attempts == 0
    with pytest.raises(MismatchError):
        table.verify("9876543210", "111111")
    assert table.verify("9876543210", "222222").code == "222222"


def test_resend_cooldown():
    """A second send inside the cooldown is rate limited."""
    print("\nTEST 3: Resend cooldown")
    clock = FakeClock()
    table = make_table(clock=clock, cooldown_seconds=60)
    table.issue("9876543210")

    clock.advance(seconds=20)
    with pytest.raises(RateLimitError) as exc:
        table.issue("9876543210")
    assert exc.value.retry_after == 40

    clock.advance(seconds=40)
    table.issue("9876543210")
    print("   PASSED: Resend cooldown")


def test_table_forgets_old_sends():
    """Cooldown entries lapse once elapsed and expired challenges can be purged."""
    clock = FakeClock()
    table = make_table(clock=clock, cooldown_seconds=60, codes=["111111", "222222", "333333", "444444"])
    table.issue("9876543210")
    table.issue("9123456780")
    assert len(table._last_sent) == 2

    clock.advance(seconds=61)
    table.issue("9000000000")
    assert set(table._last_sent) == {"9000000000"}

    assert table.purge_expired() == 0
    clock.advance(minutes=6)
    assert table.purge_expired() == 3
    assert len(table) == 0
    assert table._last_sent == {}
    with pytest.raises(NotFoundError):
        table.verify("9876543210", "111111")


def test_generate_numeric_code():
    """Codes have the requested length and no leading zero."""
    for _ in range(50):
        code = generate_numeric_code(6)
        assert len(code) == 6 and code.isdigit() and code[0] != "0"


def test_verification_service_send_and_verify():
    """Service normalizes the number, exposes the debug code in demo mode and verifies it."""
    print("\nTEST 4: VerificationService")
    clock = FakeClock()
    service = VerificationService(
        table=make_table(clock=clock),
        policy=FixedOutcomePolicy(),
        expose_debug_code=True,
    )

    sent = asyncio.run(service.send_otp("+91 9876543210", "conversion"))
    assert sent.target == "9876543210"
    assert sent.debug_code == "111111"
    assert "98765****0" in sent.message
    assert sent.expires_in == 300

    clock.advance(seconds=3)
    verified = asyncio.run(service.verify_otp("9876543210", sent.debug_code))
    assert verified.success is True
    assert verified.purpose == "conversion"
    assert verified.time_to_verify_ms == 3000
    print("   PASSED: VerificationService")


def test_verification_service_rejects_bad_mobile():
    """Invalid numbers are rejected before a challenge is created."""
    service = VerificationService(table=make_table(), policy=FixedOutcomePolicy(), expose_debug_code=False)
    with pytest.raises(RecordValidationError):
        asyncio.run(service.send_otp("12345"))
    assert len(service.table) == 0


def test_debug_code_hidden_when_disabled():
    service = VerificationService(table=make_table(), policy=FixedOutcomePolicy(), expose_debug_code=False)
    sent = asyncio.run(service.send_otp("9876543210"))
    assert sent.debug_code is None
    assert service.cancel("9876543210") is True
    assert normalize_mobile("09876543210") == "9876543210"
