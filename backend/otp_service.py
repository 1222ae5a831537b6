"""
OTP Service - One-time-password challenges for mobile and Aadhaar verification.

ChallengeTable holds at most one live challenge per target and enforces the
verify contract:

1. no challenge for the target          -> NotFoundError
2. now > expires_at                     -> ExpiredError, challenge deleted
3. attempts is incremented
4. code matches                         -> success, challenge deleted
5. attempts reached max_attempts        -> MaxAttemptsExceededError, challenge deleted
6. otherwise                            -> MismatchError, challenge kept

Expiry is checked lazily at verify time; nothing sweeps the table.
"""

import logging
import secrets
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from config.kyc_schema import OTPChallenge, OTPSendResult, OTPVerifyResult, utcnow
from config.logging_config import mask_mobile
from config.settings import settings
from backend.errors import (
    ExpiredError,
    MaxAttemptsExceededError,
    MismatchError,
    NotFoundError,
    RateLimitError,
    RecordValidationError,
)
from backend.form_validator import validate_mobile
from backend.outcome_policy import OutcomePolicy, default_policy, simulate_latency

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def generate_numeric_code(length: int) -> str:
    """Random numeric code without a leading zero."""
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


class ChallengeTable:
    """Thread-safe table of live OTP challenges keyed by target."""

    def __init__(
        self,
        ttl_minutes: Optional[int] = None,
        max_attempts: Optional[int] = None,
        code_length: Optional[int] = None,
        cooldown_seconds: Optional[int] = None,
        clock: Clock = utcnow,
        code_generator: Optional[Callable[[int], str]] = None,
    ):
        self.ttl_minutes = ttl_minutes if ttl_minutes is not None else settings.OTP_TTL_MINUTES
        self.max_attempts = max_attempts if max_attempts is not None else settings.OTP_MAX_ATTEMPTS
        self.code_length = code_length if code_length is not None else settings.OTP_LENGTH
        self.cooldown_seconds = (
            cooldown_seconds if cooldown_seconds is not None else settings.OTP_RESEND_COOLDOWN_SECONDS
        )
        self.clock = clock
        self.code_generator = code_generator or generate_numeric_code
        self._challenges: Dict[str, OTPChallenge] = {}
        self._last_sent: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def issue(self, target: str, purpose: str = "registration", ttl_minutes: Optional[int] = None) -> OTPChallenge:
        """Create a challenge, overwriting any prior one for the target."""
        with self._lock:
            now = self.clock()
            self._forget_cooldowns(now)
            last = self._last_sent.get(target)
            if last is not None and self.cooldown_seconds > 0:
                elapsed = (now - last).total_seconds()
                if elapsed < self.cooldown_seconds:
                    retry_after = int(self.cooldown_seconds - elapsed) or 1
                    raise RateLimitError(f"Please wait {retry_after} seconds before requesting a new OTP", retry_after)

            ttl = ttl_minutes if ttl_minutes is not None else self.ttl_minutes
            challenge = OTPChallenge(
                target=target,
                code=self.code_generator(self.code_length),
                purpose=purpose,
                expires_at=now + timedelta(minutes=ttl),
                max_attempts=self.max_attempts,
                generated_at=now,
            )
            self._challenges[target] = challenge
            self._last_sent[target] = now
            return challenge

    def verify(self, target: str, candidate: str) -> OTPChallenge:
        """Check a candidate code. Returns the consumed challenge on success."""
        with self._lock:
            challenge = self._challenges.get(target)
            if challenge is None:
                raise NotFoundError("OTP not found or expired. Please request a new OTP.")

            now = self.clock()
            if now > challenge.expires_at:
                del self._challenges[target]
                raise ExpiredError("OTP has expired. Please request a new OTP.")

            challenge.attempts += 1
            challenge.last_attempt_at = now

            if str(candidate).strip() == challenge.code:
                del self._challenges[target]
                return challenge

            if challenge.attempts >= challenge.max_attempts:
                del self._challenges[target]
                raise MaxAttemptsExceededError("Maximum verification attempts exceeded. Please request a new OTP.")

            remaining = challenge.max_attempts - challenge.attempts
            raise MismatchError(f"Invalid OTP. {remaining} attempts remaining.", remaining)

    def get(self, target: str) -> Optional[OTPChallenge]:
        return self._challenges.get(target)

    def _forget_cooldowns(self, now: datetime) -> None:
        # Caller holds the lock
        stale = [t for t, sent in self._last_sent.items() if (now - sent).total_seconds() >= self.cooldown_seconds]
        for target in stale:
            del self._last_sent[target]

    def purge_expired(self) -> int:
        """Drop expired challenges and elapsed cooldowns. Returns the number of challenges dropped."""
        with self._lock:
            now = self.clock()
            self._forget_cooldowns(now)
            expired = [t for t, c in self._challenges.items() if now > c.expires_at]
            for target in expired:
                del self._challenges[target]
        if expired:
            logger.info(f"[OTP] Purged {len(expired)} expired challenges")
        return len(expired)

    def discard(self, target: str) -> bool:
        with self._lock:
            self._last_sent.pop(target, None)
            return self._challenges.pop(target, None) is not None

    def __len__(self) -> int:
        return len(self._challenges)


def normalize_mobile(mobile: str) -> str:
    """Last ten digits of the number, dropping +91 / 0 prefixes."""
    digits = "".join(ch for ch in str(mobile or "") if ch in "0123456789")
    return digits[-10:]


class VerificationService:
    """Mobile OTP delivery and verification with simulated SMS latency."""

    def __init__(
        self,
        table: Optional[ChallengeTable] = None,
        policy: Optional[OutcomePolicy] = None,
        expose_debug_code: Optional[bool] = None,
    ):
        self.table = table or ChallengeTable()
        self.policy = policy or default_policy()
        self.expose_debug_code = (
            expose_debug_code if expose_debug_code is not None
            else settings.DEMO_MODE and settings.EXPOSE_DEBUG_OTP
        )

    async def send_otp(self, target: str, purpose: str = "registration") -> OTPSendResult:
        is_valid, message = validate_mobile(target)
        if not is_valid:
            raise RecordValidationError(message, [message])

        mobile = normalize_mobile(target)
        await simulate_latency(self.policy, "otp.send", 1000)
        challenge = self.table.issue(mobile, purpose)

        logger.info(f"[OTP] Sent {purpose} OTP to {mask_mobile(mobile)}")
        return OTPSendResult(
            challenge_id=f"otp_{uuid.uuid4().hex[:12]}",
            target=mobile,
            message=f"OTP sent successfully to {mask_mobile(mobile)}",
            expires_in=self.table.ttl_minutes * 60,
            can_resend_in=self.table.cooldown_seconds,
            debug_code=challenge.code if self.expose_debug_code else None,
        )

    async def verify_otp(self, target: str, code: str) -> OTPVerifyResult:
        mobile = normalize_mobile(target)
        await simulate_latency(self.policy, "otp.verify", 800)
        try:
            challenge = self.table.verify(mobile, code)
        except (MismatchError, MaxAttemptsExceededError, ExpiredError, NotFoundError) as e:
            logger.info(f"[OTP] Verification failed for {mask_mobile(mobile)}: {e.code}")
            raise

        elapsed = self.table.clock() - challenge.generated_at
        logger.info(f"[OTP] Verified {mask_mobile(mobile)} after {challenge.attempts} attempt(s)")
        return OTPVerifyResult(
            target=mobile,
            purpose=challenge.purpose,
            verified_at=self.table.clock(),
            time_to_verify_ms=int(elapsed.total_seconds() * 1000),
        )

    async def resend_otp(self, target: str, purpose: str = "registration") -> OTPSendResult:
        """A new challenge with attempts reset. Subject to the resend cooldown."""
        return await self.send_otp(target, purpose)

    def cancel(self, target: str) -> bool:
        return self.table.discard(normalize_mobile(target))
