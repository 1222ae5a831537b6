"""
Service container - Builds every collaborator for one application instance.

All services share one outcome policy and one clock so a test can make the
whole backend deterministic by passing a FixedOutcomePolicy and a fake clock.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from config.kyc_schema import utcnow
from config.settings import settings
from backend.caf_service import CAFService
from backend.conversion_service import ConversionService, EligibilityService, PlanCatalog
from backend.digilocker_service import DigiLockerService
from backend.otp_service import ChallengeTable, VerificationService
from backend.outcome_policy import OutcomePolicy, default_policy
from backend.submission_store import SubmissionStore
from backend.uidai_service import UIDAIService
from backend.verification_checks import VerificationCheckService
from backend.wizard import Wizard

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    policy: OutcomePolicy = field(default_factory=default_policy)
    clock: Callable[[], datetime] = utcnow
    otp_cooldown_seconds: Optional[int] = None
    session_timeout_minutes: Optional[int] = None

    def __post_init__(self):
        self.otp = VerificationService(
            table=ChallengeTable(clock=self.clock, cooldown_seconds=self.otp_cooldown_seconds),
            policy=self.policy,
        )
        self.uidai = UIDAIService(
            table=ChallengeTable(
                ttl_minutes=settings.EKYC_OTP_TTL_MINUTES,
                cooldown_seconds=0,
                clock=self.clock,
            ),
            policy=self.policy,
        )
        self.digilocker = DigiLockerService(policy=self.policy, clock=self.clock)
        self.checks = VerificationCheckService(policy=self.policy)
        self.submissions = SubmissionStore(policy=self.policy, clock=self.clock)
        self.caf = CAFService(policy=self.policy, clock=self.clock)
        self.plans = PlanCatalog()
        self.eligibility = EligibilityService(policy=self.policy)
        self.conversions = ConversionService(
            catalog=self.plans,
            eligibility=self.eligibility,
            policy=self.policy,
            clock=self.clock,
        )
        self.wizards: Dict[str, Wizard] = {}
        if self.session_timeout_minutes is None:
            self.session_timeout_minutes = settings.SESSION_TIMEOUT_MINUTES
        logger.info(f"[Container] Services ready ({type(self.policy).__name__})")

    def register_wizard(self, wizard: Wizard) -> Wizard:
        self.prune()
        wizard.clock = self.clock
        wizard.touch()
        self.wizards[wizard.id] = wizard
        return wizard

    def prune(self) -> int:
        """Drop submitted, discarded and idle wizards, plus expired OTP challenges."""
        now = self.clock()
        timeout = timedelta(minutes=self.session_timeout_minutes)
        finished = [
            wizard_id for wizard_id, wizard in self.wizards.items()
            if wizard.submitted_record is not None or wizard.discarded or now - wizard.last_activity > timeout
        ]
        for wizard_id in finished:
            self.drop_wizard(wizard_id)
        if finished:
            logger.info(f"[Container] Pruned {len(finished)} wizard session(s)")
        self.otp.table.purge_expired()
        self.uidai.table.purge_expired()
        return len(finished)

    def drop_wizard(self, wizard_id: str) -> Optional[Wizard]:
        wizard = self.wizards.pop(wizard_id, None)
        if wizard is not None:
            wizard.discard()
        return wizard

    def close(self) -> None:
        """Discard every live wizard, releasing their documents."""
        for wizard_id in list(self.wizards):
            self.drop_wizard(wizard_id)
