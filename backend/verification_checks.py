"""
Verification Checks - Weighted DoT compliance checks.

Each check draws a few independent boolean sub-checks from the outcome policy,
sums the weights of those that passed into a 0-100 score and classifies it:

    score >= ACCEPT_SCORE_THRESHOLD (90)  -> accepted
    score >= REVIEW_SCORE_THRESHOLD (70)  -> needs_review
    otherwise                             -> rejected

Every check is tracked through pending -> checking -> {accepted | needs_review |
rejected | error}. A rejected or errored check can be retried; the retry is a
fresh draw and is not guaranteed to converge.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Tuple

from config.kyc_schema import CheckResult, CheckStatus
from config.settings import settings
from backend.errors import InvalidTransitionError, KYCError, NotFoundError
from backend.form_validator import (
    LIVE_PHOTO_REQUIRED_CHECKS,
    validate_document_authenticity,
    validate_face_matching_result,
    validate_live_photo_clarity,
    validate_territorial_boundary,
)
from backend.outcome_policy import OutcomePolicy, default_policy, simulate_latency

logger = logging.getLogger(__name__)


# Sub-check name -> (weight, pass probability). A None probability means the
# value is supplied by the caller rather than drawn.
AUTHENTICITY_SUB_CHECKS = {
    "issuer_verified": (25, None),
    "authentic": (25, None),
    "no_tampering": (20, None),
    "expiry_valid": (15, 0.90),
    "territorial_valid": (15, 0.95),
}

TERRITORIAL_SUB_CHECKS = {
    "territory_match": (30, 0.90),
    "state_match": (30, 0.85),
    "district_match": (15, 0.70),
    "jurisdiction_valid": (25, 0.95),
}

# Exact matches on these keys pass without a draw
TERRITORIAL_MATCH_KEYS = {
    "territory_match": "territory",
    "state_match": "state",
    "district_match": "district",
}

# Only no_error gates the match; the others are reported as photo quality details
FACE_GATE_CHECK = "no_error"

FACE_QUALITY_CHECKS = {
    "no_error": 0.90,
    "face_detected": 0.95,
    "eyes_open": 0.90,
    "proper_lighting": 0.85,
}

LIVE_PHOTO_FACE_CHECKS = {
    "face_detected": 0.95,
    "eyes_visible": 0.90,
    "proper_lighting": 0.85,
    "no_blur": 0.80,
    "neutral_expression": 0.75,
    "single_face": 0.90,
}

CROSS_BOUNDARY_ALLOWED_PROBABILITY = 0.80

# Upper bound for every 0-100 style draw; a perfect 100 is never produced
MAX_DRAWN_SCORE = 99


def merge_authority_results(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """One authority answer for several documents: every one must verify, any tampering counts."""
    return {
        "issuer_verified": bool(results) and all(r.get("issuer_verified") for r in results),
        "authentic": bool(results) and all(r.get("authentic") for r in results),
        "tampering": any(r.get("tampering", False) for r in results),
        "verified_by": results[0].get("verified_by", "DigiLocker") if results else "DigiLocker",
    }


def weighted_score(sub_checks: Dict[str, bool], weights: Dict[str, Tuple[int, Optional[float]]]) -> int:
    """Sum of the weights of passed sub-checks, capped at 100."""
    return min(100, sum(weight for name, (weight, _) in weights.items() if sub_checks.get(name)))


def classify(score: int, accept: Optional[int] = None, review: Optional[int] = None) -> CheckStatus:
    accept = settings.ACCEPT_SCORE_THRESHOLD if accept is None else accept
    review = settings.REVIEW_SCORE_THRESHOLD if review is None else review
    if score >= accept:
        return CheckStatus.ACCEPTED
    if score >= review:
        return CheckStatus.NEEDS_REVIEW
    return CheckStatus.REJECTED


# ============================================================================
# SCORING (pure given a policy)
# ============================================================================

def score_authenticity(
    subject: str,
    authority_result: Dict[str, Any],
    policy: OutcomePolicy,
) -> CheckResult:
    """Combine the authority's answer with the DoT expiry and territorial draws."""
    sub_checks = {
        "issuer_verified": bool(authority_result.get("issuer_verified")),
        "authentic": bool(authority_result.get("authentic")),
        "no_tampering": not authority_result.get("tampering", False),
    }
    for name, (_, probability) in AUTHENTICITY_SUB_CHECKS.items():
        if probability is not None:
            sub_checks[name] = policy.chance(f"authenticity.{name}", probability)

    score = weighted_score(sub_checks, AUTHENTICITY_SUB_CHECKS)
    _, message = validate_document_authenticity(authority_result)
    return CheckResult(
        check="authenticity",
        subject=subject,
        status=classify(score),
        score=score,
        sub_checks=sub_checks,
        details={"verified_by": authority_result.get("verified_by", "DigiLocker"), "message": message},
    )


def score_territorial(
    subject: str,
    document_territory: Dict[str, str],
    user_territory: Dict[str, str],
    policy: OutcomePolicy,
) -> CheckResult:
    """Territorial boundary validation. A disallowed cross-state document is rejected outright."""
    sub_checks = {}
    for name, (_, probability) in TERRITORIAL_SUB_CHECKS.items():
        key = TERRITORIAL_MATCH_KEYS.get(name)
        if key and document_territory.get(key) and document_territory.get(key) == user_territory.get(key):
            sub_checks[name] = True
        else:
            sub_checks[name] = policy.chance(f"territorial.{name}", probability)

    cross_boundary_allowed = policy.chance("territorial.cross_boundary_allowed", CROSS_BOUNDARY_ALLOWED_PROBABILITY)
    boundary_ok, boundary_message, _ = validate_territorial_boundary(
        document_territory, user_territory, cross_boundary_allowed
    )

    score = weighted_score(sub_checks, TERRITORIAL_SUB_CHECKS)
    status = classify(score) if boundary_ok else CheckStatus.REJECTED
    return CheckResult(
        check="territorial",
        subject=subject,
        status=status,
        score=score,
        sub_checks=sub_checks,
        details={
            "document_territory": f"{document_territory.get('district', '')}, {document_territory.get('state', '')}",
            "user_territory": f"{user_territory.get('district', '')}, {user_territory.get('state', '')}",
            "cross_boundary_allowed": cross_boundary_allowed,
            "message": boundary_message,
        },
    )


def score_face_matching(subject: str, policy: OutcomePolicy) -> CheckResult:
    """Error gate, then a confidence draw in 75-99 used as the score."""
    face_records = {name: policy.chance(f"face.{name}", p) for name, p in FACE_QUALITY_CHECKS.items()}
    face_records["clarity"] = policy.randint("face.clarity", 80, MAX_DRAWN_SCORE)
    quality_ok = face_records[FACE_GATE_CHECK]

    confidence = policy.randint("face.confidence", 75, MAX_DRAWN_SCORE) if quality_ok else 0
    match = {
        "confidence": confidence,
        "status": "matched" if confidence >= settings.FACE_MATCH_MIN_CONFIDENCE else "not_matched",
        "face_records": face_records,
    }
    is_valid, message = validate_face_matching_result(match, settings.FACE_MATCH_MIN_CONFIDENCE)
    if not quality_ok:
        message = "Face matching service reported an error"

    return CheckResult(
        check="face_matching",
        subject=subject,
        status=classify(confidence) if is_valid else CheckStatus.REJECTED,
        score=confidence,
        sub_checks={name: bool(face_records[name]) for name in FACE_QUALITY_CHECKS},
        details={"match_status": match["status"], "clarity": face_records["clarity"], "message": message},
    )


def score_live_photo(subject: str, policy: OutcomePolicy) -> CheckResult:
    """Mean clarity of four measurements plus the required face checks."""
    clarity_details = {
        "sharpness": policy.randint("live_photo.sharpness", 75, MAX_DRAWN_SCORE),
        "lighting": policy.randint("live_photo.lighting", 75, MAX_DRAWN_SCORE),
        "contrast": policy.randint("live_photo.contrast", 75, MAX_DRAWN_SCORE),
        "resolution": policy.randint("live_photo.resolution", 85, MAX_DRAWN_SCORE),
    }
    clarity = sum(clarity_details.values()) // len(clarity_details)
    checks = {name: policy.chance(f"live_photo.{name}", p) for name, p in LIVE_PHOTO_FACE_CHECKS.items()}

    is_valid, message = validate_live_photo_clarity(
        {"clarity": {"score": clarity}, "checks": checks}, settings.LIVE_PHOTO_MIN_CLARITY
    )
    return CheckResult(
        check="live_photo",
        subject=subject,
        status=classify(clarity) if is_valid else CheckStatus.REJECTED,
        score=clarity,
        sub_checks=checks,
        details={
            "clarity": clarity_details,
            "required_checks": LIVE_PHOTO_REQUIRED_CHECKS,
            "message": message,
        },
    )


# ============================================================================
# TRACKING
# ============================================================================

@dataclass
class TrackedCheck:
    check: str
    subject: str
    status: CheckStatus = CheckStatus.PENDING
    attempt: int = 1
    result: Optional[CheckResult] = None
    error: Optional[str] = None
    inputs: Optional[Hashable] = None
    history: list = field(default_factory=list)

    def start(self) -> None:
        if self.status != CheckStatus.PENDING:
            raise InvalidTransitionError(f"Check {self.check} is {self.status.value}, not pending")
        self.status = CheckStatus.CHECKING

    def finish(self, result: CheckResult) -> None:
        result.attempt = self.attempt
        self.result = result
        self.status = result.status
        self.history.append(result.status)

    def fail(self, message: str) -> None:
        self.error = message
        self.status = CheckStatus.ERROR
        self.history.append(CheckStatus.ERROR)

    def retry(self) -> None:
        if self.status not in (CheckStatus.REJECTED, CheckStatus.ERROR):
            raise InvalidTransitionError(f"Only rejected or errored checks can be retried, {self.check} is {self.status.value}")
        self.attempt += 1
        self.status = CheckStatus.PENDING
        self.error = None

    def rerun(self, inputs: Optional[Hashable]) -> None:
        """The checked inputs changed, so the earlier verdict no longer applies."""
        if self.status == CheckStatus.CHECKING:
            raise InvalidTransitionError(f"Check {self.check} is already running")
        self.attempt += 1
        self.status = CheckStatus.PENDING
        self.result = None
        self.error = None
        self.inputs = inputs


class VerificationCheckService:
    """Runs and tracks the four document verification checks for each subject."""

    def __init__(self, policy: Optional[OutcomePolicy] = None):
        self.policy = policy or default_policy()
        self._checks: Dict[Tuple[str, str], TrackedCheck] = {}

    def get(self, check: str, subject: str) -> TrackedCheck:
        tracked = self._checks.get((check, subject))
        if tracked is None:
            raise NotFoundError(f"No {check} check for {subject}")
        return tracked

    def for_subject(self, subject: str) -> Dict[str, TrackedCheck]:
        return {name: t for (name, subj), t in self._checks.items() if subj == subject}

    async def _run(
        self,
        check: str,
        subject: str,
        compute: Callable[[], Awaitable[CheckResult]],
        inputs: Optional[Hashable] = None,
    ) -> TrackedCheck:
        """Run a check once per (check, subject, inputs); a changed input starts a new attempt."""
        tracked = self._checks.get((check, subject))
        if tracked is None:
            tracked = TrackedCheck(check=check, subject=subject, inputs=inputs)
            self._checks[(check, subject)] = tracked
        elif tracked.inputs != inputs:
            tracked.rerun(inputs)
        elif tracked.status in (CheckStatus.REJECTED, CheckStatus.ERROR):
            tracked.retry()
        elif tracked.status != CheckStatus.PENDING:
            return tracked

        tracked.start()
        try:
            result = await compute()
        except KYCError as e:
            tracked.fail(e.message)
            logger.warning(f"[Checks] {check} for {subject} errored: {e.message}")
            return tracked
        except Exception as e:
            tracked.fail(f"Unexpected error: {e}")
            logger.exception(f"[Checks] {check} for {subject} crashed")
            return tracked

        tracked.finish(result)
        logger.info(f"[Checks] {check} for {subject}: {result.status.value} ({result.score}) attempt {tracked.attempt}")
        return tracked

    async def check_authenticity(
        self,
        subject: str,
        authority_result: Dict[str, Any],
        inputs: Optional[Hashable] = None,
    ) -> TrackedCheck:
        async def compute():
            await simulate_latency(self.policy, "checks.authenticity", 500)
            return score_authenticity(subject, authority_result, self.policy)
        return await self._run("authenticity", subject, compute, inputs)

    async def check_territorial(
        self,
        subject: str,
        document_territory: Dict[str, str],
        user_territory: Dict[str, str],
        inputs: Optional[Hashable] = None,
    ) -> TrackedCheck:
        async def compute():
            await simulate_latency(self.policy, "checks.territorial", 1500)
            return score_territorial(subject, document_territory, user_territory, self.policy)
        if inputs is None:
            inputs = (tuple(sorted(document_territory.items())), tuple(sorted(user_territory.items())))
        return await self._run("territorial", subject, compute, inputs)

    async def check_face_matching(self, subject: str, inputs: Optional[Hashable] = None) -> TrackedCheck:
        async def compute():
            await simulate_latency(self.policy, "checks.face_matching", 3000)
            return score_face_matching(subject, self.policy)
        return await self._run("face_matching", subject, compute, inputs)

    async def check_live_photo(self, subject: str, inputs: Optional[Hashable] = None) -> TrackedCheck:
        async def compute():
            await simulate_latency(self.policy, "checks.live_photo", 2500)
            return score_live_photo(subject, self.policy)
        return await self._run("live_photo", subject, compute, inputs)

    def summary(self, subject: str) -> Dict[str, Any]:
        """Overall DoT compliance for a subject: every check run and none rejected."""
        checks = self.for_subject(subject)
        required = ["authenticity", "face_matching", "territorial", "live_photo"]
        complete = all(name in checks and checks[name].result is not None for name in required)
        compliant = complete and all(checks[name].status in (CheckStatus.ACCEPTED, CheckStatus.NEEDS_REVIEW) for name in required)
        needs_review = compliant and any(checks[name].status == CheckStatus.NEEDS_REVIEW for name in required)
        return {
            "subject": subject,
            "complete": complete,
            "compliant": compliant,
            "needs_review": needs_review,
            "checks": {
                name: {"status": t.status.value, "score": t.result.score if t.result else None, "attempt": t.attempt}
                for name, t in checks.items()
            },
        }
