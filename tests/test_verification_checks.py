"""
Test Suite: Weighted verification checks

Tests:
1. Scoring and classification thresholds
2. Individual check scorers under fixed outcomes
3. Check state machine, retries and input changes
4. Subject summary
"""

import asyncio
import sys
import os

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.kyc_schema import CheckStatus
from backend.errors import InvalidTransitionError
from backend.outcome_policy import FixedOutcomePolicy, RandomOutcomePolicy
from backend.verification_checks import (
    AUTHENTICITY_SUB_CHECKS,
    TrackedCheck,
    VerificationCheckService,
    classify,
    merge_authority_results,
    score_authenticity,
    score_face_matching,
    score_live_photo,
    score_territorial,
    weighted_score,
)

AUTHORITY_OK = {"authentic": True, "issuer_verified": True, "tampering": False}


def test_classification_thresholds():
    """90 and above accepted, 70 to 89 needs review, below 70 rejected."""
    print("\nTEST 1: Classification")
    assert classify(90) == CheckStatus.ACCEPTED
    assert classify(89) == CheckStatus.NEEDS_REVIEW
    assert classify(70) == CheckStatus.NEEDS_REVIEW
    assert classify(69) == CheckStatus.REJECTED
    assert classify(80, accept=80, review=50) == CheckStatus.ACCEPTED

    sub_checks = {"issuer_verified": True, "authentic": True, "no_tampering": True,
                  "expiry_valid": False, "territorial_valid": True}
    assert weighted_score(sub_checks, AUTHENTICITY_SUB_CHECKS) == 85
    print("   PASSED: Classification")


def test_authenticity_scoring():
    """Authority answers and policy draws combine into the weighted score."""
    print("\nTEST 2: Scorers")
    result = score_authenticity("u1", AUTHORITY_OK, FixedOutcomePolicy())
    assert result.score == 100
    assert result.status == CheckStatus.ACCEPTED

    tampered = score_authenticity("u1", {**AUTHORITY_OK, "tampering": True}, FixedOutcomePolicy())
    assert tampered.score == 80
    assert tampered.status == CheckStatus.NEEDS_REVIEW

    expired = score_authenticity(
        "u1", {"authentic": False, "issuer_verified": True},
        FixedOutcomePolicy(overrides={"authenticity.expiry_valid": False}),
    )
    assert expired.score == 60
    assert expired.status == CheckStatus.REJECTED


def test_territorial_scoring():
    """Exact matches pass without a draw; a disallowed cross-state document is rejected."""
    policy = FixedOutcomePolicy(succeed=False, overrides={"territorial.jurisdiction_valid": True,
                                                          "territorial.cross_boundary_allowed": True})
    same = {"territory": "South", "state": "Karnataka", "district": "Mysuru"}
    result = score_territorial("u1", same, dict(same), policy)
    assert result.score == 100
    assert "territorial.state_match" not in policy.draws

    cross = score_territorial(
        "u1", {"state": "Karnataka"}, {"state": "Kerala"},
        FixedOutcomePolicy(overrides={"territorial.cross_boundary_allowed": False}),
    )
    assert cross.status == CheckStatus.REJECTED
    assert "Cross-boundary" in cross.details["message"]


def test_face_matching_scoring():
    """Only a service error zeroes the confidence; otherwise the draw is the score."""
    top = score_face_matching("u1", FixedOutcomePolicy())
    assert top.score == 99
    assert top.status == CheckStatus.ACCEPTED

    gated = score_face_matching("u1", FixedOutcomePolicy(overrides={"face.no_error": False}))
    assert gated.score == 0
    assert gated.status == CheckStatus.REJECTED

    low = score_face_matching("u1", FixedOutcomePolicy(overrides={"face.confidence": 80}))
    assert low.status == CheckStatus.NEEDS_REVIEW


def test_face_quality_details_do_not_gate():
    """Failed photo quality sub-checks are reported, the match still scores."""
    result = score_face_matching("u1", FixedOutcomePolicy(overrides={"face.face_detected": False}))
    assert result.score == 99
    assert result.status == CheckStatus.ACCEPTED
    assert result.sub_checks["face_detected"] is False


def test_drawn_scores_never_reach_100():
    """Top-of-range draws stay below 100."""
    face = score_face_matching("u1", FixedOutcomePolicy())
    assert face.details["clarity"] == 99
    photo = score_live_photo("u1", FixedOutcomePolicy())
    assert max(photo.details["clarity"].values()) == 99
    assert photo.score == 99


def test_live_photo_scoring():
    """Clarity is the mean of four measurements; failed face checks reject."""
    policy = FixedOutcomePolicy(overrides={
        "live_photo.sharpness": 80, "live_photo.lighting": 90,
        "live_photo.contrast": 90, "live_photo.resolution": 100,
    })
    result = score_live_photo("u1", policy)
    assert result.score == 90
    assert result.status == CheckStatus.ACCEPTED

    blurred = score_live_photo("u1", FixedOutcomePolicy(overrides={"live_photo.no_blur": False}))
    assert blurred.status == CheckStatus.REJECTED
    assert "no_blur" in blurred.details["message"]
    print("   PASSED: Scorers")


def test_seeded_policy_is_reproducible():
    first = score_live_photo("u1", RandomOutcomePolicy(seed=7))
    second = score_live_photo("u1", RandomOutcomePolicy(seed=7))
    assert first.score == second.score
    assert first.sub_checks == second.sub_checks


def test_tracked_check_transitions():
    """pending -> checking -> outcome; only rejected or errored checks retry."""
    print("\nTEST 3: State machine")
    tracked = TrackedCheck(check="face_matching", subject="u1")
    tracked.start()
    assert tracked.status == CheckStatus.CHECKING
    with pytest.raises(InvalidTransitionError):
        tracked.start()

    tracked.fail("timeout")
    assert tracked.status == CheckStatus.ERROR
    tracked.retry()
    assert tracked.status == CheckStatus.PENDING
    assert tracked.attempt == 2
    assert tracked.error is None

    tracked.start()
    tracked.finish(score_face_matching("u1", FixedOutcomePolicy()))
    assert tracked.status == CheckStatus.ACCEPTED
    assert tracked.result.attempt == 2
    with pytest.raises(InvalidTransitionError):
        tracked.retry()
    print("   PASSED: State machine")


def test_service_runs_and_summarizes():
    """Accepted checks are not rerun; the summary is compliant once all four pass."""
    print("\nTEST 4: Summary")
    service = VerificationCheckService(policy=FixedOutcomePolicy())

    async def run_all():
        await service.check_authenticity("u1", AUTHORITY_OK)
        await service.check_face_matching("u1")
        await service.check_territorial("u1", {"state": "Goa"}, {"state": "Goa"})
        assert service.summary("u1")["complete"] is False
        await service.check_live_photo("u1")
        return await service.check_face_matching("u1")

    again = asyncio.run(run_all())
    assert again.attempt == 1

    summary = service.summary("u1")
    assert summary["complete"] is True
    assert summary["compliant"] is True
    assert set(summary["checks"]) == {"authenticity", "face_matching", "territorial", "live_photo"}
    assert service.summary("someone-else")["checks"] == {}
    print("   PASSED: Summary")


def test_missing_territory_is_rejected():
    service = VerificationCheckService(policy=FixedOutcomePolicy())
    tracked = asyncio.run(service.check_territorial("u2", {}, {}))
    assert tracked.status == CheckStatus.REJECTED
    assert service.summary("u2")["compliant"] is False


def test_changed_inputs_start_a_new_attempt():
    """An accepted verdict only holds for the inputs it was computed from."""
    service = VerificationCheckService(policy=FixedOutcomePolicy())

    async def run():
        first = await service.check_territorial("u3", {"state": "Goa"}, {"state": "Goa"})
        same = await service.check_territorial("u3", {"state": "Goa"}, {"state": "Goa"})
        assert same.attempt == 1
        return await service.check_territorial("u3", {"state": "Kerala"}, {"state": "Goa"})

    tracked = asyncio.run(run())
    assert tracked.attempt == 2
    assert tracked.result.details["document_territory"] == ", Kerala"

    running = TrackedCheck(check="territorial", subject="u4")
    running.start()
    with pytest.raises(InvalidTransitionError):
        running.rerun(("other",))


def test_unexpected_compute_error_is_recorded():
    """A crash inside a check leaves it in error, ready to retry."""
    service = VerificationCheckService(policy=FixedOutcomePolicy())

    async def compute():
        raise ValueError("scanner offline")

    tracked = asyncio.run(service._run("face_matching", "u5", compute))
    assert tracked.status == CheckStatus.ERROR
    assert tracked.error == "Unexpected error: scanner offline"

    retried = asyncio.run(service.check_face_matching("u5"))
    assert retried.status == CheckStatus.ACCEPTED
    assert retried.attempt == 2


def test_authority_results_merge():
    """Every document must verify; tampering on any one is carried through."""
    merged = merge_authority_results([
        {**AUTHORITY_OK, "verified_by": "DigiLocker"},
        {**AUTHORITY_OK, "tampering": True},
    ])
    assert merged == {"issuer_verified": True, "authentic": True, "tampering": True, "verified_by": "DigiLocker"}
    assert merge_authority_results([AUTHORITY_OK, {**AUTHORITY_OK, "authentic": False}])["authentic"] is False
    assert merge_authority_results([])["issuer_verified"] is False

    result = score_authenticity("u1", merged, FixedOutcomePolicy())
    assert result.status == CheckStatus.NEEDS_REVIEW
    assert result.details["message"] == "Document tampering detected"
    assert score_authenticity("u1", AUTHORITY_OK, FixedOutcomePolicy()).details["message"] is None
