"""
Test Suite: Simulated collaborator services

Tests:
1. DigiLocker OAuth, documents and records
2. UIDAI e-KYC
3. CAF generation and management
4. Plan conversion
"""

import asyncio
import sys
import os
from datetime import datetime, timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend.caf_service import CAFService, has_nested_value
from backend.conversion_service import ConversionService, EligibilityService, PlanCatalog
from backend.digilocker_service import DigiLockerService, get_document_issuer
from backend.errors import (
    ExpiredError,
    MismatchError,
    NotFoundError,
    RecordValidationError,
)
from backend.otp_service import ChallengeTable
from backend.outcome_policy import FixedOutcomePolicy
from backend.uidai_service import UIDAIService


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 5, 4, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


# ============================================================================
# DIGILOCKER
# ============================================================================

def test_digilocker_token_lifecycle():
    """Tokens last one hour and can be refreshed."""
    print("\nTEST 1: DigiLocker")
    clock = FakeClock()
    service = DigiLockerService(policy=FixedOutcomePolicy(), clock=clock)

    auth = asyncio.run(service.get_authorization_url())
    assert f"state={auth['state']}" in auth["auth_url"]

    with pytest.raises(RecordValidationError):
        asyncio.run(service.handle_authorization_callback(""))

    tokens = asyncio.run(service.handle_authorization_callback("code-1", auth["state"]))
    assert tokens["expires_in"] == 3600
    documents = asyncio.run(service.get_user_documents(tokens["access_token"]))
    assert {d["type"] for d in documents} == {"aadhaar", "pan", "driving_license", "passport"}

    refreshed = asyncio.run(service.refresh_token(tokens["refresh_token"]))
    with pytest.raises(NotFoundError):
        asyncio.run(service.get_user_documents(tokens["access_token"]))

    clock.advance(hours=1, seconds=1)
    with pytest.raises(ExpiredError):
        asyncio.run(service.download_document("PAN-001", refreshed["access_token"]))


def test_digilocker_documents_and_authenticity():
    """Fetched documents become DocumentRefs; authenticity is drawn from the policy."""
    service = DigiLockerService(policy=FixedOutcomePolicy(overrides={"digilocker.no_tampering": False}))
    refs = asyncio.run(service.authorize_and_fetch_documents("code"))
    assert refs[0].id == "AADHAAR-001"
    assert refs[0].size == 245 * 1024
    assert refs[0].mime_type == "application/pdf"

    result = asyncio.run(service.check_authenticity("PAN-001"))
    assert result["authentic"] is True
    assert result["tampering"] is True


def test_digilocker_verification_records():
    service = DigiLockerService(policy=FixedOutcomePolicy())
    results = asyncio.run(service.verify_documents(["pan", "voter_id", "birth_certificate"], user_id="u1"))
    assert [r["issuer"] for r in results] == [
        "Income Tax Department", "Election Commission", "Government Authority",
    ]
    assert get_document_issuer("passport") == "Passport Office"

    updated = asyncio.run(service.update_verification_record(results[0]["id"], {"status": "revoked", "id": 99}))
    assert updated["id"] == results[0]["id"]
    stats = asyncio.run(service.get_verification_stats())
    assert stats["total"] == 3 and stats["revoked"] == 1 and stats["verified"] == 2

    asyncio.run(service.delete_verification_record(results[1]["id"]))
    assert len(asyncio.run(service.get_verification_history("u1"))) == 2
    with pytest.raises(RecordValidationError):
        asyncio.run(service.get_verification_by_id(0))
    print("   PASSED: DigiLocker")


# ============================================================================
# UIDAI
# ============================================================================

def make_uidai(clock=None):
    table = ChallengeTable(
        ttl_minutes=10, cooldown_seconds=0, clock=clock or FakeClock(),
        code_generator=lambda length: "654321",
    )
    return UIDAIService(table=table, policy=FixedOutcomePolicy(), expose_debug_code=True)


def test_uidai_ekyc():
    """Strict Aadhaar check, OTP round trip and a masked PersonRecord."""
    print("\nTEST 2: UIDAI")
    service = make_uidai()
    assert service.validate_aadhaar("999999999999")["valid"] is False

    with pytest.raises(RecordValidationError):
        asyncio.run(service.initiate_ekyc("1234"))

    started = asyncio.run(service.initiate_ekyc("2345 6789 0123"))
    assert started["debug_code"] == "654321"
    assert started["expires_in"] == 600

    with pytest.raises(MismatchError):
        asyncio.run(service.verify_ekyc_otp("234567890123", "111111"))
    person = asyncio.run(service.verify_ekyc_otp("234567890123", "654321"))
    assert person.aadhaar_number == "XXXX-XXXX-0123"
    assert person.verification_level == "UIDAI_VERIFIED"
    assert person.name == "Rahul Kumar"


def test_uidai_records():
    service = make_uidai()
    saved = asyncio.run(service.save_ekyc_data({"user_id": "u1", "status": "verified"}))
    asyncio.run(service.save_ekyc_data({"user_id": "u2", "status": "failed"}))

    assert asyncio.run(service.get_ekyc_by_id(saved["id"]))["user_id"] == "u1"
    assert len(asyncio.run(service.get_ekyc_data("u1"))) == 1
    asyncio.run(service.update_ekyc_record(saved["id"], {"status": "failed"}))
    assert asyncio.run(service.get_verification_stats()) == {"total": 2, "failed": 2}

    asyncio.run(service.delete_ekyc_record(saved["id"]))
    with pytest.raises(NotFoundError):
        asyncio.run(service.get_ekyc_by_id(saved["id"]))
    print("   PASSED: UIDAI")


# ============================================================================
# CAF
# ============================================================================

def caf_form(customer_type="individual"):
    data = {
        "serviceType": "new_connection",
        "customerType": customer_type,
        "personalDetails": {
            "fullName": "Asha Rao", "dateOfBirth": "1990-01-01", "mobile": "9876543210",
            "email": "a@b.com", "aadhaarNumber": "123456789012", "panNumber": "ABCDE1234F",
        },
        "addressDetails": {"residentialAddress": "12 MG Road"},
        "serviceDetails": {"connectionType": "postpaid"},
    }
    if customer_type == "business":
        data["businessDetails"] = {"companyName": "Acme", "businessType": "llp",
                                   "gstin": "27ABCDE1234F1Z5", "businessAddress": "Plot 4"}
    return data


def test_caf_generation_rules():
    """Required fields are searched in nested sections and differ by customer type."""
    print("\nTEST 3: CAF")
    service = CAFService(policy=FixedOutcomePolicy(), clock=FakeClock())
    assert has_nested_value(caf_form(), "fullName") is True
    assert has_nested_value(caf_form(), "gstin") is False

    with pytest.raises(RecordValidationError):
        asyncio.run(service.generate("", caf_form()))
    with pytest.raises(RecordValidationError):
        asyncio.run(service.generate("u1", {**caf_form(), "customerType": "trust"}))

    with pytest.raises(RecordValidationError) as exc:
        asyncio.run(service.generate("u1", {**caf_form(), "customerType": "business"}))
    assert set(exc.value.details) == {"companyName", "businessType", "gstin", "businessAddress"}

    record = asyncio.run(service.generate("u1", caf_form("business"), caf_id="CAF-TEST-1"))
    assert record.status == "generated"
    assert record.document_url.endswith("/documents/CAF-TEST-1.pdf")
    assert "Business Details" in record.template["sections"]


def test_caf_lifecycle():
    """Submit stamps an application number; immutable fields survive updates."""
    clock = FakeClock()
    service = CAFService(policy=FixedOutcomePolicy(), clock=clock)
    record = asyncio.run(service.generate("u1", caf_form(), caf_id="CAF-1"))

    submitted = asyncio.run(service.submit(record.id))
    assert submitted.application_number == "APP202605041200000001"

    with pytest.raises(RecordValidationError):
        asyncio.run(service.update_status(record.id, "lost"))
    asyncio.run(service.update_status(record.id, "under-review", "checking"))

    updated = asyncio.run(service.update_record(record.id, {"caf_id": "OTHER", "comments": "ok"}))
    assert updated.caf_id == "CAF-1"
    assert updated.comments == "ok"

    download = asyncio.run(service.download("CAF-1"))
    assert download["expires_at"] == clock() + timedelta(minutes=30)
    preview = asyncio.run(service.preview(caf_form("business")))
    assert preview["estimated_pages"] == 3

    first = asyncio.run(service.validate_integrity("CAF-1"))
    second = asyncio.run(service.validate_integrity("CAF-1"))
    assert first["checksum"] == second["checksum"]

    assert [r.caf_id for r in service.search("asha")] == ["CAF-1"]
    assert service.search("nobody") == []
    stats = service.stats()
    assert stats["total"] == 1 and stats["under-review"] == 1
    assert stats["by_type"] == {"individual": 1}

    asyncio.run(service.delete(record.id))
    with pytest.raises(NotFoundError):
        service.get_by_caf_id("CAF-1")
    print("   PASSED: CAF")


# ============================================================================
# CONVERSION
# ============================================================================

def test_eligibility_rules():
    """Known numbers follow their account data; unknown numbers get the default customer."""
    print("\nTEST 4: Conversion")
    service = EligibilityService(policy=FixedOutcomePolicy())
    assert asyncio.run(service.check("9876543210")).eligible is True
    assert asyncio.run(service.check("7654321098")).reason == "Outstanding amount needs to be cleared"
    assert asyncio.run(service.check("9000000000")).customer_data["name"] == "Customer"
    with pytest.raises(RecordValidationError):
        asyncio.run(service.check("98765"))

    custom = EligibilityService(
        accounts={"9111111111": {"eligible": True, "account_age": 10, "outstanding_amount": 0}},
        policy=FixedOutcomePolicy(),
    )
    assert "90 days" in asyncio.run(custom.check("9111111111")).reason


def test_conversion_lifecycle():
    """Status progresses with age; completed conversions cannot be cancelled."""
    clock = FakeClock()
    policy = FixedOutcomePolicy()
    service = ConversionService(catalog=PlanCatalog(), policy=policy, clock=clock)

    with pytest.raises(NotFoundError):
        asyncio.run(service.process_conversion("9876543210", 9))
    ineligible = asyncio.run(service.eligibility.check("8765432109"))
    with pytest.raises(RecordValidationError):
        asyncio.run(service.process_conversion("8765432109", 1, ineligible))

    record = asyncio.run(service.process_conversion("9876543210", 3))
    assert service.get_status(record.conversion_id)["status"] == "processing"
    clock.advance(hours=3)
    assert service.get_status(record.conversion_id)["status"] == "in-progress"

    other = asyncio.run(service.process_conversion("9000000000", 1))
    cancelled = asyncio.run(service.cancel(other.conversion_id, "changed mind"))
    assert cancelled.status == "cancelled"

    clock.advance(hours=22)
    assert service.get_status(record.conversion_id)["status"] == "completed"
    with pytest.raises(RecordValidationError):
        asyncio.run(service.cancel(record.conversion_id))

    benefits = asyncio.run(service.calculate_benefits(4))
    assert benefits["security_deposit"] == 2598
    assert benefits["estimated_savings"] == 299

    stats = service.stats()
    assert stats["total"] == 2
    assert stats["by_plan"] == {"Business Postpaid": 1, "Starter Postpaid": 1}
    print("   PASSED: Conversion")


def test_formatted_mobile_is_canonicalized():
    """A +91 or spaced number is checked and stored as its ten digits."""
    service = ConversionService(catalog=PlanCatalog(), policy=FixedOutcomePolicy(), clock=FakeClock())
    assert asyncio.run(service.eligibility.check("+91 98765 43210")).eligible is True
    assert asyncio.run(service.eligibility.check("098765 43210")).eligible is True

    record = asyncio.run(service.process_conversion("+91-9876543210", 2))
    assert record.mobile_number == "9876543210"
    with pytest.raises(RecordValidationError):
        asyncio.run(service.process_conversion("+91 5876543210", 2))
