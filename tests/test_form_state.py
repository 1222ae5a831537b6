"""
Test Suite: Form state and document registry

Tests:
1. Reads and writes, top-level fields, unknown sections
2. Eager vs on-submit validation
3. Observers
4. Document allocation and release
"""

import sys
import os

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.kyc_schema import ValidationPolicy
from config.wizard_definitions import CAF_INITIAL_STATE, KYC_INITIAL_STATE
from backend.documents import RELEASED_HISTORY, DocumentRegistry
from backend.errors import RecordValidationError
from backend.form_state import FormState
from backend.form_validator import validate_kyc_form


def test_reads_and_writes():
    """Section fields and top-level fields are addressable; unknown sections raise KeyError."""
    print("\nTEST 1: Reads and writes")
    state = FormState(CAF_INITIAL_STATE)
    state.update("personalDetails", "fullName", "Asha")
    state.update(None, "customerType", "business")

    assert state.get("personalDetails", "fullName") == "Asha"
    assert state.get(None, "customerType") == "business"
    assert state.get("personalDetails")["mobile"] == ""
    assert state.get("missing", "field", "default") == "default"

    with pytest.raises(KeyError):
        state.update("missing", "field", "x")
    assert CAF_INITIAL_STATE["personalDetails"]["fullName"] == ""
    print("   PASSED: Reads and writes")


def test_snapshot_is_independent():
    state = FormState(KYC_INITIAL_STATE)
    snapshot = state.snapshot()
    snapshot["personalDetails"]["fullName"] = "Changed"
    assert state.get("personalDetails", "fullName") == ""


def test_sections_cannot_be_replaced_by_scalars():
    """A whole section can be swapped for another mapping but never for a scalar."""
    state = FormState(CAF_INITIAL_STATE)
    with pytest.raises(KeyError):
        state.update(None, "personalDetails", "x")
    with pytest.raises(KeyError):
        state.update_many(None, {"serviceType": "postpaid", "addressDetails": None})

    assert state.get("personalDetails", "mobile") == ""
    assert state.get(None, "serviceType") == ""
    state.update("personalDetails", "fullName", "Asha")
    assert state.get("personalDetails", "fullName") == "Asha"

    state.update(None, "addressDetails", {"city": "Pune"})
    assert state.get("addressDetails", "city") == "Pune"
    state.update(None, "serviceType", None)
    assert state.get(None, "serviceType") is None


def test_eager_validation():
    """Eager policy validates at start and after every write."""
    print("\nTEST 2: Validation policy")
    state = FormState(KYC_INITIAL_STATE, validator=validate_kyc_form, policy=ValidationPolicy.EAGER)
    assert "personalDetails.fullName" in state.errors

    state.update("personalDetails", "fullName", "Asha")
    assert "personalDetails.fullName" not in state.errors

    state.update_many("personalDetails", {"pan": "bad", "email": "bad"})
    assert state.errors["personalDetails.pan"] == "Invalid PAN format"
    assert state.errors["personalDetails.email"] == "Invalid email format"


def test_on_submit_validation():
    """On-submit policy only validates when asked."""
    state = FormState(KYC_INITIAL_STATE, validator=validate_kyc_form, policy=ValidationPolicy.ON_SUBMIT)
    state.update("personalDetails", "pan", "bad")
    assert state.errors == {}
    assert state.validate().is_valid is False
    assert "personalDetails.pan" in state.errors
    print("   PASSED: Validation policy")


def test_observers():
    """Observers see every write until they unsubscribe."""
    print("\nTEST 3: Observers")
    seen = []
    state = FormState(CAF_INITIAL_STATE)
    unsubscribe = state.subscribe(lambda section, field, value: seen.append((section, field, value)))

    state.update(None, "serviceType", "new_connection")
    state.update_many("declarations", {"termsAccepted": True, "kycCompleted": True})
    unsubscribe()
    state.update(None, "serviceType", "upgrade_service")

    assert seen == [
        (None, "serviceType", "new_connection"),
        ("declarations", "termsAccepted", True),
        ("declarations", "kycCompleted", True),
    ]
    print("   PASSED: Observers")


def test_document_registry():
    """Uploads get an object URL that is released exactly once."""
    print("\nTEST 4: Documents")
    registry = DocumentRegistry(allowed_types=[".pdf", ".png"], max_size_mb=1)
    doc = registry.create("pan.pdf", 2048, "application/pdf")
    assert doc.object_url == f"blob:kyc/{doc.id}"
    assert registry.is_live(doc)

    assert registry.release(doc) is True
    assert registry.release(doc.id) is False
    assert registry.released == [doc.object_url]

    with pytest.raises(RecordValidationError) as exc:
        registry.create("huge.exe", 5 * 1024 * 1024, "application/octet-stream")
    assert len(exc.value.details) == 2
    assert registry.live_count == 0
    print("   PASSED: Documents")


def test_document_registry_context_manager():
    with DocumentRegistry(allowed_types=[".pdf"]) as registry:
        first = registry.create("a.pdf", 10)
        second = registry.create("b.pdf", 10)
        assert registry.live_count == 2
    assert registry.live_count == 0
    assert set(registry.released) == {first.object_url, second.object_url}


def test_released_history_is_bounded():
    """Only the most recent object URLs are remembered; the count keeps the total."""
    registry = DocumentRegistry(allowed_types=[".pdf"])
    docs = [registry.create(f"{i}.pdf", 10) for i in range(RELEASED_HISTORY + 5)]
    assert registry.release_all() == len(docs)
    assert len(registry.released) == RELEASED_HISTORY
    assert registry.released[-1] == docs[-1].object_url
    assert registry.released_count == len(docs)
