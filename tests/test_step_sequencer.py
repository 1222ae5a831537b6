"""
Test Suite: Step sequencing and wizard definitions

Tests:
1. Skip predicate on the CAF business step
2. Clamping at both ends
3. jump_to in strict and backward-only modes
4. Definition integrity
"""

import sys
import os

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.wizard_definitions import (
    CAF_WIZARD,
    DOCUMENT_VERIFICATION_WIZARD,
    KYC_WIZARD,
    WIZARD_DEFINITIONS,
    Step,
    WizardDefinition,
)
from backend.step_sequencer import StepSequencer


def visited(sequencer, state):
    indices = [sequencer.current_index]
    while not sequencer.is_terminal(state):
        indices.append(sequencer.advance(state))
    return indices


def test_business_step_skipped_for_individual():
    """Advancing never lands on the business step for individuals and does for businesses."""
    print("\nTEST 1: Skip predicate")
    business_index = CAF_WIZARD.index_of("business")

    individual = visited(StepSequencer(CAF_WIZARD), {"customerType": "individual"})
    assert business_index not in individual
    assert individual[-1] == CAF_WIZARD.index_of("generate")

    business = visited(StepSequencer(CAF_WIZARD), {"customerType": "business"})
    assert business_index in business
    assert business == list(range(len(CAF_WIZARD.steps)))
    print("   PASSED: Skip predicate")


def test_retreat_skips_hidden_step():
    """Going back from declarations jumps over the hidden business step."""
    state = {"customerType": "individual"}
    sequencer = StepSequencer(CAF_WIZARD, start_index=CAF_WIZARD.index_of("declarations"))
    assert sequencer.retreat(state) == CAF_WIZARD.index_of("address")


def test_clamping_at_ends():
    """advance at the last step and retreat at the first are no-ops."""
    print("\nTEST 2: Clamping")
    sequencer = StepSequencer(KYC_WIZARD)
    assert sequencer.retreat({}) == 0

    sequencer = StepSequencer(KYC_WIZARD, start_index=KYC_WIZARD.index_of("review"))
    assert sequencer.is_terminal({})
    assert sequencer.advance({}) == sequencer.last_index
    print("   PASSED: Clamping")


def test_jump_strict_mode():
    """Strict mode allows any earlier step and the next one, nothing further."""
    print("\nTEST 3: jump_to")
    sequencer = StepSequencer(KYC_WIZARD, start_index=1)
    assert sequencer.jump_to(3) is False
    assert sequencer.current_index == 1
    assert sequencer.jump_to(2) is True
    assert sequencer.jump_to(0) is True
    assert sequencer.jump_to(99) is False


def test_jump_backward_only_mode():
    """Document verification only allows jumping to already reached steps."""
    sequencer = StepSequencer(DOCUMENT_VERIFICATION_WIZARD, start_index=3)
    assert sequencer.jump_to(4) is False
    assert sequencer.jump_to(1) is True
    assert sequencer.current_index == 1


def test_jump_refuses_skipped_step():
    sequencer = StepSequencer(CAF_WIZARD, start_index=CAF_WIZARD.index_of("address"))
    business_index = CAF_WIZARD.index_of("business")
    assert sequencer.jump_to(business_index, {"customerType": "individual"}) is False
    assert sequencer.jump_to(business_index, {"customerType": "business"}) is True


def test_progress_counts_visible_steps():
    sequencer = StepSequencer(CAF_WIZARD)
    assert sequencer.progress({"customerType": "individual"}) == 20.0
    assert sequencer.progress({"customerType": "business"}) == round(100 / 6, 1)


def test_definitions():
    """All six flows are registered and definitions reject bad step lists."""
    print("\nTEST 4: Definitions")
    assert set(WIZARD_DEFINITIONS) == {
        "kyc", "caf", "self_kyc", "ekyc", "otp_conversion", "document_verification",
    }
    data = CAF_WIZARD.to_dict()
    assert [s["id"] for s in data["steps"]][3] == "business"
    assert data["steps"][3]["conditional"] is True

    with pytest.raises(ValueError):
        WizardDefinition(id="empty", title="Empty", steps=())
    with pytest.raises(ValueError):
        WizardDefinition(id="dup", title="Dup", steps=(Step("a", "A"), Step("a", "A again")))
    with pytest.raises(IndexError):
        StepSequencer(KYC_WIZARD, start_index=5)
    print("   PASSED: Definitions")
