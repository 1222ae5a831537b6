"""
Test Suite: Wizard engine

Tests:
1. Stale action results are dropped
2. Busy wizard refuses navigation and input
3. Failed actions record last_error and leave the form untouched
4. Gates, submit and sink delivery
5. Discard releases documents
6. Unexpected exceptions, gated jumps and rejected uploads
"""

import asyncio
import sys
import os

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.kyc_schema import ValidationResult
from config.wizard_definitions import KYC_WIZARD, SELF_KYC_WIZARD
from backend.errors import NotFoundError, RecordValidationError, TransientServiceError
from backend.wizard import ActionStatus, Wizard


def contact_name_gate(state):
    return {} if state.get("contactName") else {"contactName": "Contact person name is required"}


def test_stale_result_is_dropped():
    """A slow result from an older generation never overwrites a newer one."""
    print("\nTEST 1: Stale results")

    async def scenario():
        wizard = Wizard(SELF_KYC_WIZARD)
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "old"

        async def fast():
            return "new"

        def apply(state, result):
            state.update(None, "contactName", result)

        first = asyncio.create_task(wizard.run_action(slow, apply=apply))
        await asyncio.sleep(0)
        assert wizard.busy is True

        second = await wizard.run_action(fast, apply=apply)
        release.set()
        first_outcome = await first
        return wizard, first_outcome, second

    wizard, first, second = asyncio.run(scenario())
    assert second.status == ActionStatus.COMPLETED
    assert first.status == ActionStatus.STALE
    assert first.generation < second.generation
    assert wizard.state.get(None, "contactName") == "new"
    assert wizard.busy is False
    print("   PASSED: Stale results")


def test_busy_wizard_refuses_navigation_and_input():
    """While an action is pending advance/retreat/jump/update are refused."""
    print("\nTEST 2: Busy refusal")

    async def scenario():
        wizard = Wizard(SELF_KYC_WIZARD)
        release = asyncio.Event()

        async def pending():
            await release.wait()
            return None

        task = asyncio.create_task(wizard.run_action(pending))
        await asyncio.sleep(0)
        refused = (
            wizard.advance(),
            wizard.retreat(),
            wizard.jump_to(1),
            wizard.update(None, "contactName", "x"),
            wizard.can_proceed(),
        )
        release.set()
        await task
        return wizard, refused

    wizard, refused = asyncio.run(scenario())
    assert refused == (False, False, False, False, False)
    assert wizard.sequencer.current_index == 0
    assert wizard.state.get(None, "contactName") == ""
    assert wizard.advance() is True
    print("   PASSED: Busy refusal")


def test_failed_action_keeps_state():
    """A KYCError is caught, recorded and the form stays as it was."""
    print("\nTEST 3: Failure handling")
    wizard = Wizard(SELF_KYC_WIZARD)
    wizard.update(None, "contactName", "Ravi")

    async def failing():
        raise TransientServiceError("Network connection failed")

    outcome = asyncio.run(wizard.run_action(failing, apply=lambda s, r: s.update(None, "contactName", "lost")))
    assert outcome.status == ActionStatus.FAILED
    assert outcome.error.code == "SERVICE_UNAVAILABLE"
    assert wizard.last_error == "Network connection failed"
    assert wizard.last_error_code == "SERVICE_UNAVAILABLE"
    assert wizard.busy is False
    assert wizard.state.get(None, "contactName") == "Ravi"

    async def succeeding():
        return "ok"

    asyncio.run(wizard.run_action(succeeding))
    assert wizard.last_error is None
    print("   PASSED: Failure handling")


def test_gates_block_advance():
    """A failing gate keeps the step and exposes its errors."""
    print("\nTEST 4: Gates and submit")
    wizard = Wizard(SELF_KYC_WIZARD, step_gates={"mobile_setup": contact_name_gate})
    assert wizard.advance() is False
    assert wizard.step_errors == {"contactName": "Contact person name is required"}
    assert wizard.current_step.id == "mobile_setup"

    wizard.update(None, "contactName", "Ravi")
    assert wizard.advance() is True
    assert wizard.current_step.id == "verification"
    assert wizard.retreat() is True


def test_submit_validates_then_delivers():
    """Submit always validates; a valid form reaches the sink as a snapshot."""
    delivered = []

    def validator(state):
        errors = {} if state.get("contactName") else {"contactName": "required"}
        return ValidationResult.from_errors(errors)

    async def sink(snapshot):
        delivered.append(snapshot)
        return {"id": 1}

    wizard = Wizard(SELF_KYC_WIZARD, validator=validator, sink=sink)
    outcome = asyncio.run(wizard.submit())
    assert outcome.submitted is False
    assert outcome.validation.errors == {"contactName": "required"}
    assert delivered == []

    wizard.update(None, "contactName", "Ravi")
    outcome = asyncio.run(wizard.submit())
    assert outcome.submitted is True
    assert outcome.record == {"id": 1}
    assert wizard.submitted_record == {"id": 1}
    assert delivered[0]["contactName"] == "Ravi"


def test_submit_sink_failure():
    """A sink error is reported on the outcome and on the wizard."""
    def sink(snapshot):
        raise TransientServiceError("Network connection failed")

    wizard = Wizard(SELF_KYC_WIZARD, sink=sink)
    outcome = asyncio.run(wizard.submit())
    assert outcome.submitted is False
    assert outcome.error == "Network connection failed"
    assert wizard.last_error_code == "SERVICE_UNAVAILABLE"
    print("   PASSED: Gates and submit")


def test_discard_releases_documents():
    """Removing a document releases it; discarding releases the rest and freezes input."""
    print("\nTEST 5: Discard")
    wizard = Wizard(KYC_WIZARD)
    pan = wizard.attach_document("personalDetails", "panDocument", "pan.pdf", 1024, "application/pdf")
    gst = wizard.attach_document("businessDetails", "gstDocument", "gst.pdf", 1024, "application/pdf")
    wizard.attach_document("businessDetails", "addressProof", "bill.png", 1024, "image/png")

    assert wizard.remove_document("personalDetails", "panDocument", pan.id) is True
    assert wizard.remove_document("personalDetails", "panDocument", pan.id) is False
    assert wizard.state.get("personalDetails", "panDocument") == []
    assert wizard.documents.released == [pan.object_url]

    assert wizard.discard() == 2
    assert gst.object_url in wizard.documents.released
    assert wizard.documents.live_count == 0
    assert wizard.update("personalDetails", "fullName", "x") is False
    print("   PASSED: Discard")


def test_discard_drops_pending_action():
    """An action that finishes after discard is stale."""
    async def scenario():
        wizard = Wizard(SELF_KYC_WIZARD)
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "late"

        task = asyncio.create_task(wizard.run_action(slow, apply=lambda s, r: s.update(None, "contactName", r)))
        await asyncio.sleep(0)
        wizard.discard()
        release.set()
        return wizard, await task

    wizard, outcome = asyncio.run(scenario())
    assert outcome.status == ActionStatus.STALE
    assert wizard.state.get(None, "contactName") == ""


def test_unexpected_exception_is_recorded():
    """A non-KYC exception fails the action instead of leaving the wizard busy."""
    wizard = Wizard(SELF_KYC_WIZARD)
    wizard.update(None, "contactName", "Ravi")

    async def broken():
        raise ValueError("bad payload")

    outcome = asyncio.run(wizard.run_action(broken, apply=lambda s, r: s.update(None, "contactName", "lost")))
    assert outcome.status == ActionStatus.FAILED
    assert outcome.error.code == "INTERNAL_ERROR"
    assert "bad payload" in wizard.last_error
    assert wizard.busy is False
    assert wizard.state.get(None, "contactName") == "Ravi"
    assert wizard.update(None, "contactName", "Asha") is True


def test_failing_apply_clears_busy():
    """An error while applying a result is a failed action too."""
    wizard = Wizard(SELF_KYC_WIZARD)

    async def fine():
        return "x"

    def apply(state, result):
        raise KeyError("missing")

    outcome = asyncio.run(wizard.run_action(fine, apply=apply))
    assert outcome.status == ActionStatus.FAILED
    assert wizard.busy is False


def test_forward_jump_respects_gates():
    """jump_to cannot skip a step whose gate fails."""
    wizard = Wizard(SELF_KYC_WIZARD, step_gates={"mobile_setup": contact_name_gate})
    assert wizard.jump_to(1) is False
    assert wizard.current_step.id == "mobile_setup"
    assert wizard.step_errors == {"contactName": "Contact person name is required"}

    wizard.update(None, "contactName", "Ravi")
    assert wizard.jump_to(1) is True
    assert wizard.current_step.id == "verification"
    assert wizard.step_errors == {}
    assert wizard.jump_to(0) is True


def test_attach_to_unknown_section_creates_nothing():
    """A bad section is reported before an object URL is created."""
    wizard = Wizard(KYC_WIZARD)
    with pytest.raises(NotFoundError):
        wizard.attach_document("nope", "panDocument", "pan.pdf", 1024, "application/pdf")
    wizard.update("personalDetails", "fullName", "Asha")
    with pytest.raises(RecordValidationError):
        wizard.attach_document("personalDetails", "fullName", "pan.pdf", 1024, "application/pdf")
    assert wizard.documents.live_count == 0
    assert wizard.documents.released == []

    wizard.discard()
    assert wizard.attach_document("personalDetails", "panDocument", "pan.pdf", 1024, "application/pdf") is None
    assert wizard.documents.live_count == 0
