"""
Wizard Engine - One parameterized engine for every onboarding flow.

A Wizard couples:
- a WizardDefinition (ordered steps, validation policy, navigation mode)
- a FormState (with the flow's validator)
- a StepSequencer
- per-step gates deciding whether the current step may be left
- a submission sink

Async step actions run through run_action(). Each call gets a generation
number; a result that arrives after a newer action was started (a retry or a
resend) is dropped instead of overwriting the form. While the latest action is
pending the wizard is busy and refuses navigation and input.
"""

import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from config.kyc_schema import DocumentRef, ValidationResult, utcnow
from config.wizard_definitions import WizardDefinition
from backend.documents import DocumentRegistry
from backend.errors import KYCError, NotFoundError, RecordValidationError, UnexpectedError
from backend.form_state import FormState, FormValidator
from backend.step_sequencer import StepSequencer

logger = logging.getLogger(__name__)

StepGate = Callable[[Dict[str, Any]], Dict[str, str]]
ApplyResult = Callable[[FormState, Any], None]
Sink = Callable[[Dict[str, Any]], Any]


class ActionStatus:
    COMPLETED = "completed"
    FAILED = "failed"
    STALE = "stale"


@dataclass
class ActionOutcome:
    status: str
    generation: int
    result: Any = None
    error: Optional[KYCError] = None

    @property
    def ok(self) -> bool:
        return self.status == ActionStatus.COMPLETED


@dataclass
class SubmitOutcome:
    submitted: bool
    validation: ValidationResult
    record: Any = None
    error: Optional[str] = None


@dataclass
class Wizard:
    definition: WizardDefinition
    validator: Optional[FormValidator] = None
    step_gates: Dict[str, StepGate] = field(default_factory=dict)
    sink: Optional[Sink] = None
    documents: DocumentRegistry = field(default_factory=DocumentRegistry)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    clock: Callable[[], datetime] = utcnow

    def __post_init__(self):
        self.state = FormState(
            self.definition.initial_state,
            validator=self.validator,
            policy=self.definition.validation_policy,
        )
        self.sequencer = StepSequencer(self.definition)
        self.generation = 0
        self.busy = False
        self.last_error: Optional[str] = None
        self.last_error_code: Optional[str] = None
        self.step_errors: Dict[str, str] = {}
        self.submitted_record: Any = None
        self.discarded = False
        self.last_activity = self.clock()

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def touch(self) -> None:
        self.last_activity = self.clock()

    def update(self, section: Optional[str], field_name: str, value: Any) -> bool:
        if self.busy or self.discarded:
            return False
        self.state.update(section, field_name, value)
        self.touch()
        return True

    def attach_document(
        self, section: str, field_name: str, name: str, size: int, mime_type: str = ""
    ) -> Optional[DocumentRef]:
        """
        Register an upload and append it to the document list at section.field.

        Returns None while busy or discarded. An unknown section or a field that
        does not hold a document list raises before any object URL is created.
        """
        if self.busy or self.discarded:
            return None
        if not self.state.has_section(section):
            raise NotFoundError(f"Unknown form section: {section}")
        existing = self.state.get(section, field_name)
        if existing not in (None, "") and not isinstance(existing, list):
            raise RecordValidationError(f"{section}.{field_name} does not hold documents")

        doc = self.documents.create(name, size, mime_type)
        try:
            self.state.update(section, field_name, list(existing or []) + [doc])
        except Exception:
            self.documents.release(doc.id)
            raise
        self.touch()
        return doc

    def remove_document(self, section: str, field_name: str, doc_id: str) -> bool:
        if self.busy or self.discarded:
            return False
        current = list(self.state.get(section, field_name) or [])
        remaining = [d for d in current if d.id != doc_id]
        if len(remaining) == len(current):
            return False
        self.documents.release(doc_id)
        self.state.update(section, field_name, remaining)
        self.touch()
        return True

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    @property
    def current_step(self):
        return self.sequencer.current_step

    def gate_errors(self, step_id: Optional[str] = None) -> Dict[str, str]:
        gate = self.step_gates.get(step_id or self.current_step.id)
        if gate is None:
            return {}
        return gate(self.state.snapshot())

    def can_proceed(self) -> bool:
        return not self.busy and not self.gate_errors()

    def advance(self) -> bool:
        if self.busy or self.discarded:
            return False
        errors = self.gate_errors()
        self.step_errors = errors
        if errors:
            logger.info(f"[Wizard] {self.definition.id}: step '{self.current_step.id}' blocked by {len(errors)} error(s)")
            return False
        self.touch()
        before = self.sequencer.current_index
        return self.sequencer.advance(self.state.snapshot()) != before

    def retreat(self) -> bool:
        if self.busy or self.discarded:
            return False
        self.touch()
        before = self.sequencer.current_index
        return self.sequencer.retreat(self.state.snapshot()) != before

    def jump_to(self, index: int) -> bool:
        """Move to a step. Jumping forward requires every visible step passed over to pass its gate."""
        if self.busy or self.discarded:
            return False
        snapshot = self.state.snapshot()
        current = self.sequencer.current_index
        if index > current:
            for skipped in self.sequencer.visible_indices(snapshot):
                if not current <= skipped < index:
                    continue
                step_id = self.definition.steps[skipped].id
                errors = self.gate_errors(step_id)
                if errors:
                    self.step_errors = errors
                    logger.info(f"[Wizard] {self.definition.id}: jump to {index} blocked at step '{step_id}'")
                    return False
        self.touch()
        moved = self.sequencer.jump_to(index, snapshot)
        if moved:
            self.step_errors = {}
        return moved

    # ------------------------------------------------------------------
    # Async actions
    # ------------------------------------------------------------------

    async def run_action(
        self,
        action: Callable[[], Awaitable[Any]],
        apply: Optional[ApplyResult] = None,
    ) -> ActionOutcome:
        """
        Run an async collaborator call for the current step.

        Any exception is caught here, recorded as last_error and leaves the form
        untouched; exceptions outside the KYCError taxonomy are wrapped in
        UnexpectedError. apply() only runs for a result of the latest generation,
        and busy is cleared whenever the latest generation finishes.
        """
        self.generation += 1
        generation = self.generation
        self.busy = True
        self.last_error = None
        self.last_error_code = None
        self.touch()

        try:
            result = await action()
            if generation != self.generation:
                logger.info(f"[Wizard] {self.definition.id}: dropped stale result from generation {generation}")
                return ActionOutcome(ActionStatus.STALE, generation, result=result)
            if apply is not None:
                apply(self.state, result)
            return ActionOutcome(ActionStatus.COMPLETED, generation, result=result)
        except KYCError as e:
            return self._action_failed(generation, e)
        except Exception as e:
            logger.exception(f"[Wizard] {self.definition.id}: action raised unexpectedly")
            return self._action_failed(generation, UnexpectedError(f"Unexpected error: {e}"))
        finally:
            if generation == self.generation:
                self.busy = False

    def _action_failed(self, generation: int, error: KYCError) -> ActionOutcome:
        if generation != self.generation:
            logger.info(f"[Wizard] {self.definition.id}: dropped stale failure from generation {generation}")
            return ActionOutcome(ActionStatus.STALE, generation, error=error)
        self.last_error = error.message
        self.last_error_code = error.code
        logger.warning(f"[Wizard] {self.definition.id}: action failed ({error.code}): {error.message}")
        return ActionOutcome(ActionStatus.FAILED, generation, error=error)

    # ------------------------------------------------------------------
    # Submission and teardown
    # ------------------------------------------------------------------

    async def submit(self) -> SubmitOutcome:
        """Validate (regardless of policy) and hand a snapshot to the sink."""
        validation = self.state.validate()
        if not validation.is_valid:
            return SubmitOutcome(False, validation)
        if self.sink is None:
            return SubmitOutcome(True, validation, record=self.state.snapshot())

        snapshot = self.state.snapshot()

        async def deliver():
            value = self.sink(snapshot)
            if inspect.isawaitable(value):
                value = await value
            return value

        outcome = await self.run_action(deliver)
        if not outcome.ok:
            return SubmitOutcome(False, validation, error=self.last_error)
        self.submitted_record = outcome.result
        logger.info(f"[Wizard] {self.definition.id}: submitted")
        return SubmitOutcome(True, validation, record=outcome.result)

    def discard(self) -> int:
        """Release every document and invalidate pending actions."""
        self.discarded = True
        self.generation += 1
        self.busy = False
        released = self.documents.release_all()
        logger.info(f"[Wizard] {self.definition.id}: discarded, released {released} document(s)")
        return released

    def to_dict(self) -> dict:
        snapshot = self.state.snapshot()
        return {
            "id": self.id,
            "wizard": self.definition.id,
            "current_step": self.current_step.id,
            "current_index": self.sequencer.current_index,
            "progress": self.sequencer.progress(snapshot),
            "busy": self.busy,
            "errors": self.state.errors,
            "step_errors": self.step_errors,
            "last_error": self.last_error,
        }
