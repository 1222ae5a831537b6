"""
Step Sequencer - Current step index and skip-aware navigation.

The only state is the current index; every move is computed from
(form state, current index) and the wizard definition.
"""

import logging
from typing import Any, Dict, List, Optional

from config.wizard_definitions import NavigationMode, Step, WizardDefinition

logger = logging.getLogger(__name__)


class StepSequencer:
    def __init__(self, definition: WizardDefinition, start_index: int = 0):
        self.definition = definition
        self.steps = definition.steps
        self.mode = definition.navigation
        if not 0 <= start_index < len(self.steps):
            raise IndexError(f"Start index {start_index} out of range")
        self.current_index = start_index

    @property
    def current_step(self) -> Step:
        return self.steps[self.current_index]

    @property
    def last_index(self) -> int:
        return len(self.steps) - 1

    def visible_indices(self, state: Dict[str, Any]) -> List[int]:
        return [i for i, step in enumerate(self.steps) if not step.is_skipped(state)]

    def next_index(self, state: Dict[str, Any]) -> Optional[int]:
        for i in range(self.current_index + 1, len(self.steps)):
            if not self.steps[i].is_skipped(state):
                return i
        return None

    def previous_index(self, state: Dict[str, Any]) -> Optional[int]:
        for i in range(self.current_index - 1, -1, -1):
            if not self.steps[i].is_skipped(state):
                return i
        return None

    def is_terminal(self, state: Dict[str, Any]) -> bool:
        return self.next_index(state) is None

    def advance(self, state: Dict[str, Any]) -> int:
        """Move to the next non-skipped step. No-op at the terminal step."""
        target = self.next_index(state)
        if target is not None:
            self.current_index = target
        return self.current_index

    def retreat(self, state: Dict[str, Any]) -> int:
        """Move to the previous non-skipped step. Clamps at the first step."""
        target = self.previous_index(state)
        if target is not None:
            self.current_index = target
        return self.current_index

    def can_jump_to(self, index: int, state: Optional[Dict[str, Any]] = None) -> bool:
        if not 0 <= index < len(self.steps):
            return False
        if state is not None and self.steps[index].is_skipped(state):
            return False
        if self.mode == NavigationMode.BACKWARD_ONLY:
            return index <= self.current_index
        return index <= self.current_index + 1

    def jump_to(self, index: int, state: Optional[Dict[str, Any]] = None) -> bool:
        """Jump if the navigation mode allows it. Returns whether the move happened."""
        if not self.can_jump_to(index, state):
            logger.debug(
                f"[Sequencer] {self.definition.id}: refused jump {self.current_index} -> {index}"
            )
            return False
        self.current_index = index
        return True

    def progress(self, state: Dict[str, Any]) -> float:
        """Percentage of visible steps reached so far."""
        visible = self.visible_indices(state)
        reached = sum(1 for i in visible if i <= self.current_index)
        return round(reached / len(visible) * 100, 1) if visible else 0.0
