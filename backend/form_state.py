"""
Form State - Single source of truth for wizard inputs.

Holds section -> field -> value. Values are strings, booleans, lists of
strings (multi-select) or lists of DocumentRef. Top-level fields such as
customerType are addressed with section=None.
"""

import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from config.kyc_schema import ValidationPolicy, ValidationResult

logger = logging.getLogger(__name__)

Observer = Callable[[Optional[str], str, Any], None]
FormValidator = Callable[[Dict[str, Any]], ValidationResult]


class FormState:
    def __init__(
        self,
        initial: Dict[str, Any],
        validator: Optional[FormValidator] = None,
        policy: ValidationPolicy = ValidationPolicy.ON_SUBMIT,
    ):
        self._data = copy.deepcopy(initial)
        # Keys that start out as mappings are sections and stay mappings
        self._sections = {key for key, value in initial.items() if isinstance(value, dict)}
        self._validator = validator
        self.policy = policy
        self._observers: List[Observer] = []
        self._lock = threading.Lock()
        self.validation: Optional[ValidationResult] = None

        if self.policy == ValidationPolicy.EAGER:
            self.validate()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, section: Optional[str], field: Optional[str] = None, default: Any = None) -> Any:
        if section is None:
            return self._data.get(field, default)
        values = self._data.get(section)
        if field is None:
            return values
        if not isinstance(values, dict):
            return default
        return values.get(field, default)

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy, safe to hand to a sink or a validator."""
        with self._lock:
            return copy.deepcopy(self._data)

    @property
    def errors(self) -> Dict[str, str]:
        return self.validation.errors if self.validation else {}

    def has_section(self, section: str) -> bool:
        return section in self._sections

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _check_top_level(self, field: str, value: Any) -> None:
        # Caller holds the lock
        if field in self._sections and not isinstance(value, dict):
            raise KeyError(f"{field} is a form section; update its fields instead")

    def update(self, section: Optional[str], field: str, value: Any) -> None:
        """
        Replace the value at section.field (or the top-level field when section is None).
        Unknown sections raise KeyError and nothing is written, as does replacing a
        whole section with something that is not a mapping.
        """
        with self._lock:
            if section is None:
                self._check_top_level(field, value)
                self._data[field] = value
            else:
                target = self._data.get(section)
                if not isinstance(target, dict):
                    raise KeyError(f"Unknown form section: {section}")
                target[field] = value

        self._after_write(section, field, value)

    def update_many(self, section: Optional[str], values: Dict[str, Any]) -> None:
        """Apply several fields of one section as a single write."""
        with self._lock:
            if section is None:
                for field, value in values.items():
                    self._check_top_level(field, value)
                self._data.update(values)
            else:
                target = self._data.get(section)
                if not isinstance(target, dict):
                    raise KeyError(f"Unknown form section: {section}")
                target.update(values)

        for field, value in values.items():
            self._notify(section, field, value)
        if self.policy == ValidationPolicy.EAGER:
            self.validate()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> ValidationResult:
        """Full re-validation of a snapshot. Without a validator the state is always valid."""
        if self._validator is None:
            self.validation = ValidationResult(is_valid=True)
        else:
            self.validation = self._validator(self.snapshot())
        return self.validation

    def _after_write(self, section: Optional[str], field: str, value: Any) -> None:
        self._notify(section, field, value)
        if self.policy == ValidationPolicy.EAGER:
            self.validate()

    def _notify(self, section: Optional[str], field: str, value: Any) -> None:
        for observer in list(self._observers):
            observer(section, field, value)
