# Config module
from .settings import settings, validate_settings
from .logging_config import setup_logging, mask_mobile, mask_aadhaar
from .kyc_schema import (
    SubmissionStatus,
    ValidationPolicy,
    CheckStatus,
    OTPState,
    DocumentRef,
    ValidationResult,
    SubmissionRecord,
    OTPChallenge,
    PersonRecord,
    Plan,
    EligibilityResult,
    CheckResult,
)
from .wizard_definitions import (
    Step,
    WizardDefinition,
    NavigationMode,
    WIZARD_DEFINITIONS,
    get_wizard_definition,
)

__all__ = [
    "settings",
    "validate_settings",
    "setup_logging",
    "mask_mobile",
    "mask_aadhaar",
    "SubmissionStatus",
    "ValidationPolicy",
    "CheckStatus",
    "OTPState",
    "DocumentRef",
    "ValidationResult",
    "SubmissionRecord",
    "OTPChallenge",
    "PersonRecord",
    "Plan",
    "EligibilityResult",
    "CheckResult",
    "Step",
    "WizardDefinition",
    "NavigationMode",
    "WIZARD_DEFINITIONS",
    "get_wizard_definition",
]
