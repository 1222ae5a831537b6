"""
Wizard definitions for the six onboarding flows.

Each definition is a static, ordered list of steps. A step may name the form
section it edits and may carry a skip predicate that is evaluated against the
current form state. Step gates (the "can proceed" checks) are registered by
the wizard factory in backend.wizards.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from config.kyc_schema import ValidationPolicy


FormData = Dict[str, Any]
SkipPredicate = Callable[[FormData], bool]


class NavigationMode:
    STRICT = "strict"         # jump_to allowed up to current index + 1
    BACKWARD_ONLY = "backward"  # jump_to allowed only to already visited indices


@dataclass(frozen=True)
class Step:
    """One step of a wizard."""
    id: str
    title: str
    description: str = ""
    section: Optional[str] = None
    skip_predicate: Optional[SkipPredicate] = None

    def is_skipped(self, state: FormData) -> bool:
        return bool(self.skip_predicate and self.skip_predicate(state))


@dataclass(frozen=True)
class WizardDefinition:
    """Immutable descriptor of a wizard flow."""
    id: str
    title: str
    steps: Tuple[Step, ...]
    initial_state: Dict[str, Any] = field(default_factory=dict)
    validation_policy: ValidationPolicy = ValidationPolicy.ON_SUBMIT
    navigation: str = NavigationMode.STRICT

    def __post_init__(self):
        ids = [s.id for s in self.steps]
        if not ids:
            raise ValueError(f"Wizard '{self.id}' has no steps")
        if len(set(ids)) != len(ids):
            raise ValueError(f"Wizard '{self.id}' has duplicate step ids")

    @property
    def step_ids(self) -> List[str]:
        return [s.id for s in self.steps]

    def index_of(self, step_id: str) -> int:
        return self.step_ids.index(step_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "validation_policy": self.validation_policy.value,
            "navigation": self.navigation,
            "steps": [
                {
                    "id": s.id,
                    "title": s.title,
                    "description": s.description,
                    "section": s.section,
                    "conditional": s.skip_predicate is not None,
                }
                for s in self.steps
            ],
        }


def is_individual_customer(state: FormData) -> bool:
    return state.get("customerType") == "individual"


# ============================================================================
# INITIAL FORM STATES
# Every field read by a validator or a later step exists from the start.
# ============================================================================

KYC_INITIAL_STATE = {
    "personalDetails": {
        "fullName": "", "mobile": "", "email": "", "pan": "",
        "aadhaar": "", "dateOfBirth": "", "panDocument": [],
    },
    "businessDetails": {
        "companyName": "", "businessType": "", "gstin": "", "cin": "", "address": "",
        "gstDocument": [], "companyPanDocument": [], "addressProof": [],
    },
    "telecomUsage": {
        "intendedUse": [], "trafficType": "", "complianceForm": [],
    },
    "authorizedSignatory": {
        "name": "", "mobile": "", "email": "", "designation": "", "authorizationLetter": [],
    },
}

CAF_INITIAL_STATE = {
    "serviceType": "",
    "customerType": "individual",
    "personalDetails": {
        "fullName": "", "dateOfBirth": "", "gender": "", "mobile": "",
        "email": "", "aadhaarNumber": "", "panNumber": "",
    },
    "addressDetails": {
        "residentialAddress": "", "permanentAddress": "", "city": "", "state": "", "pincode": "",
    },
    "businessDetails": {
        "companyName": "", "businessType": "", "gstin": "", "cin": "",
        "authorizedSignatory": "", "businessAddress": "",
    },
    "serviceDetails": {
        "connectionType": "", "planSelected": "", "installationAddress": "",
    },
    "declarations": {
        "termsAccepted": False, "kycCompleted": False, "informationAccuracy": False,
    },
}

SELF_KYC_INITIAL_STATE = {
    "primaryMobile": "", "alternateMobile": "", "contactName": "", "relationship": "",
    "otp": "", "otpSent": False, "otpVerified": False,
    "otpState": "idle", "otpTarget": "", "verifiedTarget": "",
}

EKYC_INITIAL_STATE = {
    "consentGiven": False, "aadhaarNumber": "", "otp": "", "transactionId": "",
    "person": None, "otpState": "idle", "otpTarget": "", "verifiedTarget": "",
}

OTP_CONVERSION_INITIAL_STATE = {
    "mobile": "", "otp": "", "otpSent": False, "otpVerified": False,
    "otpState": "idle", "otpTarget": "", "verifiedTarget": "",
    "eligibility": None, "selectedPlan": None, "conversion": None,
}

DOCUMENT_VERIFICATION_INITIAL_STATE = {
    "method": "", "subject": "", "documents": [], "selectedDocuments": [],
    "documentTerritory": {}, "userTerritory": {}, "results": {},
}


# ============================================================================
# DEFINITIONS
# ============================================================================

KYC_WIZARD = WizardDefinition(
    id="kyc",
    title="Business KYC Submission",
    steps=(
        Step("personal", "Personal Details", "Applicant identity and contact details", "personalDetails"),
        Step("business", "Business Details", "Company registration details", "businessDetails"),
        Step("telecom", "Telecom Usage", "Intended use and traffic type", "telecomUsage"),
        Step("signatory", "Authorized Signatory", "Person authorized to sign", "authorizedSignatory"),
        Step("review", "Review & Submit", "Confirm and submit for review"),
    ),
    initial_state=KYC_INITIAL_STATE,
    validation_policy=ValidationPolicy.EAGER,
    navigation=NavigationMode.STRICT,
)

CAF_WIZARD = WizardDefinition(
    id="caf",
    title="Customer Application Form",
    steps=(
        Step("service", "Service Selection", "Service and customer type"),
        Step("personal", "Personal Details", "Applicant details", "personalDetails"),
        Step("address", "Address Information", "Residential and permanent address", "addressDetails"),
        Step(
            "business", "Business Details", "Company details for business customers",
            "businessDetails", skip_predicate=is_individual_customer,
        ),
        Step("declarations", "Declarations & Signatures", "Terms and declarations", "declarations"),
        Step("generate", "Generate CAF", "Generate the application form"),
    ),
    initial_state=CAF_INITIAL_STATE,
    validation_policy=ValidationPolicy.ON_SUBMIT,
    navigation=NavigationMode.STRICT,
)

SELF_KYC_WIZARD = WizardDefinition(
    id="self_kyc",
    title="Self-KYC",
    steps=(
        Step("mobile_setup", "Mobile Setup", "Primary and alternate mobile numbers"),
        Step("verification", "Verification", "Verify the alternate mobile by OTP"),
        Step("complete", "Complete", "Self-KYC registered"),
    ),
    initial_state=SELF_KYC_INITIAL_STATE,
)

EKYC_WIZARD = WizardDefinition(
    id="ekyc",
    title="Aadhaar e-KYC",
    steps=(
        Step("consent", "Consent", "Consent to Aadhaar based authentication"),
        Step("aadhaar", "Aadhaar Number", "Enter the 12 digit Aadhaar number"),
        Step("otp", "OTP Verification", "Enter the OTP sent to the Aadhaar-linked mobile"),
        Step("complete", "Complete", "Identity verified"),
    ),
    initial_state=EKYC_INITIAL_STATE,
)

OTP_CONVERSION_WIZARD = WizardDefinition(
    id="otp_conversion",
    title="Prepaid to Postpaid Conversion",
    steps=(
        Step("mobile", "Mobile Number", "Prepaid number to convert"),
        Step("verify", "Verify OTP", "Confirm ownership of the number"),
        Step("plan", "Select Plan", "Choose a postpaid plan"),
        Step("confirm", "Confirm", "Review and confirm the conversion"),
    ),
    initial_state=OTP_CONVERSION_INITIAL_STATE,
)

DOCUMENT_VERIFICATION_WIZARD = WizardDefinition(
    id="document_verification",
    title="Document Verification",
    steps=(
        Step("method", "Method", "Choose DigiLocker or manual upload"),
        Step("connect", "Connect", "Authorize the document repository"),
        Step("documents", "Documents", "Select documents to verify"),
        Step("authenticity", "Authenticity", "Issuer, tampering and expiry checks"),
        Step("face_matching", "Face Matching", "Compare document photo with the applicant"),
        Step("territorial", "Territorial", "Territorial boundary validation"),
        Step("live_photo", "Live Photo", "Live photo clarity validation"),
        Step("complete", "Complete", "Verification summary"),
    ),
    initial_state=DOCUMENT_VERIFICATION_INITIAL_STATE,
    navigation=NavigationMode.BACKWARD_ONLY,
)

WIZARD_DEFINITIONS = {
    d.id: d
    for d in (
        KYC_WIZARD,
        CAF_WIZARD,
        SELF_KYC_WIZARD,
        EKYC_WIZARD,
        OTP_CONVERSION_WIZARD,
        DOCUMENT_VERIFICATION_WIZARD,
    )
}


def get_wizard_definition(wizard_id: str) -> Optional[WizardDefinition]:
    return WIZARD_DEFINITIONS.get(wizard_id)
