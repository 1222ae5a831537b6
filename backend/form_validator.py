"""
Form Validator - Field and form validation for telecom KYC onboarding.

Provides:
- Format validators for Indian identifiers (PAN, GSTIN, CIN, Aadhaar, mobile, PIN)
- Document presence checks
- Complete form validators for the KYC, Self-KYC and CAF flows
- Result validators for collaborator responses (UIDAI, DigiLocker, face/photo checks)

Every form validator evaluates all of its rules and reports every violation
at once; nothing here raises or short-circuits on the first error.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config.kyc_schema import ValidationResult


PAN_PATTERN = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]{1}$", re.ASCII)
GSTIN_PATTERN = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z]{1}[1-9A-Z]{1}Z[0-9A-Z]{1}$", re.ASCII)
CIN_PATTERN = re.compile(r"^[LU]\d{5}[A-Z]{2}\d{4}[A-Z]{3}\d{6}$", re.ASCII)
AADHAAR_PATTERN = re.compile(r"^\d{12}$", re.ASCII)
MOBILE_PATTERN = re.compile(r"^(\+91[-\s]?)?[0]?(91)?[6789]\d{9}$", re.ASCII)
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$", re.ASCII)
OTP_PATTERN = re.compile(r"^\d{6}$", re.ASCII)
PIN_PATTERN = re.compile(r"^\d{6}$", re.ASCII)
CONTACT_NAME_PATTERN = re.compile(r"^[a-zA-Z\s.]+$", re.ASCII)

_WHITESPACE = re.compile(r"\s")
_NON_DIGIT = re.compile(r"\D", re.ASCII)

VALID_RELATIONSHIPS = [
    "father", "mother", "spouse", "son", "daughter",
    "brother", "sister", "friend", "colleague", "business_partner",
]
VALID_SERVICE_TYPES = ["new_connection", "plan_change", "additional_service", "upgrade_service"]
VALID_CONNECTION_TYPES = ["postpaid", "prepaid", "hybrid"]

# Document field -> (owning section, message)
KYC_REQUIRED_DOCUMENTS = {
    "panDocument": ("personalDetails", "PAN card document is required"),
    "gstDocument": ("businessDetails", "GST certificate is required"),
    "companyPanDocument": ("businessDetails", "Company PAN document is required"),
    "addressProof": ("businessDetails", "Address proof is required"),
    "complianceForm": ("telecomUsage", "Telecom compliance form is required"),
    "authorizationLetter": ("authorizedSignatory", "Authorization letter is required"),
}


# ============================================================================
# FIELD VALIDATORS
# ============================================================================

def validate_required(value: Any) -> bool:
    """Non-null and, once stringified and trimmed, non-empty."""
    return value is not None and str(value).strip() != ""


def validate_pan(pan: str) -> Tuple[bool, Optional[str]]:
    """
    Validate India PAN number.
    Format: AAAAA9999A (5 letters, 4 digits, 1 letter)
    """
    if not validate_required(pan):
        return False, "PAN is required"
    if not PAN_PATTERN.fullmatch(str(pan)):
        return False, "Invalid PAN format"
    return True, None


def validate_gstin(gstin: str) -> Tuple[bool, Optional[str]]:
    """Validate a 15-character GST identification number."""
    if not validate_required(gstin):
        return False, "GSTIN is required"
    if not GSTIN_PATTERN.fullmatch(str(gstin)):
        return False, "Invalid GSTIN format"
    return True, None


def validate_cin(cin: Optional[str]) -> Tuple[bool, Optional[str]]:
    """CIN is optional; when present it must be a listed/unlisted company number."""
    if not cin:
        return True, None
    if not CIN_PATTERN.fullmatch(str(cin)):
        return False, "Invalid CIN format"
    return True, None


def validate_aadhaar(aadhaar: str) -> Tuple[bool, Optional[str]]:
    """
    Validate India Aadhaar number.
    Format: 12 digits, whitespace anywhere is ignored.
    """
    if not validate_required(aadhaar):
        return False, "Aadhaar number is required"
    if not AADHAAR_PATTERN.fullmatch(_WHITESPACE.sub("", str(aadhaar))):
        return False, "Invalid Aadhaar number"
    return True, None


def validate_aadhaar_strict(aadhaar: str) -> Tuple[bool, Optional[str]]:
    """
    Aadhaar check used before talking to UIDAI.
    Adds a rejection of numbers made of one repeated digit.
    """
    digits = _WHITESPACE.sub("", str(aadhaar or ""))
    if not AADHAAR_PATTERN.fullmatch(digits):
        return False, "Aadhaar number must be 12 digits"
    if len(set(digits)) == 1:
        return False, "Invalid Aadhaar number format"
    return True, None


def validate_mobile(mobile: str) -> Tuple[bool, Optional[str]]:
    """Indian mobile, optional +91 / 0 / 91 prefix, starting with 6-9."""
    if not validate_required(mobile):
        return False, "Mobile number is required"
    if not MOBILE_PATTERN.fullmatch(_WHITESPACE.sub("", str(mobile))):
        return False, "Invalid mobile number format"
    return True, None


def validate_email(email: str) -> Tuple[bool, Optional[str]]:
    if not validate_required(email):
        return False, "Email is required"
    if not EMAIL_PATTERN.fullmatch(str(email)):
        return False, "Invalid email format"
    return True, None


def validate_otp(otp: str) -> Tuple[bool, Optional[str]]:
    """Exactly six digits, whitespace ignored."""
    if not otp:
        return False, "OTP is required"
    if not OTP_PATTERN.fullmatch(_WHITESPACE.sub("", str(otp))):
        return False, "Please enter a valid 6-digit OTP"
    return True, None


def validate_pin_code(pin: str) -> Tuple[bool, Optional[str]]:
    if not validate_required(pin):
        return False, "PIN code is required"
    if not PIN_PATTERN.fullmatch(str(pin)):
        return False, "PIN code must be 6 digits"
    return True, None


def validate_alternate_mobile(mobile: str, primary_mobile: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Self-KYC alternate number: must be a valid mobile and must differ from the primary.
    The same-as-primary message is distinct from the format messages.
    """
    if not mobile or str(mobile).strip() == "":
        return False, "Alternate mobile number is required"

    clean_mobile = _NON_DIGIT.sub("", str(mobile))
    clean_primary = _NON_DIGIT.sub("", str(primary_mobile)) if primary_mobile else ""

    if len(clean_mobile) != 10:
        return False, "Mobile number must be exactly 10 digits"

    is_valid, _ = validate_mobile(mobile)
    if not is_valid:
        return False, "Please enter a valid Indian mobile number starting with 6, 7, 8, or 9"

    if clean_mobile == clean_primary:
        return False, "Alternate mobile cannot be same as primary mobile number"

    return True, None


def validate_relationship(relationship: str) -> Tuple[bool, Optional[str]]:
    if not validate_required(relationship):
        return False, "Please select your relationship with the contact person"
    if str(relationship).lower() not in VALID_RELATIONSHIPS:
        return False, "Please select a valid relationship from the dropdown"
    return True, None


def validate_contact_name(name: str) -> Tuple[bool, Optional[str]]:
    if not validate_required(name):
        return False, "Contact person name is required"
    name = str(name).strip()
    if len(name) < 2:
        return False, "Contact name must be at least 2 characters long"
    if not CONTACT_NAME_PATTERN.fullmatch(name):
        return False, "Contact name can only contain letters, spaces, and dots"
    return True, None


def validate_service_type(service_type: str) -> Tuple[bool, Optional[str]]:
    if not service_type:
        return False, "Service type is required"
    if service_type not in VALID_SERVICE_TYPES:
        return False, "Invalid service type"
    return True, None


def validate_connection_type(connection_type: str) -> Tuple[bool, Optional[str]]:
    if not connection_type:
        return False, "Connection type is required"
    if connection_type not in VALID_CONNECTION_TYPES:
        return False, "Invalid connection type"
    return True, None


def validate_file_type(file_name: str, mime_type: str, allowed_types: Iterable[str]) -> Tuple[bool, Optional[str]]:
    """Accept when either the extension or the MIME type matches an entry like ".pdf"."""
    extension = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    mime = (mime_type or "").lower()
    allowed = [t.replace(".", "").lower() for t in allowed_types]

    if any(t in mime or extension == t for t in allowed):
        return True, None
    return False, f"File format not accepted. Use: {', '.join(allowed)}"


def validate_file_size(size_bytes: int, max_size_mb: float) -> Tuple[bool, Optional[str]]:
    if size_bytes > max_size_mb * 1024 * 1024:
        return False, f"File too large. Maximum size is {max_size_mb}MB"
    return True, None


# ============================================================================
# FORMATTING HELPERS
# ============================================================================

def format_mobile_number(mobile: str) -> str:
    """Digits only, limited to 10."""
    return _NON_DIGIT.sub("", mobile or "")[:10]


def format_mobile_for_display(mobile: str, mask_digits: int = 4) -> str:
    """9876543210 -> 987-654-**** ; anything not 10 digits is returned unchanged."""
    cleaned = _NON_DIGIT.sub("", mobile or "")
    if len(cleaned) != 10:
        return mobile
    masked = cleaned[:-mask_digits] + "*" * mask_digits
    return f"{masked[:3]}-{masked[3:6]}-{masked[6:]}"


# ============================================================================
# FORM VALIDATORS
# ============================================================================

def _check(
    errors: Dict[str, str],
    key: str,
    value: Any,
    required_message: str,
    validator=None,
) -> None:
    """Required check, then an optional format validator. Records at most one error per key."""
    if not validate_required(value):
        errors[key] = required_message
        return
    if validator is not None:
        is_valid, message = validator(value)
        if not is_valid:
            errors[key] = message


def _has_documents(value: Any) -> bool:
    return bool(value) and len(value) > 0


def _prefixed(prefix: str, errors: Dict[str, str]) -> Dict[str, str]:
    return {f"{prefix}.{key}": message for key, message in errors.items()}


def validate_personal_details(personal: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    _check(errors, "fullName", personal.get("fullName"), "Full name is required")
    _check(errors, "mobile", personal.get("mobile"), "Mobile number is required", validate_mobile)
    _check(errors, "email", personal.get("email"), "Email is required", validate_email)
    _check(errors, "pan", personal.get("pan"), "PAN is required", validate_pan)
    _check(errors, "aadhaar", personal.get("aadhaar"), "Aadhaar number is required", validate_aadhaar)
    _check(errors, "dateOfBirth", personal.get("dateOfBirth"), "Date of birth is required")
    return errors


def validate_business_details(business: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    _check(errors, "companyName", business.get("companyName"), "Company name is required")
    _check(errors, "businessType", business.get("businessType"), "Business type is required")
    _check(errors, "gstin", business.get("gstin"), "GSTIN is required", validate_gstin)
    is_valid, message = validate_cin(business.get("cin"))
    if not is_valid:
        errors["cin"] = message
    _check(errors, "address", business.get("address"), "Business address is required")
    return errors


def validate_telecom_usage(telecom: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    if not telecom.get("intendedUse"):
        errors["intendedUse"] = "At least one intended use must be selected"
    _check(errors, "trafficType", telecom.get("trafficType"), "Traffic type is required")
    return errors


def validate_authorized_signatory(signatory: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    _check(errors, "name", signatory.get("name"), "Signatory name is required")
    _check(errors, "mobile", signatory.get("mobile"), "Signatory mobile is required", validate_mobile)
    _check(errors, "email", signatory.get("email"), "Signatory email is required", validate_email)
    _check(errors, "designation", signatory.get("designation"), "Designation is required")
    return errors


def validate_kyc_documents(form_data: Dict[str, Any]) -> Dict[str, str]:
    """Missing uploads are reported under documents.<field>, not under the owning section."""
    errors = {}
    for field, (section, message) in KYC_REQUIRED_DOCUMENTS.items():
        if not _has_documents((form_data.get(section) or {}).get(field)):
            errors[f"documents.{field}"] = message
    return errors


KYC_SECTION_VALIDATORS = {
    "personalDetails": validate_personal_details,
    "businessDetails": validate_business_details,
    "telecomUsage": validate_telecom_usage,
    "authorizedSignatory": validate_authorized_signatory,
}


def validate_kyc_form(form_data: Dict[str, Any]) -> ValidationResult:
    """
    Validate the full business KYC form.

    Args:
        form_data: section name -> field name -> value

    Returns:
        ValidationResult with every violation keyed as "section.field"
    """
    errors: Dict[str, str] = {}
    for section, validator in KYC_SECTION_VALIDATORS.items():
        errors.update(_prefixed(section, validator(form_data.get(section) or {})))
    errors.update(validate_kyc_documents(form_data))
    return ValidationResult.from_errors(errors)


def validate_self_kyc_form(form_data: Dict[str, Any]) -> ValidationResult:
    """Self-KYC mobile setup. Keys are flat field names (no section prefix)."""
    errors: Dict[str, str] = {}

    primary = form_data.get("primaryMobile")
    if not validate_required(primary):
        errors["primaryMobile"] = "Primary mobile number is required"
    elif len(_NON_DIGIT.sub("", str(primary))) != 10:
        errors["primaryMobile"] = "Primary mobile must be exactly 10 digits"
    elif not validate_mobile(primary)[0]:
        errors["primaryMobile"] = "Please enter a valid Indian mobile number starting with 6, 7, 8, or 9"

    alternate = form_data.get("alternateMobile")
    if not validate_required(alternate):
        errors["alternateMobile"] = "Alternate mobile number is required for verification"
    else:
        is_valid, message = validate_alternate_mobile(alternate, primary)
        if not is_valid:
            errors["alternateMobile"] = message

    is_valid, message = validate_contact_name(form_data.get("contactName"))
    if not is_valid:
        errors["contactName"] = message

    is_valid, message = validate_relationship(form_data.get("relationship"))
    if not is_valid:
        errors["relationship"] = message

    return ValidationResult.from_errors(errors)


def self_kyc_completeness(form_data: Dict[str, Any]) -> float:
    """Percentage of the four Self-KYC fields that are filled in."""
    fields = ["primaryMobile", "alternateMobile", "contactName", "relationship"]
    filled = sum(1 for f in fields if validate_required(form_data.get(f)))
    return filled / len(fields) * 100


# ---------------------------------------------------------------------------
# CAF sections
# ---------------------------------------------------------------------------

def validate_caf_personal_details(personal: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    _check(errors, "fullName", personal.get("fullName"), "Full name is required")
    _check(errors, "dateOfBirth", personal.get("dateOfBirth"), "Date of birth is required")
    _check(errors, "gender", personal.get("gender"), "Gender is required")
    _check(errors, "mobile", personal.get("mobile"), "Mobile number is required", validate_mobile)
    _check(errors, "email", personal.get("email"), "Email is required", validate_email)
    _check(errors, "aadhaarNumber", personal.get("aadhaarNumber"), "Aadhaar number is required", validate_aadhaar)
    _check(errors, "panNumber", personal.get("panNumber"), "PAN number is required", validate_pan)
    return errors


def validate_caf_address_details(address: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    _check(errors, "residentialAddress", address.get("residentialAddress"), "Residential address is required")
    _check(errors, "permanentAddress", address.get("permanentAddress"), "Permanent address is required")
    _check(errors, "city", address.get("city"), "City is required")
    _check(errors, "state", address.get("state"), "State is required")
    _check(errors, "pincode", address.get("pincode"), "PIN code is required", validate_pin_code)
    return errors


def validate_caf_business_details(business: Dict[str, Any], customer_type: Optional[str]) -> Dict[str, str]:
    if customer_type == "individual":
        return {}
    errors = {}
    _check(errors, "companyName", business.get("companyName"), "Company name is required")
    _check(errors, "businessType", business.get("businessType"), "Business type is required")
    _check(errors, "gstin", business.get("gstin"), "GSTIN is required", validate_gstin)
    is_valid, message = validate_cin(business.get("cin"))
    if not is_valid:
        errors["cin"] = message
    _check(errors, "authorizedSignatory", business.get("authorizedSignatory"), "Authorized signatory is required")
    _check(errors, "businessAddress", business.get("businessAddress"), "Business address is required")
    return errors


def validate_caf_service_details(service: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    _check(errors, "connectionType", service.get("connectionType"), "Connection type is required")
    _check(errors, "planSelected", service.get("planSelected"), "Plan selection is required")
    _check(errors, "installationAddress", service.get("installationAddress"), "Installation address is required")
    return errors


def validate_caf_declarations(declarations: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    if not declarations.get("termsAccepted"):
        errors["termsAccepted"] = "Terms and conditions must be accepted"
    if not declarations.get("kycCompleted"):
        errors["kycCompleted"] = "KYC completion confirmation is required"
    if not declarations.get("informationAccuracy"):
        errors["informationAccuracy"] = "Information accuracy declaration is required"
    return errors


def validate_caf_form(form_data: Dict[str, Any]) -> ValidationResult:
    """Complete CAF form. Business details are skipped for individual customers."""
    errors: Dict[str, str] = {}
    _check(errors, "serviceType", form_data.get("serviceType"), "Service type is required")
    _check(errors, "customerType", form_data.get("customerType"), "Customer type is required")

    customer_type = form_data.get("customerType")
    errors.update(_prefixed("personalDetails", validate_caf_personal_details(form_data.get("personalDetails") or {})))
    errors.update(_prefixed("addressDetails", validate_caf_address_details(form_data.get("addressDetails") or {})))
    errors.update(_prefixed(
        "businessDetails",
        validate_caf_business_details(form_data.get("businessDetails") or {}, customer_type),
    ))
    errors.update(_prefixed("serviceDetails", validate_caf_service_details(form_data.get("serviceDetails") or {})))
    errors.update(_prefixed("declarations", validate_caf_declarations(form_data.get("declarations") or {})))
    return ValidationResult.from_errors(errors)


# ============================================================================
# COLLABORATOR RESULT VALIDATORS
# ============================================================================

def _missing(data: Dict[str, Any], fields: List[str]) -> List[str]:
    return [f for f in fields if not data.get(f)]


def validate_uidai_response(response: Any) -> Tuple[bool, Optional[str]]:
    if not isinstance(response, dict):
        return False, "Invalid UIDAI response format"
    kyc_data = response.get("kyc_data")
    if not kyc_data:
        return False, "KYC data missing from UIDAI response"
    missing = _missing(kyc_data, ["name", "date_of_birth", "gender", "address"])
    if missing:
        return False, f"Missing required fields: {', '.join(missing)}"
    return True, None


def validate_digilocker_document(document: Any) -> Tuple[bool, Optional[str]]:
    if not isinstance(document, dict):
        return False, "Invalid document format"
    missing = _missing(document, ["id", "name", "type", "issuer"])
    if missing:
        return False, f"Missing document fields: {', '.join(missing)}"
    return True, None


def validate_territorial_boundary(
    document_territory: Optional[Dict[str, str]],
    user_territory: Optional[Dict[str, str]],
    cross_boundary_allowed: bool = True,
) -> Tuple[bool, Optional[str], bool]:
    """Returns (is_valid, message, territory_match)."""
    if not document_territory or not user_territory:
        return False, "Territory information is required for validation", False

    same_state = document_territory.get("state") == user_territory.get("state")
    if not same_state and not cross_boundary_allowed:
        return (
            False,
            f"Cross-boundary verification not allowed between "
            f"{document_territory.get('state')} and {user_territory.get('state')}",
            False,
        )
    return True, None, same_state


def validate_face_matching_result(result: Any, min_confidence: int = 70) -> Tuple[bool, Optional[str]]:
    if not isinstance(result, dict):
        return False, "Invalid face matching result format"
    missing = [f for f in ("confidence", "status", "face_records") if result.get(f) is None]
    if missing:
        return False, f"Missing face matching fields: {', '.join(missing)}"
    if result["confidence"] < min_confidence:
        return False, f"Face matching confidence too low: {result['confidence']}%"
    if not result["face_records"].get("no_error"):
        return False, "Errors detected in face records validation"
    return True, None


LIVE_PHOTO_REQUIRED_CHECKS = ["face_detected", "eyes_visible", "proper_lighting", "no_blur"]


def validate_live_photo_clarity(validation: Any, min_clarity: int = 85) -> Tuple[bool, Optional[str]]:
    if not isinstance(validation, dict):
        return False, "Invalid photo validation data"

    score = (validation.get("clarity") or {}).get("score", 0)
    if score < min_clarity:
        return False, f"Photo clarity score too low: {score}%. Minimum required: {min_clarity}%"

    checks = validation.get("checks") or {}
    failed = [c for c in LIVE_PHOTO_REQUIRED_CHECKS if not checks.get(c)]
    if failed:
        return False, f"Failed photo checks: {', '.join(failed)}"
    return True, None


def validate_document_authenticity(result: Any) -> Tuple[bool, Optional[str]]:
    if not isinstance(result, dict):
        return False, "Invalid authenticity result format"
    if not result.get("authentic"):
        return False, "Document failed authenticity verification"
    if result.get("tampering"):
        return False, "Document tampering detected"
    if not result.get("issuer_verified"):
        return False, "Document issuer could not be verified"
    return True, None


def validate_complete_dot_verification(data: Dict[str, Any]) -> ValidationResult:
    """All four DoT compliance checks must be present and individually acceptable."""
    errors: Dict[str, str] = {}

    if not data.get("authenticity"):
        errors["authenticity"] = "Document authenticity verification is required"
    if not data.get("face_matching"):
        errors["faceMatching"] = "Face matching verification is required"
    if not data.get("territorial"):
        errors["territorial"] = "Territorial boundary validation is required"
    if not data.get("live_photo"):
        errors["livePhoto"] = "Live photo validation is required"

    if data.get("face_matching"):
        is_valid, message = validate_face_matching_result(data["face_matching"])
        if not is_valid:
            errors["faceMatching"] = message

    if data.get("live_photo"):
        is_valid, message = validate_live_photo_clarity(data["live_photo"])
        if not is_valid:
            errors["livePhoto"] = message

    return ValidationResult.from_errors(errors)


def validate_conversion_plan(plan_id: Any, available_plans: Any) -> Tuple[bool, Optional[str]]:
    if not plan_id:
        return False, "Plan selection is required"
    if not isinstance(available_plans, list):
        return False, "Available plans data is invalid"
    if not any(getattr(p, "id", None) == plan_id or (isinstance(p, dict) and p.get("id") == plan_id)
               for p in available_plans):
        return False, "Selected plan not found"
    return True, None


def validate_conversion_eligibility(eligibility: Any) -> Tuple[bool, Optional[str]]:
    if not eligibility:
        return False, "Eligibility data is required"
    eligible = eligibility.get("eligible") if isinstance(eligibility, dict) else getattr(eligibility, "eligible", False)
    if not eligible:
        reason = eligibility.get("reason") if isinstance(eligibility, dict) else getattr(eligibility, "reason", None)
        return False, reason or "Not eligible for conversion"
    return True, None


# ============================================================================
# SINGLE FIELD LOOKUP
# ============================================================================

FIELD_VALIDATORS = {
    "pan": validate_pan,
    "gstin": validate_gstin,
    "cin": validate_cin,
    "aadhaar": validate_aadhaar,
    "mobile": validate_mobile,
    "email": validate_email,
    "otp": validate_otp,
    "pincode": validate_pin_code,
    "relationship": validate_relationship,
    "serviceType": validate_service_type,
    "connectionType": validate_connection_type,
}


def get_validator(field_id: str):
    """Get the format validator registered for a field name, if any."""
    return FIELD_VALIDATORS.get(field_id)
