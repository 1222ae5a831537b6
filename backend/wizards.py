"""
Wizard factory and step actions for the six onboarding flows.

create_wizard() builds a Wizard from its definition with the flow's validator,
its step gates and its sink. The step-action helpers below run collaborator
calls through Wizard.run_action so that stale results are dropped and failures
land in wizard.last_error.

OTP-backed flows (self-KYC, e-KYC, conversion) track otpState through
idle -> sent -> verifying -> verified | failed. A verification only counts for
the target it was made for (verifiedTarget); editing the target resets the flow.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from config.kyc_schema import CheckStatus, OTPState, SubmissionStatus, ValidationResult
from config.wizard_definitions import get_wizard_definition
from backend.container import ServiceContainer
from backend.errors import NotFoundError
from backend.form_state import FormState
from backend.form_validator import (
    KYC_REQUIRED_DOCUMENTS,
    validate_aadhaar_strict,
    validate_authorized_signatory,
    validate_business_details,
    validate_caf_address_details,
    validate_caf_business_details,
    validate_caf_declarations,
    validate_caf_form,
    validate_caf_personal_details,
    validate_kyc_form,
    validate_mobile,
    validate_personal_details,
    validate_self_kyc_form,
    validate_service_type,
    validate_telecom_usage,
)
from backend.otp_service import normalize_mobile
from backend.verification_checks import merge_authority_results
from backend.wizard import ActionOutcome, ActionStatus, Wizard

logger = logging.getLogger(__name__)

DOCUMENT_CHECKS = ["authenticity", "face_matching", "territorial", "live_photo"]

# Document verification inputs -> checks whose stored result they invalidate
CHECK_INPUTS = {
    "selectedDocuments": ["authenticity"],
    "documentTerritory": ["territorial"],
    "userTerritory": ["territorial"],
}

OTP_BOOKKEEPING = ("otpState", "otpTarget", "verifiedTarget")

# A failure with one of these codes means the challenge no longer exists
CHALLENGE_GONE = {"OTP_EXPIRED", "MAX_ATTEMPTS_EXCEEDED", "NOT_FOUND"}

MOBILE_OTP_RESET = {
    "otp": "", "otpSent": False, "otpVerified": False,
    "otpState": OTPState.IDLE.value, "otpTarget": "", "verifiedTarget": "",
}

EKYC_OTP_RESET = {
    "otp": "", "transactionId": "", "person": None,
    "otpState": OTPState.IDLE.value, "otpTarget": "", "verifiedTarget": "",
}


def aadhaar_digits(aadhaar: Any) -> str:
    return "".join(str(aadhaar or "").split())


def _is_verified(state: Dict[str, Any], field: str, normalize: Callable[[Any], str]) -> bool:
    value = state.get(field)
    return (
        state.get("otpState") == OTPState.VERIFIED.value
        and bool(value)
        and state.get("verifiedTarget") == normalize(value)
    )


def _reset_on_change(form_state: FormState, field: str, normalize: Callable[[Any], str], reset: Dict[str, Any]):
    """Observer: editing the OTP target to a different number throws away any progress on the old one."""
    last = {"target": normalize(form_state.get(None, field))}

    def observer(section, changed, value):
        if section is not None or changed != field:
            return
        target = normalize(value)
        if target == last["target"]:
            return
        last["target"] = target
        if any(form_state.get(None, k) != v for k, v in reset.items()):
            logger.info(f"[Wizard] {field} changed, OTP progress reset")
            form_state.update_many(None, reset)
    return observer


def _invalidate_checks(form_state: FormState):
    """Observer: a changed check input drops the stored result of the checks that used it."""
    def observer(section, changed, value):
        if section is not None:
            return
        for check in CHECK_INPUTS.get(changed, []):
            if form_state.get("results", check):
                form_state.update("results", check, None)
    return observer


def _section_gate(section: str, validator):
    """Gate on one KYC section: its own fields plus the documents it owns."""
    def gate(state: Dict[str, Any]) -> Dict[str, str]:
        values = state.get(section) or {}
        errors = {f"{section}.{k}": v for k, v in validator(values).items()}
        for doc_field, (owner, message) in KYC_REQUIRED_DOCUMENTS.items():
            if owner == section and not values.get(doc_field):
                errors[f"documents.{doc_field}"] = message
        return errors
    return gate


def _caf_gate(section: str, validator):
    def gate(state: Dict[str, Any]) -> Dict[str, str]:
        return {f"{section}.{k}": v for k, v in validator(state.get(section) or {}).items()}
    return gate


def _caf_service_gate(state: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    is_valid, message = validate_service_type(state.get("serviceType"))
    if not is_valid:
        errors["serviceType"] = message
    if state.get("customerType") not in ("individual", "business"):
        errors["customerType"] = "Customer type is required"
    return errors


def _caf_business_gate(state: Dict[str, Any]) -> Dict[str, str]:
    errors = validate_caf_business_details(state.get("businessDetails") or {}, state.get("customerType"))
    return {f"businessDetails.{k}": v for k, v in errors.items()}


def _flag_gate(flag: str, key: str, message: str):
    def gate(state: Dict[str, Any]) -> Dict[str, str]:
        return {} if state.get(flag) else {key: message}
    return gate


def _self_kyc_setup_gate(state: Dict[str, Any]) -> Dict[str, str]:
    return validate_self_kyc_form(state).errors


def _verified_gate(field: str, normalize: Callable[[Any], str], key: str, message: str):
    def gate(state: Dict[str, Any]) -> Dict[str, str]:
        return {} if _is_verified(state, field, normalize) else {key: message}
    return gate


def _ekyc_aadhaar_gate(state: Dict[str, Any]) -> Dict[str, str]:
    is_valid, message = validate_aadhaar_strict(state.get("aadhaarNumber"))
    if not is_valid:
        return {"aadhaarNumber": message}
    if not state.get("transactionId") or state.get("otpTarget") != aadhaar_digits(state.get("aadhaarNumber")):
        return {"aadhaarNumber": "Please request an OTP for this Aadhaar number"}
    return {}


def _conversion_eligibility_errors(state: Dict[str, Any]) -> Dict[str, str]:
    is_valid, message = validate_mobile(state.get("mobile"))
    if not is_valid:
        return {"mobile": message}
    eligibility = state.get("eligibility")
    if not eligibility or eligibility.get("mobile") != normalize_mobile(state.get("mobile")):
        return {"mobile": "Please check eligibility first"}
    if not eligibility.get("eligible"):
        return {"mobile": eligibility.get("reason") or "Not eligible for conversion"}
    return {}


def _conversion_mobile_gate(state: Dict[str, Any]) -> Dict[str, str]:
    errors = _conversion_eligibility_errors(state)
    if errors:
        return errors
    if not state.get("otpSent") or state.get("otpTarget") != normalize_mobile(state.get("mobile")):
        return {"otp": "Please request an OTP"}
    return {}


def _check_gate(check: str):
    def gate(state: Dict[str, Any]) -> Dict[str, str]:
        result = (state.get("results") or {}).get(check)
        if not result or result.get("status") not in (CheckStatus.ACCEPTED.value, CheckStatus.NEEDS_REVIEW.value):
            return {f"results.{check}": f"{check.replace('_', ' ').capitalize()} check has not passed"}
        return {}
    return gate


def _document_method_gate(state: Dict[str, Any]) -> Dict[str, str]:
    if state.get("method") not in ("digilocker", "manual"):
        return {"method": "Please choose a verification method"}
    return {}


def _dot_validator(state: Dict[str, Any]) -> ValidationResult:
    errors: Dict[str, str] = {}
    for check in DOCUMENT_CHECKS:
        errors.update(_check_gate(check)(state))
    return ValidationResult.from_errors(errors)


def _conversion_validator(state: Dict[str, Any]) -> ValidationResult:
    errors = _conversion_eligibility_errors(state)
    if not _is_verified(state, "mobile", normalize_mobile):
        errors["otp"] = "Mobile number has not been verified"
    if not state.get("selectedPlan"):
        errors["selectedPlan"] = "Plan selection is required"
    return ValidationResult.from_errors(errors)


def _ekyc_validator(state: Dict[str, Any]) -> ValidationResult:
    errors = {}
    if not state.get("consentGiven"):
        errors["consentGiven"] = "Consent is required for Aadhaar authentication"
    if not state.get("person") or not _is_verified(state, "aadhaarNumber", aadhaar_digits):
        errors["otp"] = "Aadhaar OTP has not been verified"
    return ValidationResult.from_errors(errors)


def _self_kyc_validator(state: Dict[str, Any]) -> ValidationResult:
    errors = dict(validate_self_kyc_form(state).errors)
    if not _is_verified(state, "alternateMobile", normalize_mobile):
        errors["otp"] = "Alternate mobile has not been verified"
    return ValidationResult.from_errors(errors)


# ============================================================================
# FACTORY
# ============================================================================

def create_wizard(wizard_id: str, services: ServiceContainer, user_id: Optional[str] = None) -> Wizard:
    """
    Build and register a wizard.

    Args:
        wizard_id: one of kyc, caf, self_kyc, ekyc, otp_conversion, document_verification
        services: the container whose collaborators the wizard drives
        user_id: owner of the eventual submission
    """
    definition = get_wizard_definition(wizard_id)
    if definition is None:
        raise NotFoundError(f"Unknown wizard: {wizard_id}")

    if wizard_id == "kyc":
        wizard = Wizard(
            definition,
            validator=validate_kyc_form,
            step_gates={
                "personal": _section_gate("personalDetails", validate_personal_details),
                "business": _section_gate("businessDetails", validate_business_details),
                "telecom": _section_gate("telecomUsage", validate_telecom_usage),
                "signatory": _section_gate("authorizedSignatory", validate_authorized_signatory),
            },
            sink=lambda snapshot: services.submissions.create({**snapshot, "userId": user_id}),
        )
    elif wizard_id == "caf":
        wizard = Wizard(
            definition,
            validator=validate_caf_form,
            step_gates={
                "service": _caf_service_gate,
                "personal": _caf_gate("personalDetails", validate_caf_personal_details),
                "address": _caf_gate("addressDetails", validate_caf_address_details),
                "business": _caf_business_gate,
                "declarations": _caf_gate("declarations", validate_caf_declarations),
            },
            sink=lambda snapshot: services.caf.generate(user_id, snapshot),
        )
    elif wizard_id == "self_kyc":
        wizard = Wizard(
            definition,
            validator=_self_kyc_validator,
            step_gates={
                "mobile_setup": _self_kyc_setup_gate,
                "verification": _verified_gate(
                    "alternateMobile", normalize_mobile, "otp", "Please verify the OTP sent to the alternate mobile"
                ),
            },
            sink=lambda snapshot: _register_self_kyc(services, snapshot, user_id),
        )
        wizard.state.subscribe(_reset_on_change(wizard.state, "alternateMobile", normalize_mobile, MOBILE_OTP_RESET))
    elif wizard_id == "ekyc":
        wizard = Wizard(
            definition,
            validator=_ekyc_validator,
            step_gates={
                "consent": _flag_gate("consentGiven", "consentGiven", "Consent is required for Aadhaar authentication"),
                "aadhaar": _ekyc_aadhaar_gate,
                "otp": _verified_gate("aadhaarNumber", aadhaar_digits, "otp", "Please verify the OTP"),
            },
            sink=lambda snapshot: services.uidai.save_ekyc_data({
                "user_id": user_id,
                "status": "verified",
                "person": snapshot["person"],
            }),
        )
        wizard.state.subscribe(_reset_on_change(wizard.state, "aadhaarNumber", aadhaar_digits, EKYC_OTP_RESET))
    elif wizard_id == "otp_conversion":
        wizard = Wizard(
            definition,
            validator=_conversion_validator,
            step_gates={
                "mobile": _conversion_mobile_gate,
                "verify": _verified_gate("mobile", normalize_mobile, "otp", "Please verify the OTP"),
                "plan": _flag_gate("selectedPlan", "selectedPlan", "Plan selection is required"),
            },
            sink=lambda snapshot: services.conversions.process_conversion(
                snapshot["verifiedTarget"],
                snapshot["selectedPlan"],
                snapshot["eligibility"],
                from_plan=(snapshot.get("eligibility") or {}).get("customer_data", {}).get("current_plan"),
            ),
        )
        wizard.state.subscribe(_reset_on_change(
            wizard.state, "mobile", normalize_mobile, {**MOBILE_OTP_RESET, "eligibility": None},
        ))
    else:
        gates = {
            "method": _document_method_gate,
            "connect": _flag_gate("documents", "documents", "No documents available. Connect DigiLocker or upload documents"),
            "documents": _flag_gate("selectedDocuments", "selectedDocuments", "Select at least one document"),
        }
        gates.update({check: _check_gate(check) for check in DOCUMENT_CHECKS})
        wizard = Wizard(
            definition,
            validator=_dot_validator,
            step_gates=gates,
            sink=lambda snapshot: services.checks.summary(snapshot["subject"]),
        )
        # Checks are tracked per wizard so two sessions of one user never share verdicts
        wizard.state.update(None, "subject", f"{user_id or 'anonymous'}/{wizard.id}")
        wizard.state.subscribe(_invalidate_checks(wizard.state))

    logger.info(f"[Wizard] Created {wizard_id} wizard {wizard.id}")
    return services.register_wizard(wizard)


async def _register_self_kyc(services: ServiceContainer, snapshot: Dict[str, Any], user_id: Optional[str]):
    data = {k: v for k, v in snapshot.items() if k not in OTP_BOOKKEEPING}
    record = await services.submissions.register_self_kyc({**data, "userId": user_id})
    return await services.submissions.update_self_kyc_status(record.id, SubmissionStatus.PENDING, otp_verified=True)


# ============================================================================
# STEP ACTIONS
# ============================================================================

def _set(section: Optional[str], values: Dict[str, Any]):
    def apply(state, result):
        state.update_many(section, {k: (v(result) if callable(v) else v) for k, v in values.items()})
    return apply


async def _send_otp(wizard: Wizard, call, target: str, values: Dict[str, Any]) -> ActionOutcome:
    """Issue (or reissue) a challenge for target: sent, with any earlier verification dropped."""
    return await wizard.run_action(call, apply=_set(None, {
        **values,
        "otpState": OTPState.SENT.value,
        "otpTarget": target,
        "verifiedTarget": "",
    }))


async def _verify_otp(
    wizard: Wizard, call, target: str, values: Dict[str, Any], gone: Dict[str, Any]
) -> ActionOutcome:
    """verifying -> verified for target, or failed; a consumed challenge also clears the sent flags."""
    wizard.state.update(None, "otpState", OTPState.VERIFYING.value)
    outcome = await wizard.run_action(call, apply=_set(None, {
        **values,
        "otpState": OTPState.VERIFIED.value,
        "verifiedTarget": target,
    }))
    if outcome.status == ActionStatus.FAILED:
        failed = {"otpState": OTPState.FAILED.value}
        if outcome.error.code in CHALLENGE_GONE:
            failed.update(gone)
        wizard.state.update_many(None, failed)
    return outcome


async def _cancel_otp(wizard: Wizard, cancel: Callable[[], bool], reset: Dict[str, Any]) -> ActionOutcome:
    async def action():
        return cancel()
    return await wizard.run_action(action, apply=_set(None, reset))


async def send_self_kyc_otp(wizard: Wizard, services: ServiceContainer) -> ActionOutcome:
    mobile = wizard.state.get(None, "alternateMobile")
    return await _send_otp(
        wizard,
        lambda: services.otp.send_otp(mobile, "self-kyc"),
        normalize_mobile(mobile),
        {"otpSent": True, "otpVerified": False},
    )


async def verify_self_kyc_otp(wizard: Wizard, services: ServiceContainer, code: str) -> ActionOutcome:
    mobile = wizard.state.get(None, "alternateMobile")
    return await _verify_otp(
        wizard,
        lambda: services.otp.verify_otp(mobile, code),
        normalize_mobile(mobile),
        {"otp": code, "otpVerified": True},
        {"otpSent": False},
    )


async def cancel_self_kyc_otp(wizard: Wizard, services: ServiceContainer) -> ActionOutcome:
    target = wizard.state.get(None, "otpTarget") or wizard.state.get(None, "alternateMobile")
    return await _cancel_otp(wizard, lambda: services.otp.cancel(target), MOBILE_OTP_RESET)


async def initiate_ekyc(wizard: Wizard, services: ServiceContainer) -> ActionOutcome:
    aadhaar = wizard.state.get(None, "aadhaarNumber")
    return await _send_otp(
        wizard,
        lambda: services.uidai.initiate_ekyc(aadhaar),
        aadhaar_digits(aadhaar),
        {"transactionId": lambda r: r["transaction_id"], "person": None},
    )


async def verify_ekyc(wizard: Wizard, services: ServiceContainer, code: str) -> ActionOutcome:
    aadhaar = wizard.state.get(None, "aadhaarNumber")
    return await _verify_otp(
        wizard,
        lambda: services.uidai.verify_ekyc_otp(aadhaar, code),
        aadhaar_digits(aadhaar),
        {"otp": code, "person": lambda r: r.model_dump(mode="json")},
        {"transactionId": ""},
    )


async def cancel_ekyc(wizard: Wizard, services: ServiceContainer) -> ActionOutcome:
    target = wizard.state.get(None, "otpTarget") or wizard.state.get(None, "aadhaarNumber")
    return await _cancel_otp(wizard, lambda: services.uidai.cancel_ekyc(target), EKYC_OTP_RESET)


async def check_conversion_eligibility(wizard: Wizard, services: ServiceContainer) -> ActionOutcome:
    mobile = wizard.state.get(None, "mobile")
    return await wizard.run_action(
        lambda: services.eligibility.check(mobile),
        apply=_set(None, {"eligibility": lambda r: {**r.model_dump(), "mobile": normalize_mobile(mobile)}}),
    )


async def send_conversion_otp(wizard: Wizard, services: ServiceContainer) -> ActionOutcome:
    mobile = wizard.state.get(None, "mobile")
    return await _send_otp(
        wizard,
        lambda: services.otp.send_otp(mobile, "conversion"),
        normalize_mobile(mobile),
        {"otpSent": True, "otpVerified": False},
    )


async def verify_conversion_otp(wizard: Wizard, services: ServiceContainer, code: str) -> ActionOutcome:
    mobile = wizard.state.get(None, "mobile")
    return await _verify_otp(
        wizard,
        lambda: services.otp.verify_otp(mobile, code),
        normalize_mobile(mobile),
        {"otp": code, "otpVerified": True},
        {"otpSent": False},
    )


async def cancel_conversion_otp(wizard: Wizard, services: ServiceContainer) -> ActionOutcome:
    target = wizard.state.get(None, "otpTarget") or wizard.state.get(None, "mobile")
    return await _cancel_otp(wizard, lambda: services.otp.cancel(target), MOBILE_OTP_RESET)


async def fetch_digilocker_documents(wizard: Wizard, services: ServiceContainer, auth_code: str) -> ActionOutcome:
    return await wizard.run_action(
        lambda: services.digilocker.authorize_and_fetch_documents(auth_code),
        apply=_set(None, {"documents": lambda docs: list(docs)}),
    )


async def run_document_check(wizard: Wizard, services: ServiceContainer, check: str) -> ActionOutcome:
    """Run (or retry) one verification check and store its outcome under results.<check>."""
    state = wizard.state.snapshot()
    subject = state["subject"]

    async def action():
        if check == "authenticity":
            # Every selected document must pass
            selected: List[str] = list(state.get("selectedDocuments") or []) or [subject]
            authority_results = [await services.digilocker.check_authenticity(doc_id) for doc_id in selected]
            return await services.checks.check_authenticity(
                subject, merge_authority_results(authority_results), inputs=tuple(selected)
            )
        if check == "territorial":
            return await services.checks.check_territorial(
                subject, state.get("documentTerritory") or {}, state.get("userTerritory") or {}
            )
        if check == "face_matching":
            return await services.checks.check_face_matching(subject)
        if check == "live_photo":
            return await services.checks.check_live_photo(subject)
        raise NotFoundError(f"Unknown verification check: {check}")

    def apply(form_state, tracked):
        form_state.update("results", check, {
            "status": tracked.status.value,
            "score": tracked.result.score if tracked.result else None,
            "attempt": tracked.attempt,
            "error": tracked.error,
        })

    return await wizard.run_action(action, apply=apply)
