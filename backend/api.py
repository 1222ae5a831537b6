"""
FastAPI Backend for KYC Onboarding

Provides REST API endpoints for:
- Wizard definitions and wizard sessions (field updates, navigation, uploads, submit)
- Form validation (KYC, CAF, Self-KYC, single field)
- OTP send/verify, Aadhaar e-KYC, DigiLocker and DoT verification checks
- KYC submissions and reviewer actions
- CAF generation, plan conversion and reports
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from config.kyc_schema import SubmissionStatus
from config.logging_config import setup_logging
from config.settings import settings, validate_settings
from config.wizard_definitions import WIZARD_DEFINITIONS, get_wizard_definition
from backend import reports
from backend.container import ServiceContainer
from backend.errors import (
    ConfigurationError,
    ExpiredError,
    InvalidTransitionError,
    KYCError,
    MaxAttemptsExceededError,
    MismatchError,
    NotFoundError,
    RateLimitError,
    RecordValidationError,
    TransientServiceError,
    UnexpectedError,
)
from backend.form_validator import (
    get_validator,
    self_kyc_completeness,
    validate_caf_form,
    validate_kyc_form,
    validate_self_kyc_form,
)
from backend.wizard import Wizard
from backend import wizards as wizard_actions
from backend.wizards import create_wizard

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

ERROR_STATUS = [
    (NotFoundError, 404),
    (ExpiredError, 410),
    (MaxAttemptsExceededError, 410),
    (MismatchError, 400),
    (RateLimitError, 429),
    (TransientServiceError, 503),
    (InvalidTransitionError, 409),
    (RecordValidationError, 422),
    (ConfigurationError, 422),
    (UnexpectedError, 500),
]


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    api_version: str
    demo_mode: bool


class SessionCreateRequest(BaseModel):
    user_id: Optional[str] = None


class FieldUpdateRequest(BaseModel):
    section: Optional[str] = None
    field: str
    value: Any = None


class JumpRequest(BaseModel):
    index: int


class ActionRequest(BaseModel):
    code: Optional[str] = None
    auth_code: Optional[str] = None
    check: Optional[str] = None


class FieldValidationRequest(BaseModel):
    field_id: str
    value: Any = None


class OTPSendRequest(BaseModel):
    mobile: str
    purpose: str = "registration"


class OTPVerifyRequest(BaseModel):
    mobile: str
    code: str


class OTPCancelRequest(BaseModel):
    mobile: str


class EKYCInitiateRequest(BaseModel):
    aadhaar_number: str


class EKYCVerifyRequest(BaseModel):
    aadhaar_number: str
    code: str


class AuthCodeRequest(BaseModel):
    auth_code: str
    state: Optional[str] = None


class CheckRequest(BaseModel):
    subject: str
    document_id: Optional[str] = None
    document_territory: Dict[str, str] = Field(default_factory=dict)
    user_territory: Dict[str, str] = Field(default_factory=dict)


class ApproveRequest(BaseModel):
    reviewed_by: str
    comment: str = ""


class RejectRequest(BaseModel):
    reviewed_by: str
    reason: str


class CAFGenerateRequest(BaseModel):
    user_id: str
    form_data: Dict[str, Any]
    caf_id: Optional[str] = None


class CAFStatusRequest(BaseModel):
    status: str
    comments: str = ""


class ConversionRequest(BaseModel):
    mobile_number: str
    to_plan: int
    check_eligibility: bool = True


class CancelRequest(BaseModel):
    reason: str = ""


# ============================================================================
# APP SETUP
# ============================================================================

def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_session(session_id: str, services: ServiceContainer = Depends(get_services)) -> Wizard:
    wizard = services.wizards.get(session_id)
    if wizard is None:
        raise NotFoundError(f"Wizard session {session_id} not found")
    return wizard


def check_date_range(date_range: str = Query("this-month")) -> str:
    if date_range not in reports.DATE_RANGES:
        raise RecordValidationError(f"Unknown date range: {date_range}", list(reports.DATE_RANGES))
    return date_range


async def handle_kyc_error(request: Request, exc: KYCError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitError) else None
    logger.info(f"[API] {request.method} {request.url.path} -> {status_code} {exc.code}")
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """Build an application around its own service container."""
    setup_logging()
    ok, issues = validate_settings()
    for issue in issues:
        logger.warning(f"[Config] {issue}")

    app = FastAPI(
        title="KYC Onboarding API",
        description="Wizard-driven KYC, CAF and verification backend for telecom onboarding",
        version=API_VERSION,
    )
    app.state.services = services or ServiceContainer()

    # CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, specify allowed origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(KYCError, handle_kyc_error)
    register_routes(app)
    return app


# ============================================================================
# API ENDPOINTS
# ============================================================================

def register_routes(app: FastAPI) -> None:

    # ------------------------------------------------------------------
    # Health and definitions
    # ------------------------------------------------------------------

    @app.get("/", response_model=HealthResponse)
    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(status="healthy", api_version=API_VERSION, demo_mode=settings.DEMO_MODE)

    @app.get("/wizards")
    async def list_wizards():
        return {"success": True, "wizards": [d.to_dict() for d in WIZARD_DEFINITIONS.values()]}

    @app.get("/wizards/{wizard_id}")
    async def get_wizard(wizard_id: str):
        definition = get_wizard_definition(wizard_id)
        if definition is None:
            raise NotFoundError(f"Unknown wizard: {wizard_id}")
        return {"success": True, "wizard": definition.to_dict()}

    # ------------------------------------------------------------------
    # Wizard sessions
    # ------------------------------------------------------------------

    @app.post("/wizards/{wizard_id}/sessions")
    async def start_session(
        wizard_id: str,
        request: SessionCreateRequest,
        services: ServiceContainer = Depends(get_services),
    ):
        wizard = create_wizard(wizard_id, services, request.user_id)
        return {"success": True, "session": wizard.to_dict(), "state": wizard.state.snapshot()}

    @app.get("/sessions/{session_id}")
    async def get_session_state(wizard: Wizard = Depends(get_session)):
        return {"success": True, "session": wizard.to_dict(), "state": wizard.state.snapshot()}

    @app.put("/sessions/{session_id}/fields")
    async def update_field(request: FieldUpdateRequest, wizard: Wizard = Depends(get_session)):
        try:
            accepted = wizard.update(request.section, request.field, request.value)
        except KeyError as e:
            raise RecordValidationError(str(e.args[0]))
        return {"success": accepted, "session": wizard.to_dict()}

    @app.post("/sessions/{session_id}/documents")
    async def upload_document(
        section: str = Form(...),
        field: str = Form(...),
        file: UploadFile = File(...),
        wizard: Wizard = Depends(get_session),
    ):
        """Attach an uploaded file to a document field of the session."""
        contents = await file.read()
        try:
            doc = wizard.attach_document(
                section, field, file.filename or "document", len(contents), file.content_type or ""
            )
        except KeyError as e:
            raise RecordValidationError(str(e.args[0]))
        return {"success": doc is not None, "document": doc, "session": wizard.to_dict()}

    @app.delete("/sessions/{session_id}/documents/{doc_id}")
    async def remove_document(doc_id: str, section: str, field: str, wizard: Wizard = Depends(get_session)):
        removed = wizard.remove_document(section, field, doc_id)
        if not removed:
            raise NotFoundError(f"Document {doc_id} not found in {section}.{field}")
        return {"success": True, "session": wizard.to_dict()}

    @app.post("/sessions/{session_id}/advance")
    async def advance(wizard: Wizard = Depends(get_session)):
        moved = wizard.advance()
        return {"success": moved, "session": wizard.to_dict()}

    @app.post("/sessions/{session_id}/retreat")
    async def retreat(wizard: Wizard = Depends(get_session)):
        moved = wizard.retreat()
        return {"success": moved, "session": wizard.to_dict()}

    @app.post("/sessions/{session_id}/jump")
    async def jump(request: JumpRequest, wizard: Wizard = Depends(get_session)):
        moved = wizard.jump_to(request.index)
        return {"success": moved, "session": wizard.to_dict()}

    @app.post("/sessions/{session_id}/actions/{action}")
    async def run_session_action(
        action: str,
        request: ActionRequest,
        wizard: Wizard = Depends(get_session),
        services: ServiceContainer = Depends(get_services),
    ):
        """Run an async step action (OTP, e-KYC, DigiLocker, checks) for the session."""
        actions = {
            "send_self_kyc_otp": lambda: wizard_actions.send_self_kyc_otp(wizard, services),
            "verify_self_kyc_otp": lambda: wizard_actions.verify_self_kyc_otp(wizard, services, request.code or ""),
            "cancel_self_kyc_otp": lambda: wizard_actions.cancel_self_kyc_otp(wizard, services),
            "initiate_ekyc": lambda: wizard_actions.initiate_ekyc(wizard, services),
            "verify_ekyc": lambda: wizard_actions.verify_ekyc(wizard, services, request.code or ""),
            "cancel_ekyc": lambda: wizard_actions.cancel_ekyc(wizard, services),
            "check_eligibility": lambda: wizard_actions.check_conversion_eligibility(wizard, services),
            "send_conversion_otp": lambda: wizard_actions.send_conversion_otp(wizard, services),
            "verify_conversion_otp": lambda: wizard_actions.verify_conversion_otp(wizard, services, request.code or ""),
            "cancel_conversion_otp": lambda: wizard_actions.cancel_conversion_otp(wizard, services),
            "fetch_documents": lambda: wizard_actions.fetch_digilocker_documents(wizard, services, request.auth_code or ""),
            "run_check": lambda: wizard_actions.run_document_check(wizard, services, request.check or ""),
        }
        if action not in actions:
            raise NotFoundError(f"Unknown action: {action}")
        outcome = await actions[action]()
        return {
            "success": outcome.ok,
            "status": outcome.status,
            "generation": outcome.generation,
            "result": outcome.result,
            "error": outcome.error.to_dict() if outcome.error else None,
            "session": wizard.to_dict(),
        }

    @app.post("/sessions/{session_id}/submit")
    async def submit_session(wizard: Wizard = Depends(get_session)):
        outcome = await wizard.submit()
        return {
            "success": outcome.submitted,
            "validation": outcome.validation,
            "record": outcome.record,
            "error": outcome.error,
            "session": wizard.to_dict(),
        }

    @app.delete("/sessions/{session_id}")
    async def discard_session(session_id: str, services: ServiceContainer = Depends(get_services)):
        wizard = services.drop_wizard(session_id)
        if wizard is None:
            raise NotFoundError(f"Wizard session {session_id} not found")
        return {"success": True, "released": wizard.documents.released}

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @app.post("/validate/kyc")
    async def validate_kyc(form_data: Dict[str, Any]):
        return validate_kyc_form(form_data)

    @app.post("/validate/caf")
    async def validate_caf(form_data: Dict[str, Any]):
        return validate_caf_form(form_data)

    @app.post("/validate/self-kyc")
    async def validate_self_kyc(form_data: Dict[str, Any]):
        result = validate_self_kyc_form(form_data)
        return {**result.model_dump(), "completeness": self_kyc_completeness(form_data)}

    @app.post("/validate/field")
    async def validate_single_field(request: FieldValidationRequest):
        """Validate a single field value in real-time."""
        validator = get_validator(request.field_id)
        if validator is None:
            raise NotFoundError(f"Field not found: {request.field_id}")
        is_valid, error = validator(request.value)
        return {"success": True, "field_id": request.field_id, "is_valid": is_valid, "error": error}

    # ------------------------------------------------------------------
    # OTP and e-KYC
    # ------------------------------------------------------------------

    @app.post("/otp/send")
    async def send_otp(request: OTPSendRequest, services: ServiceContainer = Depends(get_services)):
        return await services.otp.send_otp(request.mobile, request.purpose)

    @app.post("/otp/verify")
    async def verify_otp(request: OTPVerifyRequest, services: ServiceContainer = Depends(get_services)):
        return await services.otp.verify_otp(request.mobile, request.code)

    @app.post("/otp/cancel")
    async def cancel_otp(request: OTPCancelRequest, services: ServiceContainer = Depends(get_services)):
        cancelled = services.otp.cancel(request.mobile)
        return {"success": True, "cancelled": cancelled}

    @app.post("/ekyc/initiate")
    async def initiate_ekyc(request: EKYCInitiateRequest, services: ServiceContainer = Depends(get_services)):
        return await services.uidai.initiate_ekyc(request.aadhaar_number)

    @app.post("/ekyc/verify")
    async def verify_ekyc(request: EKYCVerifyRequest, services: ServiceContainer = Depends(get_services)):
        person = await services.uidai.verify_ekyc_otp(request.aadhaar_number, request.code)
        return {"success": True, "message": "e-KYC verification successful", "kyc_data": person}

    # ------------------------------------------------------------------
    # DigiLocker and verification checks
    # ------------------------------------------------------------------

    @app.get("/digilocker/authorize")
    async def digilocker_authorize(services: ServiceContainer = Depends(get_services)):
        return await services.digilocker.get_authorization_url()

    @app.post("/digilocker/documents")
    async def digilocker_documents(request: AuthCodeRequest, services: ServiceContainer = Depends(get_services)):
        documents = await services.digilocker.authorize_and_fetch_documents(request.auth_code)
        return {"success": True, "documents": documents}

    @app.get("/digilocker/authenticity/{document_id}")
    async def digilocker_authenticity(document_id: str, services: ServiceContainer = Depends(get_services)):
        return await services.digilocker.check_authenticity(document_id)

    @app.post("/checks/{check}")
    async def run_check(check: str, request: CheckRequest, services: ServiceContainer = Depends(get_services)):
        checks = services.checks
        if check == "authenticity":
            authority = await services.digilocker.check_authenticity(request.document_id or request.subject)
            tracked = await checks.check_authenticity(request.subject, authority, inputs=request.document_id)
        elif check == "territorial":
            tracked = await checks.check_territorial(request.subject, request.document_territory, request.user_territory)
        elif check == "face_matching":
            tracked = await checks.check_face_matching(request.subject)
        elif check == "live_photo":
            tracked = await checks.check_live_photo(request.subject)
        else:
            raise NotFoundError(f"Unknown verification check: {check}")
        return {
            "success": tracked.result is not None,
            "status": tracked.status.value,
            "attempt": tracked.attempt,
            "result": tracked.result,
            "error": tracked.error,
        }

    @app.get("/checks/{subject}/summary")
    async def check_summary(subject: str, services: ServiceContainer = Depends(get_services)):
        return services.checks.summary(subject)

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    @app.get("/submissions/stats")
    async def submission_stats(services: ServiceContainer = Depends(get_services)):
        return services.submissions.stats()

    @app.get("/submissions")
    async def list_submissions(
        status: Optional[SubmissionStatus] = None,
        user_id: Optional[str] = None,
        services: ServiceContainer = Depends(get_services),
    ):
        records = services.submissions.list_all()
        if status is not None:
            records = [r for r in records if r.status == status]
        if user_id is not None:
            records = [r for r in records if r.user_id == user_id]
        return {"success": True, "submissions": records}

    @app.post("/submissions")
    async def create_submission(data: Dict[str, Any], services: ServiceContainer = Depends(get_services)):
        return await services.submissions.create(data)

    @app.get("/submissions/{record_id}")
    async def get_submission(record_id: int, services: ServiceContainer = Depends(get_services)):
        return services.submissions.get(record_id)

    @app.patch("/submissions/{record_id}")
    async def update_submission(record_id: int, patch: Dict[str, Any], services: ServiceContainer = Depends(get_services)):
        return await services.submissions.update(record_id, patch)

    @app.post("/submissions/{record_id}/approve")
    async def approve_submission(record_id: int, request: ApproveRequest, services: ServiceContainer = Depends(get_services)):
        return await services.submissions.approve(record_id, request.reviewed_by, request.comment)

    @app.post("/submissions/{record_id}/reject")
    async def reject_submission(record_id: int, request: RejectRequest, services: ServiceContainer = Depends(get_services)):
        return await services.submissions.reject(record_id, request.reviewed_by, request.reason)

    @app.delete("/submissions/{record_id}")
    async def delete_submission(record_id: int, services: ServiceContainer = Depends(get_services)):
        return services.submissions.delete(record_id)

    # ------------------------------------------------------------------
    # CAF
    # ------------------------------------------------------------------

    @app.post("/caf/generate")
    async def generate_caf(request: CAFGenerateRequest, services: ServiceContainer = Depends(get_services)):
        return await services.caf.generate(request.user_id, request.form_data, request.caf_id)

    @app.post("/caf/preview")
    async def preview_caf(form_data: Dict[str, Any], services: ServiceContainer = Depends(get_services)):
        return await services.caf.preview(form_data)

    @app.get("/caf/stats")
    async def caf_stats(services: ServiceContainer = Depends(get_services)):
        return services.caf.stats()

    @app.get("/caf/search")
    async def search_caf(q: str = "", services: ServiceContainer = Depends(get_services)):
        return {"success": True, "results": services.caf.search(q)}

    @app.post("/caf/{record_id}/submit")
    async def submit_caf(record_id: int, services: ServiceContainer = Depends(get_services)):
        return await services.caf.submit(record_id)

    @app.patch("/caf/{record_id}/status")
    async def update_caf_status(record_id: int, request: CAFStatusRequest, services: ServiceContainer = Depends(get_services)):
        return await services.caf.update_status(record_id, request.status, request.comments)

    @app.get("/caf/{caf_id}/download")
    async def download_caf(caf_id: str, services: ServiceContainer = Depends(get_services)):
        return await services.caf.download(caf_id)

    @app.get("/caf/{caf_id}/integrity")
    async def caf_integrity(caf_id: str, services: ServiceContainer = Depends(get_services)):
        return await services.caf.validate_integrity(caf_id)

    # ------------------------------------------------------------------
    # Plan conversion
    # ------------------------------------------------------------------

    @app.get("/plans")
    async def list_plans(services: ServiceContainer = Depends(get_services)):
        return {"success": True, "plans": services.plans.list_plans()}

    @app.get("/plans/{plan_id}/benefits")
    async def plan_benefits(plan_id: int, services: ServiceContainer = Depends(get_services)):
        return await services.conversions.calculate_benefits(plan_id)

    @app.get("/eligibility/{mobile}")
    async def check_eligibility(mobile: str, services: ServiceContainer = Depends(get_services)):
        return await services.eligibility.check(mobile)

    @app.post("/conversions")
    async def create_conversion(request: ConversionRequest, services: ServiceContainer = Depends(get_services)):
        eligibility = None
        if request.check_eligibility:
            eligibility = await services.eligibility.check(request.mobile_number)
        return await services.conversions.process_conversion(request.mobile_number, request.to_plan, eligibility)

    @app.get("/conversions/{conversion_id}")
    async def conversion_status(conversion_id: str, services: ServiceContainer = Depends(get_services)):
        return services.conversions.get_status(conversion_id)

    @app.post("/conversions/{conversion_id}/cancel")
    async def cancel_conversion(conversion_id: str, request: CancelRequest, services: ServiceContainer = Depends(get_services)):
        return await services.conversions.cancel(conversion_id, request.reason)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    @app.get("/reports/summary")
    async def report_summary(
        date_range: str = Depends(check_date_range),
        services: ServiceContainer = Depends(get_services),
    ):
        return reports.build_report(services.submissions.list_all(), date_range)

    @app.get("/reports/export")
    async def report_export(
        date_range: str = Depends(check_date_range),
        services: ServiceContainer = Depends(get_services),
    ):
        content = reports.export_csv(services.submissions.list_all(), date_range)
        return PlainTextResponse(
            content,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{reports.report_filename()}"'},
        )


app = create_app()


# ============================================================================
# RUN SERVER
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
