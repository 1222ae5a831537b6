"""
Schema definitions for KYC onboarding.
These models define the records exchanged between the wizard engine,
the verification collaborators and the submission sink.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with the other naive datetimes in the records."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SubmissionStatus(str, Enum):
    """Lifecycle of a KYC submission."""
    PENDING = "pending"
    UNDER_REVIEW = "under-review"
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING_VERIFICATION = "pending-verification"  # Self-KYC registrations awaiting OTP


class ValidationPolicy(str, Enum):
    """When a wizard re-validates its form state."""
    EAGER = "eager"          # After every field update
    ON_SUBMIT = "on-submit"  # Only when the user submits


class CheckStatus(str, Enum):
    """State of a document / territorial / face check."""
    PENDING = "pending"
    CHECKING = "checking"
    ACCEPTED = "accepted"
    NEEDS_REVIEW = "needs_review"
    REJECTED = "rejected"
    ERROR = "error"


class OTPState(str, Enum):
    """State of an OTP-backed verification flow."""
    IDLE = "idle"
    SENT = "sent"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    FAILED = "failed"


class DocumentRef(BaseModel):
    """A document attached to a wizard. object_url must be released when dropped."""
    id: str
    name: str
    size: int = Field(..., ge=0, description="Size in bytes")
    mime_type: str = ""
    object_url: str
    uploaded_at: datetime = Field(default_factory=utcnow)


class ValidationResult(BaseModel):
    """
    Outcome of validating a form state.
    errors maps "section.field" (or "documents.field") to a message.
    """
    is_valid: bool
    errors: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_errors(cls, errors: Dict[str, str]) -> "ValidationResult":
        return cls(is_valid=len(errors) == 0, errors=dict(errors))


class UpdateHistoryEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    changes: Dict[str, Any] = Field(default_factory=dict)
    previous_status: SubmissionStatus


class SubmissionRecord(BaseModel):
    """
    The persisted KYC submission owned by the submission sink.
    Sections are kept as free-form mappings mirroring the wizard form state.
    """
    id: int
    user_id: str
    submission_type: str = "kyc"
    status: SubmissionStatus = SubmissionStatus.PENDING
    submission_id: str = ""
    personal_details: Dict[str, Any] = Field(default_factory=dict)
    business_details: Dict[str, Any] = Field(default_factory=dict)
    telecom_usage: Dict[str, Any] = Field(default_factory=dict)
    authorized_signatory: Dict[str, Any] = Field(default_factory=dict)
    extra_sections: Dict[str, Any] = Field(default_factory=dict)
    documents: List[DocumentRef] = Field(default_factory=list)
    submitted_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_comment: Optional[str] = None
    rejection_reason: Optional[str] = None
    otp_verified: bool = False
    version: int = 1
    update_history: List[UpdateHistoryEntry] = Field(default_factory=list)


class OTPChallenge(BaseModel):
    """A live one-time-password challenge keyed by its target."""
    target: str
    code: str
    purpose: str = "registration"
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 3
    generated_at: datetime = Field(default_factory=utcnow)
    last_attempt_at: Optional[datetime] = None


class OTPSendResult(BaseModel):
    """Handle returned by a send. debug_code is populated only in demo mode."""
    challenge_id: str
    target: str
    message: str
    expires_in: int
    can_resend_in: int
    debug_code: Optional[str] = None


class OTPVerifyResult(BaseModel):
    success: bool = True
    target: str
    purpose: str
    message: str = "OTP verified successfully!"
    verified_at: datetime = Field(default_factory=utcnow)
    time_to_verify_ms: int = 0


class PersonRecord(BaseModel):
    """Identity data returned by a successful e-KYC."""
    name: str
    date_of_birth: str
    gender: str
    address: str
    mobile: str
    email: str
    aadhaar_number: str
    photo: Optional[str] = None
    verification_level: str = "UIDAI_VERIFIED"
    timestamp: datetime = Field(default_factory=utcnow)


class Plan(BaseModel):
    """A postpaid plan offered for prepaid conversion."""
    id: int
    name: str
    price: int
    data: str
    calls: str
    sms: str
    features: List[str] = Field(default_factory=list)


class EligibilityResult(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    customer_data: Dict[str, Any] = Field(default_factory=dict)


class CheckResult(BaseModel):
    """Aggregated outcome of one weighted verification check."""
    check: str
    subject: str
    status: CheckStatus
    score: int = Field(0, ge=0, le=100)
    sub_checks: Dict[str, bool] = Field(default_factory=dict)
    details: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1
    checked_at: datetime = Field(default_factory=utcnow)

    @property
    def passed(self) -> bool:
        return self.status in (CheckStatus.ACCEPTED, CheckStatus.NEEDS_REVIEW)
