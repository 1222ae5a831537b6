"""
CAF Service - Customer Application Form generation and management.

Templates differ by customer type; a business CAF carries an extra
Business Details section and its own required fields. Required fields are
looked up at the top level of the form first, then inside the nested sections.
"""

import copy
import hashlib
import json
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from config.kyc_schema import utcnow
from backend.errors import NotFoundError, RecordValidationError
from backend.outcome_policy import OutcomePolicy, default_policy, simulate_latency

logger = logging.getLogger(__name__)

CAF_BASE_URL = "https://caf.kyc-portal.example/caf"

CAF_TEMPLATES = {
    "individual": {
        "sections": [
            "Service Selection",
            "Personal Details",
            "Address Information",
            "Service Requirements",
            "Declarations & Signatures",
        ],
        "required_fields": [
            "serviceType", "fullName", "dateOfBirth", "mobile", "email",
            "aadhaarNumber", "panNumber", "residentialAddress", "connectionType",
        ],
    },
    "business": {
        "sections": [
            "Service Selection",
            "Personal Details",
            "Address Information",
            "Business Details",
            "Service Requirements",
            "Declarations & Signatures",
        ],
        "required_fields": [
            "serviceType", "fullName", "dateOfBirth", "mobile", "email",
            "companyName", "businessType", "gstin", "businessAddress", "connectionType",
        ],
    },
}

NESTED_SECTIONS = ["personalDetails", "addressDetails", "businessDetails", "serviceDetails"]

CAF_STATUSES = ["generated", "submitted", "under-review", "approved", "rejected", "processing"]

IMMUTABLE_FIELDS = {"id", "caf_id", "generated_at", "created_at"}


class CAFRecord(BaseModel):
    id: int
    caf_id: str
    user_id: str
    form_data: Dict[str, Any] = Field(default_factory=dict)
    status: str = "generated"
    template: Dict[str, Any] = Field(default_factory=dict)
    document_url: str = ""
    qr_code: str = ""
    application_number: Optional[str] = None
    comments: str = ""
    generated_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_status_update: Optional[datetime] = None


def has_nested_value(form_data: Dict[str, Any], field: str) -> bool:
    """True if field is set at the top level or inside any nested section."""
    value = form_data.get(field)
    if value not in (None, ""):
        return True
    for section in NESTED_SECTIONS:
        nested = form_data.get(section)
        if isinstance(nested, dict) and nested.get(field):
            return True
    return False


def get_caf_template(customer_type: Optional[str]) -> Dict[str, Any]:
    return copy.deepcopy(CAF_TEMPLATES.get(customer_type or "", CAF_TEMPLATES["individual"]))


def new_caf_id() -> str:
    return f"CAF{utcnow():%Y%m%d}{uuid.uuid4().hex[:6].upper()}"


class CAFService:
    def __init__(self, policy: Optional[OutcomePolicy] = None, clock: Callable[[], datetime] = utcnow):
        self.policy = policy or default_policy()
        self.clock = clock
        self._records: List[CAFRecord] = []
        self._next_id = 1
        self._lock = threading.Lock()

    def validate_caf_data(self, user_id: Optional[str], form_data: Optional[Dict[str, Any]], caf_id: Optional[str]) -> None:
        if not user_id:
            raise RecordValidationError("User ID is required for CAF generation")
        if not form_data:
            raise RecordValidationError("Form data is required for CAF generation")
        if not caf_id:
            raise RecordValidationError("CAF ID is required")

        customer_type = form_data.get("customerType")
        if customer_type not in CAF_TEMPLATES:
            raise RecordValidationError("Invalid customer type")

        missing = [f for f in CAF_TEMPLATES[customer_type]["required_fields"] if not has_nested_value(form_data, f)]
        if missing:
            raise RecordValidationError(f"Missing required fields: {', '.join(missing)}", missing)

    def _find(self, record_id: int) -> CAFRecord:
        if not isinstance(record_id, int) or record_id <= 0:
            raise RecordValidationError("Invalid ID provided")
        for record in self._records:
            if record.id == record_id:
                return record
        raise NotFoundError(f"CAF record with id {record_id} not found")

    def _find_by_caf_id(self, caf_id: str) -> CAFRecord:
        for record in self._records:
            if record.caf_id == caf_id:
                return record
        raise NotFoundError(f"CAF with ID {caf_id} not found")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def generate(self, user_id: str, form_data: Dict[str, Any], caf_id: Optional[str] = None) -> CAFRecord:
        caf_id = caf_id or new_caf_id()
        self.validate_caf_data(user_id, form_data, caf_id)
        await simulate_latency(self.policy, "caf.generate", 600)

        with self._lock:
            now = self.clock()
            record = CAFRecord(
                id=self._next_id,
                caf_id=caf_id,
                user_id=user_id,
                form_data=copy.deepcopy(form_data),
                template=get_caf_template(form_data.get("customerType")),
                document_url=f"{CAF_BASE_URL}/documents/{caf_id}.pdf",
                qr_code=f"{CAF_BASE_URL}/verify/{caf_id}",
                generated_at=now,
                created_at=now,
            )
            self._next_id += 1
            self._records.append(record)

        logger.info(f"[CAF] Generated {caf_id} ({form_data.get('customerType')})")
        return record.model_copy(deep=True)

    async def submit(self, record_id: int) -> CAFRecord:
        await simulate_latency(self.policy, "caf.submit", 500)
        with self._lock:
            record = self._find(record_id)
            now = self.clock()
            record.status = "submitted"
            record.submitted_at = now
            record.updated_at = now
            record.application_number = f"APP{now:%Y%m%d%H%M%S}{record.id:04d}"
        logger.info(f"[CAF] Submitted {record.caf_id} as {record.application_number}")
        return record.model_copy(deep=True)

    async def update_status(self, record_id: int, status: str, comments: str = "") -> CAFRecord:
        if status not in CAF_STATUSES:
            raise RecordValidationError(f"Invalid status: {status}. Must be one of: {', '.join(CAF_STATUSES)}")
        with self._lock:
            record = self._find(record_id)
            now = self.clock()
            record.status = status
            record.comments = comments
            record.last_status_update = now
            record.updated_at = now
            return record.model_copy(deep=True)

    async def update_record(self, record_id: int, updates: Dict[str, Any]) -> CAFRecord:
        """Partial update. id, caf_id, generated_at and created_at are ignored."""
        with self._lock:
            record = self._find(record_id)
            for key, value in updates.items():
                if key in IMMUTABLE_FIELDS or key not in CAFRecord.model_fields:
                    continue
                setattr(record, key, value)
            record.updated_at = self.clock()
            return record.model_copy(deep=True)

    async def delete(self, record_id: int) -> CAFRecord:
        with self._lock:
            record = self._find(record_id)
            self._records.remove(record)
            return record

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def download(self, caf_id: str) -> Dict[str, Any]:
        await simulate_latency(self.policy, "caf.download", 400)
        record = self._find_by_caf_id(caf_id)
        return {
            "caf_id": caf_id,
            "download_url": record.document_url,
            "filename": f"CAF_{caf_id}.pdf",
            "mime_type": "application/pdf",
            "expires_at": self.clock() + timedelta(minutes=30),
        }

    async def preview(self, form_data: Dict[str, Any]) -> Dict[str, Any]:
        customer_type = form_data.get("customerType")
        now = self.clock()
        return {
            "preview_url": f"{CAF_BASE_URL}/preview/{uuid.uuid4().hex[:12]}",
            "sections": get_caf_template(customer_type)["sections"],
            "estimated_pages": 3 if customer_type == "business" else 2,
            "generated_at": now,
            "expires_at": now + timedelta(minutes=15),
        }

    async def validate_integrity(self, caf_id: str) -> Dict[str, Any]:
        """Checksum over the stored form data."""
        record = self._find_by_caf_id(caf_id)
        payload = json.dumps(record.form_data, sort_keys=True, default=str).encode()
        return {
            "caf_id": caf_id,
            "valid": True,
            "generated_at": record.generated_at,
            "submitted_at": record.submitted_at,
            "status": record.status,
            "checksum": f"CHK{hashlib.sha256(payload).hexdigest()[:16].upper()}",
            "verified_at": self.clock(),
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, record_id: int) -> CAFRecord:
        return self._find(record_id).model_copy(deep=True)

    def get_by_caf_id(self, caf_id: str) -> CAFRecord:
        return self._find_by_caf_id(caf_id).model_copy(deep=True)

    def list_all(self) -> List[CAFRecord]:
        return [r.model_copy(deep=True) for r in self._records]

    def by_user(self, user_id: str) -> List[CAFRecord]:
        return [r for r in self.list_all() if r.user_id == user_id]

    def by_status(self, status: str) -> List[CAFRecord]:
        return [r for r in self.list_all() if r.status == status]

    def search(self, query: Optional[str]) -> List[CAFRecord]:
        """Match on CAF id, application number, applicant name or mobile."""
        if not query or not query.strip():
            return self.list_all()
        term = query.strip().lower()
        results = []
        for record in self.list_all():
            personal = record.form_data.get("personalDetails") or {}
            if (
                term in record.caf_id.lower()
                or (record.application_number and term in record.application_number.lower())
                or term in str(personal.get("fullName", "")).lower()
                or term in str(personal.get("mobile", ""))
            ):
                results.append(record)
        return results

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"total": 0, "by_type": {}, "by_service": {}}
        for record in self._records:
            stats["total"] += 1
            stats[record.status] = stats.get(record.status, 0) + 1
            customer_type = record.form_data.get("customerType")
            if customer_type:
                stats["by_type"][customer_type] = stats["by_type"].get(customer_type, 0) + 1
            service_type = record.form_data.get("serviceType")
            if service_type:
                stats["by_service"][service_type] = stats["by_service"].get(service_type, 0) + 1
        return stats
