"""
Submission Store - The submission sink for KYC and Self-KYC records.

Owns the in-memory record list. Every mutation runs under one lock so that
id assignment (max existing id + 1) and status transitions stay consistent
when several requests complete at once.

Status transitions:
    pending              -> any status
    under-review         -> approved, rejected, pending
    approved             -> (final)
    rejected             -> pending
    pending-verification -> pending, under-review
An update to the current status is always allowed.
"""

import copy
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from config.kyc_schema import (
    DocumentRef,
    SubmissionRecord,
    SubmissionStatus,
    UpdateHistoryEntry,
    utcnow,
)
from backend.errors import (
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    RecordValidationError,
    TransientServiceError,
)
from backend.outcome_policy import OutcomePolicy, default_policy, simulate_latency

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    SubmissionStatus.PENDING: set(SubmissionStatus),
    SubmissionStatus.UNDER_REVIEW: {SubmissionStatus.APPROVED, SubmissionStatus.REJECTED, SubmissionStatus.PENDING},
    SubmissionStatus.APPROVED: set(),
    SubmissionStatus.REJECTED: {SubmissionStatus.PENDING},
    SubmissionStatus.PENDING_VERIFICATION: {SubmissionStatus.PENDING, SubmissionStatus.UNDER_REVIEW},
}

# Form section name -> record attribute
SECTION_FIELDS = {
    "personalDetails": "personal_details",
    "businessDetails": "business_details",
    "telecomUsage": "telecom_usage",
    "authorizedSignatory": "authorized_signatory",
}

# Identity and audit fields; patches naming them are dropped
IMMUTABLE_FIELDS = {
    "id", "user_id", "submission_type", "submission_id", "submitted_at", "update_history", "version",
}

NETWORK_SUCCESS_PROBABILITY = 0.9


def can_transition(current: SubmissionStatus, target: SubmissionStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


def _collect_documents(sections: Iterable[Dict[str, Any]]) -> List[DocumentRef]:
    documents = []
    for section in sections:
        for value in section.values():
            if isinstance(value, list):
                documents.extend(v for v in value if isinstance(v, DocumentRef))
    return documents


class SubmissionStore:
    def __init__(
        self,
        policy: Optional[OutcomePolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        records: Optional[Iterable[SubmissionRecord]] = None,
    ):
        self.policy = policy or default_policy()
        self.clock = clock
        self._records: List[SubmissionRecord] = list(records or [])
        self._lock = threading.Lock()

    def _next_id(self) -> int:
        return max((r.id for r in self._records), default=0) + 1

    def _find(self, record_id: int) -> SubmissionRecord:
        for record in self._records:
            if record.id == record_id:
                return record
        raise NotFoundError(f"KYC submission not found. No record exists with ID {record_id}.")

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, data: Dict[str, Any]) -> SubmissionRecord:
        """
        Persist a submitted form.

        Args:
            data: form snapshot keyed by section name plus a userId. Any status
                in it is ignored; new records always start pending.

        Raises:
            ConfigurationError: no userId
            RecordValidationError: required sections or fields missing
            TransientServiceError: simulated network failure
        """
        if not data.get("userId"):
            raise ConfigurationError("User identification is required to process KYC submission")

        problems = []
        personal = data.get("personalDetails")
        if not personal:
            problems.append("Personal details section is mandatory")
        else:
            if not personal.get("fullName"):
                problems.append("Full name is required in personal details")
            if not personal.get("mobile"):
                problems.append("Mobile number is required in personal details")
        business = data.get("businessDetails")
        if not business:
            problems.append("Business details section is mandatory")
        elif not business.get("companyName"):
            problems.append("Company name is required in business details")
        if problems:
            raise RecordValidationError(f"Validation failed: {'; '.join(problems)}", problems)

        await simulate_latency(self.policy, "sink.create", 500)
        if not self.policy.chance("sink.network", NETWORK_SUCCESS_PROBABILITY):
            raise TransientServiceError("Network connection failed. Please check your internet connection.")

        sections = {attr: copy.deepcopy(data.get(name) or {}) for name, attr in SECTION_FIELDS.items()}
        extra = {
            k: copy.deepcopy(v) for k, v in data.items()
            if k not in SECTION_FIELDS and k not in ("userId", "status")
        }

        with self._lock:
            now = self.clock()
            record = SubmissionRecord(
                id=self._next_id(),
                user_id=str(data["userId"]),
                status=SubmissionStatus.PENDING,
                submission_id=f"KYC{now:%Y%m%d%H%M%S}{uuid.uuid4().hex[:4].upper()}",
                extra_sections=extra,
                documents=_collect_documents(sections.values()),
                submitted_at=now,
                updated_at=now,
                **sections,
            )
            self._records.append(record)

        logger.info(f"[Sink] Created submission {record.id} for user {record.user_id}")
        return record.model_copy(deep=True)

    async def register_self_kyc(self, data: Dict[str, Any]) -> SubmissionRecord:
        """Self-KYC registration, stored as pending-verification until the OTP is confirmed."""
        problems = []
        if not data.get("primaryMobile"):
            problems.append("Primary mobile number is required")
        if not data.get("alternateMobile"):
            problems.append("Alternate mobile number is required")
        if not data.get("relationship"):
            problems.append("Relationship with alternate contact is required")
        if problems:
            raise RecordValidationError(problems[0], problems)

        await simulate_latency(self.policy, "sink.register_self_kyc", 500)
        with self._lock:
            now = self.clock()
            record = SubmissionRecord(
                id=self._next_id(),
                user_id=str(data.get("userId") or data["primaryMobile"]),
                submission_type="self-kyc",
                status=SubmissionStatus.PENDING_VERIFICATION,
                extra_sections={"selfKyc": {k: v for k, v in data.items() if k not in ("userId", "otp")}},
                submitted_at=now,
                updated_at=now,
            )
            self._records.append(record)

        logger.info(f"[Sink] Registered Self-KYC {record.id}")
        return record.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def _apply_update(self, record_id: int, patch: Dict[str, Any]) -> SubmissionRecord:
        if not isinstance(record_id, int) or record_id <= 0:
            raise RecordValidationError("Invalid submission ID. Please provide a valid positive integer.")

        with self._lock:
            record = self._find(record_id)
            changes = {k: v for k, v in patch.items() if SECTION_FIELDS.get(k, k) not in IMMUTABLE_FIELDS}

            if "status" in changes:
                if changes["status"] is None:
                    raise RecordValidationError("Status cannot be cleared")
                try:
                    target = SubmissionStatus(changes["status"])
                except ValueError:
                    valid = ", ".join(s.value for s in SubmissionStatus)
                    raise RecordValidationError(
                        f"Invalid status transition. Status '{changes['status']}' is not allowed. Valid statuses: {valid}"
                    )
                if not can_transition(record.status, target):
                    allowed = ", ".join(sorted(s.value for s in ALLOWED_TRANSITIONS[record.status])) or "none"
                    raise InvalidTransitionError(
                        f"Status cannot be changed from '{record.status.value}' to '{target.value}'. "
                        f"Allowed transitions: {allowed}"
                    )
                changes["status"] = target

            fields = {}
            extra = {}
            for key, value in changes.items():
                attr = SECTION_FIELDS.get(key, key)
                if attr in SubmissionRecord.model_fields:
                    fields[attr] = value
                else:
                    extra[key] = value

            # Validate the whole patched record before touching the stored one
            try:
                patched = SubmissionRecord.model_validate({**record.model_dump(), **fields})
            except ValidationError as e:
                problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
                raise RecordValidationError(f"Invalid submission update: {'; '.join(problems)}", problems)

            history_entry = UpdateHistoryEntry(
                timestamp=self.clock(),
                changes={k: (v.value if isinstance(v, SubmissionStatus) else v) for k, v in changes.items()},
                previous_status=record.status,
            )
            for attr in fields:
                setattr(record, attr, getattr(patched, attr))
            record.extra_sections.update(extra)

            record.update_history.append(history_entry)
            record.version += 1
            record.updated_at = self.clock()
            return record.model_copy(deep=True)

    async def update(self, record_id: int, patch: Dict[str, Any]) -> SubmissionRecord:
        await simulate_latency(self.policy, "sink.update", 400)
        record = self._apply_update(record_id, patch)
        logger.info(f"[Sink] Updated submission {record_id} (status={record.status.value}, v{record.version})")
        return record

    async def approve(self, record_id: int, reviewed_by: str, comment: str = "") -> SubmissionRecord:
        if not reviewed_by or not reviewed_by.strip():
            raise RecordValidationError("Reviewer information is required for approval")
        return await self.update(record_id, {
            "status": SubmissionStatus.APPROVED,
            "reviewed_by": reviewed_by.strip(),
            "reviewed_at": self.clock(),
            "review_comment": (comment or "").strip(),
        })

    async def reject(self, record_id: int, reviewed_by: str, reason: str) -> SubmissionRecord:
        if not reviewed_by or not reviewed_by.strip():
            raise RecordValidationError("Reviewer information is required for rejection")
        if not reason or not reason.strip():
            raise RecordValidationError("Rejection reason is required")
        return await self.update(record_id, {
            "status": SubmissionStatus.REJECTED,
            "reviewed_by": reviewed_by.strip(),
            "reviewed_at": self.clock(),
            "rejection_reason": reason.strip(),
        })

    async def update_self_kyc_status(
        self,
        record_id: int,
        status: SubmissionStatus,
        otp_verified: bool = False,
    ) -> SubmissionRecord:
        return await self.update(record_id, {"status": status, "otp_verified": otp_verified})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, record_id: int) -> SubmissionRecord:
        with self._lock:
            return self._find(record_id).model_copy(deep=True)

    def list_all(self) -> List[SubmissionRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records]

    def by_status(self, status: SubmissionStatus) -> List[SubmissionRecord]:
        status = SubmissionStatus(status)
        return [r for r in self.list_all() if r.status == status]

    def by_user(self, user_id: str) -> List[SubmissionRecord]:
        return [r for r in self.list_all() if r.user_id == user_id]

    def delete(self, record_id: int) -> SubmissionRecord:
        """Explicit admin removal."""
        with self._lock:
            record = self._find(record_id)
            self._records.remove(record)
        logger.info(f"[Sink] Deleted submission {record_id}")
        return record

    def stats(self) -> Dict[str, int]:
        stats = {"total": 0}
        for record in self.list_all():
            stats["total"] += 1
            stats[record.status.value] = stats.get(record.status.value, 0) + 1
        return stats
