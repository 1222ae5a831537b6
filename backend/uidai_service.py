"""
UIDAI Service - Simulated Aadhaar e-KYC identity registry.

initiate_ekyc() sends an OTP to the Aadhaar-linked mobile (10 minute
challenge); verify_ekyc_otp() returns the PersonRecord on success. Verified
records can be saved and managed afterwards.
"""

import copy
import logging
import threading
import uuid
from typing import Any, Dict, List, Optional

from config.kyc_schema import PersonRecord
from config.logging_config import mask_aadhaar
from config.settings import settings
from backend.errors import NotFoundError, RecordValidationError
from backend.form_validator import validate_aadhaar_strict, validate_uidai_response
from backend.otp_service import ChallengeTable
from backend.outcome_policy import OutcomePolicy, default_policy, simulate_latency

logger = logging.getLogger(__name__)

REGISTRY_PEOPLE = [
    ("Rahul Kumar", "House No. 123, Sector 15, Noida, Uttar Pradesh"),
    ("Priya Sharma", "Flat 4B, Residency Road, Bangalore, Karnataka"),
    ("Amit Patel", "2nd Floor, MG Road, Pune, Maharashtra"),
    ("Sneha Singh", "Bungalow 56, Satellite, Ahmedabad, Gujarat"),
    ("Rohit Gupta", "Apartment 301, Anna Nagar, Chennai, Tamil Nadu"),
]


def _digits(aadhaar: str) -> str:
    return "".join(ch for ch in str(aadhaar or "") if not ch.isspace())


class UIDAIService:
    def __init__(
        self,
        table: Optional[ChallengeTable] = None,
        policy: Optional[OutcomePolicy] = None,
        expose_debug_code: Optional[bool] = None,
    ):
        self.table = table or ChallengeTable(ttl_minutes=settings.EKYC_OTP_TTL_MINUTES, cooldown_seconds=0)
        self.policy = policy or default_policy()
        self.expose_debug_code = (
            expose_debug_code if expose_debug_code is not None
            else settings.DEMO_MODE and settings.EXPOSE_DEBUG_OTP
        )
        self._records: List[Dict[str, Any]] = []
        self._next_id = 1
        self._lock = threading.Lock()

    def validate_aadhaar(self, aadhaar_number: str) -> Dict[str, Any]:
        is_valid, message = validate_aadhaar_strict(aadhaar_number)
        return {"valid": is_valid, "error": message}

    async def initiate_ekyc(self, aadhaar_number: str) -> Dict[str, Any]:
        aadhaar = _digits(aadhaar_number)
        is_valid, message = validate_aadhaar_strict(aadhaar)
        if not is_valid:
            raise RecordValidationError(message, [message])

        await simulate_latency(self.policy, "uidai.initiate", 500)
        challenge = self.table.issue(aadhaar, purpose="ekyc")
        logger.info(f"[UIDAI] e-KYC OTP sent for {mask_aadhaar(aadhaar)}")

        result = {
            "success": True,
            "message": "OTP sent to registered mobile number",
            "transaction_id": f"TXN{uuid.uuid4().hex[:12].upper()}",
            "expires_in": self.table.ttl_minutes * 60,
        }
        if self.expose_debug_code:
            result["debug_code"] = challenge.code
        return result

    def cancel_ekyc(self, aadhaar_number: str) -> bool:
        """Abandon a pending e-KYC OTP. Returns whether one was live."""
        return self.table.discard(_digits(aadhaar_number))

    async def verify_ekyc_otp(self, aadhaar_number: str, code: str) -> PersonRecord:
        aadhaar = _digits(aadhaar_number)
        await simulate_latency(self.policy, "uidai.verify", 800)
        self.table.verify(aadhaar, code)

        name, address = self.policy.choice("uidai.person", REGISTRY_PEOPLE)
        kyc_data = {
            "name": name,
            "date_of_birth": "1990-05-15",
            "gender": "Male" if self.policy.chance("uidai.gender", 0.5) else "Female",
            "address": address,
        }
        is_valid, message = validate_uidai_response({"kyc_data": kyc_data})
        if not is_valid:
            raise RecordValidationError(message, [message])

        logger.info(f"[UIDAI] e-KYC verified for {mask_aadhaar(aadhaar)}")
        return PersonRecord(
            **kyc_data,
            mobile="9876543210",
            email="user@example.com",
            aadhaar_number=mask_aadhaar(aadhaar),
        )

    # ------------------------------------------------------------------
    # e-KYC records
    # ------------------------------------------------------------------

    def _find(self, record_id: int) -> Dict[str, Any]:
        if not isinstance(record_id, int) or record_id <= 0:
            raise RecordValidationError("Invalid ID provided")
        for record in self._records:
            if record["id"] == record_id:
                return record
        raise NotFoundError(f"e-KYC record with id {record_id} not found")

    async def save_ekyc_data(self, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            saved = {**record, "id": self._next_id, "saved_at": self.table.clock()}
            self._next_id += 1
            self._records.append(saved)
            return copy.deepcopy(saved)

    async def get_ekyc_data(self, user_id: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._records if r.get("user_id") == user_id]

    async def get_all_ekyc_data(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._records)

    async def get_ekyc_by_id(self, record_id: int) -> Dict[str, Any]:
        return copy.deepcopy(self._find(record_id))

    async def update_ekyc_record(self, record_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            record = self._find(record_id)
            record.update({k: v for k, v in updates.items() if k != "id"})
            record["updated_at"] = self.table.clock()
            return copy.deepcopy(record)

    async def delete_ekyc_record(self, record_id: int) -> Dict[str, Any]:
        with self._lock:
            record = self._find(record_id)
            self._records.remove(record)
            return record

    async def get_verification_stats(self) -> Dict[str, int]:
        stats = {"total": 0}
        for record in self._records:
            stats["total"] += 1
            status = record.get("status", "verified")
            stats[status] = stats.get(status, 0) + 1
        return stats

    async def check_service_status(self) -> Dict[str, Any]:
        return {
            "status": "operational",
            "message": "UIDAI services are operational",
            "last_checked": self.table.clock(),
        }
