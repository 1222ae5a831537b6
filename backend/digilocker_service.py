"""
DigiLocker Service - Simulated document authority.

Stands in for the DigiLocker OAuth flow and document repository:
authorization URL, code-for-token exchange, token refresh, document listing,
authenticity checks and a store of verification records.
"""

import copy
import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from config.kyc_schema import DocumentRef, utcnow
from backend.errors import ExpiredError, NotFoundError, RecordValidationError
from backend.form_validator import validate_digilocker_document
from backend.outcome_policy import OutcomePolicy, default_policy, simulate_latency

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://api.digitallocker.gov.in/public/oauth2/1/authorize"
DOWNLOAD_URL = "https://api.digitallocker.gov.in/download"
TOKEN_TTL_SECONDS = 3600
DOWNLOAD_TTL_MINUTES = 15

DOCUMENT_ISSUERS = {
    "aadhaar": "UIDAI",
    "pan": "Income Tax Department",
    "driving_license": "Transport Department",
    "passport": "Passport Office",
    "voter_id": "Election Commission",
    "ration_card": "Food & Supply Department",
}

USER_DOCUMENTS = [
    {"id": "AADHAAR-001", "name": "Aadhaar Card", "type": "aadhaar", "issuer": "UIDAI",
     "issue_date": "2020-01-15", "size": "245KB", "format": "PDF", "verified": True},
    {"id": "PAN-001", "name": "PAN Card", "type": "pan", "issuer": "Income Tax Department",
     "issue_date": "2019-03-20", "size": "180KB", "format": "PDF", "verified": True},
    {"id": "DL-001", "name": "Driving License", "type": "driving_license", "issuer": "Transport Department",
     "issue_date": "2021-06-10", "size": "320KB", "format": "PDF", "verified": True},
    {"id": "PASSPORT-001", "name": "Passport", "type": "passport", "issuer": "Passport Office",
     "issue_date": "2018-11-05", "size": "450KB", "format": "PDF", "verified": True},
]

VERIFICATION_DETAILS = {
    "aadhaar": {"name": "Rahul Kumar", "number": "****-****-1234", "date_of_birth": "1990-05-15",
                "address": "House No. 123, Sector 15, Noida, Uttar Pradesh"},
    "pan": {"name": "RAHUL KUMAR", "number": "ABCDE1234F", "date_of_birth": "15/05/1990",
            "father_name": "SURESH KUMAR"},
    "driving_license": {"name": "Rahul Kumar", "number": "DL-1420110012345", "valid_from": "2021-06-10",
                        "valid_upto": "2041-06-09"},
    "passport": {"name": "RAHUL KUMAR", "number": "A1234567", "date_of_issue": "2018-11-05",
                 "date_of_expiry": "2028-11-04", "place_of_birth": "Delhi"},
    "voter_id": {"name": "Rahul Kumar", "number": "ABC1234567", "assembly_constituency": "123 - Noida"},
    "ration_card": {"name": "Rahul Kumar", "number": "RC1234567890", "card_type": "APL"},
}


def get_document_issuer(doc_type: str) -> str:
    return DOCUMENT_ISSUERS.get(doc_type, "Government Authority")


def _size_in_bytes(size: str) -> int:
    text = str(size).strip().upper()
    if text.endswith("KB"):
        return int(float(text[:-2]) * 1024)
    if text.endswith("MB"):
        return int(float(text[:-2]) * 1024 * 1024)
    return int(float(text or 0))


class DigiLockerService:
    def __init__(
        self,
        policy: Optional[OutcomePolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        client_id: str = "kyc_portal_client",
        redirect_uri: str = "http://localhost:8000/digilocker/callback",
    ):
        self.policy = policy or default_policy()
        self.clock = clock
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self._tokens: Dict[str, Dict[str, Any]] = {}
        self._records: List[Dict[str, Any]] = []
        self._next_id = 1
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def get_authorization_url(self) -> Dict[str, str]:
        await simulate_latency(self.policy, "digilocker.auth_url", 200)
        state = secrets.token_hex(8)
        auth_url = (
            f"{AUTHORIZE_URL}?response_type=code&client_id={self.client_id}"
            f"&redirect_uri={self.redirect_uri}&state={state}"
        )
        return {"auth_url": auth_url, "state": state}

    def _issue_tokens(self) -> Dict[str, Any]:
        access_token = f"dl_token_{secrets.token_hex(8)}"
        refresh_token = f"dl_refresh_{secrets.token_hex(8)}"
        self._tokens[access_token] = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": self.clock() + timedelta(seconds=TOKEN_TTL_SECONDS),
            "created_at": self.clock(),
        }
        return {"access_token": access_token, "refresh_token": refresh_token, "expires_in": TOKEN_TTL_SECONDS}

    async def handle_authorization_callback(self, code: str, state: Optional[str] = None) -> Dict[str, Any]:
        """Exchange an authorization code for a one hour access token."""
        if not code:
            raise RecordValidationError("Authorization code is required")
        await simulate_latency(self.policy, "digilocker.callback", 500)
        with self._lock:
            tokens = self._issue_tokens()
        logger.info("[DigiLocker] Authorization code exchanged for access token")
        return tokens

    async def refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        await simulate_latency(self.policy, "digilocker.refresh", 300)
        with self._lock:
            entry = next((t for t in self._tokens.values() if t["refresh_token"] == refresh_token), None)
            if entry is None:
                raise NotFoundError("Invalid refresh token")
            del self._tokens[entry["access_token"]]
            return self._issue_tokens()

    def _require_token(self, access_token: str) -> None:
        entry = self._tokens.get(access_token)
        if entry is None:
            raise NotFoundError("Invalid or expired access token")
        if self.clock() > entry["expires_at"]:
            del self._tokens[access_token]
            raise ExpiredError("Invalid or expired access token")

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get_user_documents(self, access_token: str) -> List[Dict[str, Any]]:
        await simulate_latency(self.policy, "digilocker.documents", 400)
        self._require_token(access_token)
        documents = copy.deepcopy(USER_DOCUMENTS)
        for doc in documents:
            is_valid, message = validate_digilocker_document(doc)
            if not is_valid:
                raise RecordValidationError(message, [message])
        return documents

    async def authorize_and_fetch_documents(self, auth_code: str) -> List[DocumentRef]:
        """Callback exchange followed by a document listing, as DocumentRefs."""
        tokens = await self.handle_authorization_callback(auth_code)
        documents = await self.get_user_documents(tokens["access_token"])
        return [
            DocumentRef(
                id=doc["id"],
                name=doc["name"],
                size=_size_in_bytes(doc["size"]),
                mime_type="application/pdf" if doc["format"] == "PDF" else "",
                object_url=f"{DOWNLOAD_URL}/{doc['id']}",
                uploaded_at=self.clock(),
            )
            for doc in documents
        ]

    async def download_document(self, document_id: str, access_token: str) -> Dict[str, Any]:
        await simulate_latency(self.policy, "digilocker.download", 300)
        self._require_token(access_token)
        return {
            "document_id": document_id,
            "download_url": f"{DOWNLOAD_URL}/{document_id}",
            "expires_at": self.clock() + timedelta(minutes=DOWNLOAD_TTL_MINUTES),
        }

    async def check_authenticity(self, document_id: str) -> Dict[str, Any]:
        await simulate_latency(self.policy, "digilocker.authenticity", 400)
        result = {
            "document_id": document_id,
            "authentic": self.policy.chance("digilocker.authentic", 0.95),
            "verified_by": "DigiLocker",
            "issuer_verified": self.policy.chance("digilocker.issuer_verified", 0.95),
            "tampering": not self.policy.chance("digilocker.no_tampering", 0.95),
            "verified_at": self.clock(),
        }
        logger.info(f"[DigiLocker] Authenticity for {document_id}: authentic={result['authentic']}")
        return result

    async def verify_documents(self, document_types: List[str], user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        await simulate_latency(self.policy, "digilocker.verify", 600)
        results = []
        with self._lock:
            for doc_type in document_types:
                record = {
                    "id": self._next_id,
                    "user_id": user_id,
                    "type": doc_type,
                    "verified": True,
                    "verified_at": self.clock(),
                    "issuer": get_document_issuer(doc_type),
                    "status": "verified",
                    "details": copy.deepcopy(VERIFICATION_DETAILS.get(doc_type, {"verified": True})),
                }
                self._next_id += 1
                self._records.append(record)
                results.append(copy.deepcopy(record))
        return results

    # ------------------------------------------------------------------
    # Verification records
    # ------------------------------------------------------------------

    async def save_verification_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            record = {**data, "id": self._next_id, "saved_at": self.clock()}
            self._next_id += 1
            self._records.append(record)
            return copy.deepcopy(record)

    def _find(self, record_id: int) -> Dict[str, Any]:
        if not isinstance(record_id, int) or record_id <= 0:
            raise RecordValidationError("Invalid ID provided")
        for record in self._records:
            if record["id"] == record_id:
                return record
        raise NotFoundError(f"Verification record with id {record_id} not found")

    async def get_verification_history(self, user_id: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._records if r.get("user_id") == user_id]

    async def get_all_verifications(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._records)

    async def get_verification_by_id(self, record_id: int) -> Dict[str, Any]:
        return copy.deepcopy(self._find(record_id))

    async def update_verification_record(self, record_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            record = self._find(record_id)
            record.update({k: v for k, v in updates.items() if k != "id"})
            record["updated_at"] = self.clock()
            return copy.deepcopy(record)

    async def delete_verification_record(self, record_id: int) -> Dict[str, Any]:
        with self._lock:
            record = self._find(record_id)
            self._records.remove(record)
            return record

    async def get_verification_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"total": 0, "by_type": {}}
        for record in self._records:
            stats["total"] += 1
            status = record.get("status", "verified")
            stats[status] = stats.get(status, 0) + 1
            if record.get("type"):
                stats["by_type"][record["type"]] = stats["by_type"].get(record["type"], 0) + 1
        return stats

    async def check_service_status(self) -> Dict[str, Any]:
        return {
            "status": "operational",
            "message": "DigiLocker services are operational",
            "last_checked": self.clock(),
        }
