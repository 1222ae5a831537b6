"""
Conversion Service - Prepaid to postpaid plan conversion.

PlanCatalog lists the postpaid plans; EligibilityService decides whether a
prepaid number may convert (active for 90 days, nothing outstanding);
ConversionService records conversions and reports their progress.
Ownership of the number is proven separately with a "conversion" OTP.
"""

import copy
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from config.kyc_schema import EligibilityResult, Plan, utcnow
from backend.errors import NotFoundError, RecordValidationError
from backend.form_validator import validate_conversion_eligibility, validate_conversion_plan, validate_mobile
from backend.otp_service import normalize_mobile
from backend.outcome_policy import OutcomePolicy, default_policy, simulate_latency

logger = logging.getLogger(__name__)

MIN_ACCOUNT_AGE_DAYS = 90

POSTPAID_PLANS = [
    Plan(id=1, name="Starter Postpaid", price=399, data="25GB", calls="Unlimited", sms="100/day",
         features=["Free Roaming", "Netflix Basic"]),
    Plan(id=2, name="Premium Postpaid", price=599, data="50GB", calls="Unlimited", sms="Unlimited",
         features=["Free Roaming", "Netflix Premium", "Amazon Prime"]),
    Plan(id=3, name="Business Postpaid", price=999, data="100GB", calls="Unlimited", sms="Unlimited",
         features=["Free Roaming", "Priority Support", "Cloud Storage"]),
    Plan(id=4, name="Family Postpaid", price=1299, data="150GB", calls="Unlimited", sms="Unlimited",
         features=["4 Connections", "Shared Data", "Netflix Family", "Disney+ Hotstar"]),
]

CUSTOMER_ACCOUNTS = {
    "9876543210": {"name": "Rahul Kumar", "current_plan": "Prepaid Unlimited", "account_age": 180,
                   "outstanding_amount": 0, "eligible": True},
    "8765432109": {"name": "Priya Sharma", "current_plan": "Prepaid Basic", "account_age": 45,
                   "outstanding_amount": 150, "eligible": False,
                   "reason": "Account not active for minimum 90 days"},
    "7654321098": {"name": "Amit Patel", "current_plan": "Prepaid Premium", "account_age": 120,
                   "outstanding_amount": 75, "eligible": False,
                   "reason": "Outstanding amount needs to be cleared"},
}

DEFAULT_ACCOUNT = {"name": "Customer", "current_plan": "Prepaid Basic", "account_age": 200,
                   "outstanding_amount": 0, "eligible": True}

CONVERSION_STATUSES = ["pending", "processing", "in-progress", "completed", "failed", "cancelled"]


class ConversionRecord(BaseModel):
    id: int
    conversion_id: str
    mobile_number: str
    to_plan: int
    plan_details: Plan
    status: str = "processing"
    from_plan: Optional[str] = None
    estimated_completion_time: str = "24 hours"
    comments: str = ""
    cancellation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


def _canonical_mobile(mobile: str) -> str:
    """Ten-digit form of an Indian mobile; +91 / 0 prefixes and spaces are accepted."""
    is_valid, _ = validate_mobile(mobile)
    if not is_valid:
        raise RecordValidationError("Invalid mobile number")
    return normalize_mobile(mobile)


class PlanCatalog:
    def __init__(self, plans: Optional[List[Plan]] = None):
        self._plans = list(plans or POSTPAID_PLANS)

    def list_plans(self) -> List[Plan]:
        return [p.model_copy(deep=True) for p in self._plans]

    def get(self, plan_id: int) -> Plan:
        for plan in self._plans:
            if plan.id == plan_id:
                return plan.model_copy(deep=True)
        raise NotFoundError("Selected plan not found")


class EligibilityService:
    def __init__(self, accounts: Optional[Dict[str, Dict[str, Any]]] = None, policy: Optional[OutcomePolicy] = None):
        self.accounts = accounts if accounts is not None else CUSTOMER_ACCOUNTS
        self.policy = policy or default_policy()

    async def check(self, mobile: str) -> EligibilityResult:
        mobile = _canonical_mobile(mobile)
        await simulate_latency(self.policy, "conversion.eligibility", 400)

        account = copy.deepcopy(self.accounts.get(mobile, DEFAULT_ACCOUNT))
        if not account.get("eligible"):
            return EligibilityResult(
                eligible=False,
                reason=account.get("reason") or "Not eligible for conversion",
                customer_data=account,
            )
        if account["account_age"] < MIN_ACCOUNT_AGE_DAYS:
            return EligibilityResult(
                eligible=False,
                reason=f"Account must be active for at least {MIN_ACCOUNT_AGE_DAYS} days",
                customer_data=account,
            )
        if account["outstanding_amount"] > 0:
            return EligibilityResult(
                eligible=False,
                reason=f"Outstanding amount of ₹{account['outstanding_amount']} must be cleared",
                customer_data=account,
            )
        return EligibilityResult(
            eligible=True,
            message="Mobile number is eligible for conversion",
            customer_data=account,
        )


class ConversionService:
    def __init__(
        self,
        catalog: Optional[PlanCatalog] = None,
        eligibility: Optional[EligibilityService] = None,
        policy: Optional[OutcomePolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog or PlanCatalog()
        self.policy = policy or default_policy()
        self.eligibility = eligibility or EligibilityService(policy=self.policy)
        self.clock = clock
        self._records: List[ConversionRecord] = []
        self._next_id = 1
        self._lock = threading.Lock()

    def _find(self, conversion_id: str) -> ConversionRecord:
        for record in self._records:
            if record.conversion_id == conversion_id:
                return record
        raise NotFoundError(f"Conversion with ID {conversion_id} not found")

    def _find_by_id(self, record_id: int) -> ConversionRecord:
        if not isinstance(record_id, int) or record_id <= 0:
            raise RecordValidationError("Invalid ID provided")
        for record in self._records:
            if record.id == record_id:
                return record
        raise NotFoundError(f"Conversion record with id {record_id} not found")

    async def process_conversion(
        self,
        mobile_number: str,
        to_plan: int,
        eligibility: Optional[EligibilityResult] = None,
        from_plan: Optional[str] = None,
    ) -> ConversionRecord:
        """Record a conversion. When an eligibility result is supplied it must be eligible."""
        if not mobile_number or not to_plan:
            raise RecordValidationError("Mobile number and target plan are required")
        mobile_number = _canonical_mobile(mobile_number)

        is_valid, message = validate_conversion_plan(to_plan, self.catalog.list_plans())
        if not is_valid:
            raise NotFoundError(message)
        if eligibility is not None:
            is_valid, message = validate_conversion_eligibility(eligibility)
            if not is_valid:
                raise RecordValidationError(message, [message])

        plan = self.catalog.get(to_plan)
        await simulate_latency(self.policy, "conversion.process", 800)

        with self._lock:
            now = self.clock()
            record = ConversionRecord(
                id=self._next_id,
                conversion_id=f"CONV{now:%Y%m%d%H%M%S}{uuid.uuid4().hex[:4].upper()}",
                mobile_number=mobile_number,
                to_plan=to_plan,
                plan_details=plan,
                from_plan=from_plan,
                created_at=now,
            )
            self._next_id += 1
            self._records.append(record)

        logger.info(f"[Conversion] {record.conversion_id} to {plan.name}")
        return record.model_copy(deep=True)

    def get_status(self, conversion_id: str) -> Dict[str, Any]:
        """Progress by age: over 2h in-progress, over 24h completed. Explicit statuses win."""
        record = self._find(conversion_id)
        status = record.status
        if status == "processing":
            hours = (self.clock() - record.created_at).total_seconds() / 3600
            if hours > 24:
                status = "completed"
            elif hours > 2:
                status = "in-progress"
        data = record.model_dump()
        data["status"] = status
        data["last_updated"] = self.clock()
        return data

    async def update_status(self, record_id: int, status: str, comments: str = "") -> ConversionRecord:
        if status not in CONVERSION_STATUSES:
            raise RecordValidationError(f"Invalid status: {status}. Must be one of: {', '.join(CONVERSION_STATUSES)}")
        with self._lock:
            record = self._find_by_id(record_id)
            record.status = status
            record.comments = comments
            record.updated_at = self.clock()
            return record.model_copy(deep=True)

    async def cancel(self, conversion_id: str, reason: str = "") -> ConversionRecord:
        with self._lock:
            record = self._find(conversion_id)
            if self.get_status(conversion_id)["status"] == "completed":
                raise RecordValidationError("Cannot cancel completed conversion")
            now = self.clock()
            record.status = "cancelled"
            record.cancellation_reason = reason
            record.cancelled_at = now
            record.updated_at = now
            return record.model_copy(deep=True)

    async def calculate_benefits(self, target_plan_id: int) -> Dict[str, Any]:
        try:
            plan = self.catalog.get(target_plan_id)
        except NotFoundError:
            raise NotFoundError("Target plan not found")
        return {
            "target_plan": plan,
            "benefits": [
                "No recharge reminders - automatic monthly billing",
                f"{plan.data} high-speed data",
                "Priority network access",
                "Free roaming across India",
                "Enhanced customer support",
            ],
            "additional_features": plan.features,
            "monthly_charge": plan.price,
            "security_deposit": plan.price * 2,
            "estimated_savings": self.policy.randint("conversion.savings", 100, 299),
        }

    def list_all(self) -> List[ConversionRecord]:
        return [r.model_copy(deep=True) for r in self._records]

    def get(self, record_id: int) -> ConversionRecord:
        return self._find_by_id(record_id).model_copy(deep=True)

    def by_mobile(self, mobile: str) -> List[ConversionRecord]:
        return [r for r in self.list_all() if r.mobile_number == mobile]

    def by_status(self, status: str) -> List[ConversionRecord]:
        return [r for r in self.list_all() if r.status == status]

    async def delete(self, record_id: int) -> ConversionRecord:
        with self._lock:
            record = self._find_by_id(record_id)
            self._records.remove(record)
            return record

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"total": 0, "by_plan": {}}
        for record in self._records:
            stats["total"] += 1
            stats[record.status] = stats.get(record.status, 0) + 1
            name = record.plan_details.name
            stats["by_plan"][name] = stats["by_plan"].get(name, 0) + 1
        return stats
