"""
Reports - Summary statistics and CSV export over KYC submissions.

Date ranges: today, this-week (Sunday start), this-month, last-30-days, all.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from config.kyc_schema import SubmissionRecord, SubmissionStatus, utcnow

DATE_RANGES = ["today", "this-week", "this-month", "last-30-days", "all"]


def date_range_bounds(date_range: str, now: Optional[datetime] = None) -> Optional[Tuple[datetime, datetime]]:
    """(start, end) inclusive bounds, or None for an unbounded range."""
    now = now or utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if date_range == "today":
        return today, today + timedelta(days=1) - timedelta(microseconds=1)
    if date_range == "this-week":
        start = today - timedelta(days=(today.weekday() + 1) % 7)
        return start, start + timedelta(days=7) - timedelta(microseconds=1)
    if date_range == "this-month":
        start = today.replace(day=1)
        next_month = (start + timedelta(days=32)).replace(day=1)
        return start, next_month - timedelta(microseconds=1)
    if date_range == "last-30-days":
        return now - timedelta(days=30), now
    return None


def filter_by_date_range(
    records: List[SubmissionRecord],
    date_range: str,
    now: Optional[datetime] = None,
) -> List[SubmissionRecord]:
    bounds = date_range_bounds(date_range, now)
    if bounds is None:
        return list(records)
    start, end = bounds
    return [r for r in records if start <= r.submitted_at <= end]


def generate_stats(records: List[SubmissionRecord]) -> Dict[str, Any]:
    """
    Totals per status plus approval rate and average processing days.
    Both derived figures are computed over reviewed submissions only.
    """
    stats = {
        "total": len(records),
        "pending": sum(1 for r in records if r.status == SubmissionStatus.PENDING),
        "approved": sum(1 for r in records if r.status == SubmissionStatus.APPROVED),
        "rejected": sum(1 for r in records if r.status == SubmissionStatus.REJECTED),
        "processing_time": 0,
        "approval_rate": 0,
    }

    reviewed = [r for r in records if r.reviewed_at]
    if reviewed:
        total_seconds = sum((r.reviewed_at - r.submitted_at).total_seconds() for r in reviewed)
        stats["processing_time"] = round(total_seconds / len(reviewed) / 86400)
        decided = stats["approved"] + stats["rejected"]
        stats["approval_rate"] = round(stats["approved"] / decided * 100) if decided else 0

    return stats


def business_type_breakdown(records: List[SubmissionRecord]) -> Dict[str, int]:
    breakdown: Dict[str, int] = {}
    for record in records:
        business_type = record.business_details.get("businessType") or "Unknown"
        breakdown[business_type] = breakdown.get(business_type, 0) + 1
    return breakdown


def telecom_usage_breakdown(records: List[SubmissionRecord]) -> Dict[str, int]:
    usage: Dict[str, int] = {}
    for record in records:
        for use in record.telecom_usage.get("intendedUse") or []:
            usage[use] = usage.get(use, 0) + 1
    return usage


def build_report(records: List[SubmissionRecord], date_range: str = "this-month", now: Optional[datetime] = None) -> Dict[str, Any]:
    filtered = filter_by_date_range(records, date_range, now)
    return {
        "date_range": date_range,
        "stats": generate_stats(filtered),
        "business_types": business_type_breakdown(filtered),
        "telecom_usage": telecom_usage_breakdown(filtered),
        "submissions": len(filtered),
    }


def _quoted(value: Any) -> str:
    return '"' + str(value).replace('"', '""') + '"'


def _day(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value else "N/A"


def export_csv(records: List[SubmissionRecord], date_range: str = "this-month", now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    filtered = filter_by_date_range(records, date_range, now)
    stats = generate_stats(filtered)

    lines = [
        "KYC Report",
        "",
        f"Report Generated: {now:%Y-%m-%d %H:%M:%S}",
        f"Date Range: {date_range}",
        "",
        "Summary Statistics:",
        f"Total Submissions,{stats['total']}",
        f"Pending,{stats['pending']}",
        f"Approved,{stats['approved']}",
        f"Rejected,{stats['rejected']}",
        f"Approval Rate,{stats['approval_rate']}%",
        f"Avg Processing Time,{stats['processing_time']} days",
        "",
        "Detailed Submissions:",
        "Customer Name,Company,Status,Submitted Date,Reviewed Date",
    ]
    for record in filtered:
        lines.append(",".join([
            _quoted(record.personal_details.get("fullName") or "N/A"),
            _quoted(record.business_details.get("companyName") or "N/A"),
            record.status.value,
            _day(record.submitted_at),
            _day(record.reviewed_at),
        ]))
    return "\n".join(lines) + "\n"


def report_filename(now: Optional[datetime] = None) -> str:
    return f"kyc-report-{(now or utcnow()):%Y-%m-%d}.csv"
