"""
Test Suite: Reports

Tests:
1. Date range bounds (week starts on Sunday)
2. Statistics over reviewed submissions
3. Breakdowns
4. CSV export layout
"""

import sys
import os
from datetime import datetime

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.kyc_schema import SubmissionRecord, SubmissionStatus
from backend.reports import (
    build_report,
    date_range_bounds,
    export_csv,
    filter_by_date_range,
    generate_stats,
    report_filename,
)

# A Wednesday
NOW = datetime(2026, 5, 6, 15, 0, 0)


def record(record_id, submitted, status=SubmissionStatus.PENDING, reviewed=None, name="Asha", company="Acme",
           business_type="llp", uses=None):
    return SubmissionRecord(
        id=record_id,
        user_id=f"user-{record_id}",
        status=status,
        personal_details={"fullName": name},
        business_details={"companyName": company, "businessType": business_type},
        telecom_usage={"intendedUse": uses or []},
        submitted_at=submitted,
        updated_at=submitted,
        reviewed_at=reviewed,
    )


def sample_records():
    return [
        record(1, datetime(2026, 5, 6, 10), uses=["Bulk SMS", "OTP"], name='Asha "AK" Rao'),
        record(2, datetime(2026, 5, 4, 9), SubmissionStatus.APPROVED, datetime(2026, 5, 6, 9),
               business_type="private_limited", uses=["Bulk SMS"]),
        record(3, datetime(2026, 5, 2, 9), SubmissionStatus.REJECTED, datetime(2026, 5, 3, 9),
               company="", business_type=""),
        record(4, datetime(2026, 4, 20, 9), SubmissionStatus.APPROVED, datetime(2026, 4, 24, 9)),
        record(5, datetime(2026, 3, 1, 9)),
    ]


def ids(records):
    return [r.id for r in records]


def test_date_range_bounds():
    """Weeks start on Sunday; months end on their last day."""
    print("\nTEST 1: Date ranges")
    start, end = date_range_bounds("this-week", NOW)
    assert start == datetime(2026, 5, 3)
    assert end.date() == datetime(2026, 5, 9).date()

    start, end = date_range_bounds("this-month", NOW)
    assert start == datetime(2026, 5, 1)
    assert end.date() == datetime(2026, 5, 31).date()

    sunday = datetime(2026, 5, 3, 8)
    assert date_range_bounds("this-week", sunday)[0] == datetime(2026, 5, 3)
    assert date_range_bounds("all", NOW) is None
    print("   PASSED: Date ranges")


def test_filter_by_date_range():
    records = sample_records()
    assert ids(filter_by_date_range(records, "today", NOW)) == [1]
    assert ids(filter_by_date_range(records, "this-week", NOW)) == [1, 2]
    assert ids(filter_by_date_range(records, "this-month", NOW)) == [1, 2, 3]
    assert ids(filter_by_date_range(records, "last-30-days", NOW)) == [1, 2, 3, 4]
    assert ids(filter_by_date_range(records, "all", NOW)) == [1, 2, 3, 4, 5]


def test_generate_stats():
    """Approval rate and processing days come from reviewed submissions only."""
    print("\nTEST 2: Statistics")
    records = sample_records()
    month = generate_stats(filter_by_date_range(records, "this-month", NOW))
    assert month == {
        "total": 3, "pending": 1, "approved": 1, "rejected": 1,
        "processing_time": 2, "approval_rate": 50,
    }

    recent = generate_stats(filter_by_date_range(records, "last-30-days", NOW))
    assert recent["processing_time"] == 2
    assert recent["approval_rate"] == 67

    assert generate_stats([]) == {
        "total": 0, "pending": 0, "approved": 0, "rejected": 0,
        "processing_time": 0, "approval_rate": 0,
    }
    print("   PASSED: Statistics")


def test_breakdowns():
    print("\nTEST 3: Breakdowns")
    report = build_report(sample_records(), "this-month", NOW)
    assert report["submissions"] == 3
    assert report["business_types"] == {"llp": 1, "private_limited": 1, "Unknown": 1}
    assert report["telecom_usage"] == {"Bulk SMS": 2, "OTP": 1}
    print("   PASSED: Breakdowns")


def test_csv_export():
    """Header block, summary rows, then one quoted row per submission."""
    print("\nTEST 4: CSV export")
    lines = export_csv(sample_records(), "this-month", NOW).splitlines()
    assert lines[:6] == [
        "KYC Report",
        "",
        "Report Generated: 2026-05-06 15:00:00",
        "Date Range: this-month",
        "",
        "Summary Statistics:",
    ]
    assert "Approval Rate,50%" in lines
    assert "Avg Processing Time,2 days" in lines
    header = lines.index("Customer Name,Company,Status,Submitted Date,Reviewed Date")

    rows = lines[header + 1:]
    assert rows[0] == '"Asha ""AK"" Rao","Acme",pending,2026-05-06,N/A'
    assert rows[1] == '"Asha","Acme",approved,2026-05-04,2026-05-06'
    assert rows[2] == '"Asha","N/A",rejected,2026-05-02,2026-05-03'

    assert report_filename(NOW) == "kyc-report-2026-05-06.csv"
    print("   PASSED: CSV export")


def test_today_excludes_next_midnight():
    """The today window closes just before the following midnight."""
    start, end = date_range_bounds("today", NOW)
    assert start == datetime(2026, 5, 6)
    assert end < datetime(2026, 5, 7)
    midnight = record(6, datetime(2026, 5, 7))
    late = record(7, datetime(2026, 5, 6, 23, 59, 59))
    assert ids(filter_by_date_range([midnight, late], "today", NOW)) == [7]
