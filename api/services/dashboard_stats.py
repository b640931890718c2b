# api/services/dashboard_stats.py
# ================================
# Dashboard aggregates
# ================================
# Pure functions over rows already fetched from Supabase. Routers do the
# querying; everything here takes plain dicts plus `now` so the numbers can
# be checked without a database.

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from api.helpers.statuses import (
    OPEN_PAYMENT_STATUSES,
    PaymentStatus,
    ReportStatus,
)


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 from PostgREST -> aware datetime (naive values are taken as UTC)."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _amount(row: Dict[str, Any], key: str) -> float:
    return float(row.get(key) or 0)


def _sum(rows: Iterable[Dict[str, Any]], key: str) -> float:
    return round(sum(_amount(r, key) for r in rows), 2)


def _same_month(ts: Optional[datetime], year: int, month: int) -> bool:
    return ts is not None and ts.year == year and ts.month == month


def _previous_month(now: datetime):
    if now.month == 1:
        return now.year - 1, 12
    return now.year, now.month - 1


def _growth_pct(current: float, previous: float) -> float:
    if previous > 0:
        return (current - previous) / previous * 100
    return 100.0 if current > 0 else 0.0


def month_counts(rows: List[Dict[str, Any]], now: datetime, key: str = "created_at"):
    """(this month, last month) row counts by `key`."""
    last_year, last_month = _previous_month(now)
    this_count = sum(1 for r in rows if _same_month(parse_ts(r.get(key)), now.year, now.month))
    last_count = sum(1 for r in rows if _same_month(parse_ts(r.get(key)), last_year, last_month))
    return this_count, last_count


# ====== ADMIN ======

def admin_stats(
    total_users: int,
    reports: List[Dict[str, Any]],
    payments: List[Dict[str, Any]],
    now: datetime,
) -> Dict[str, Any]:
    this_month, last_month = month_counts(reports, now)
    # Admin growth stays at 0 without a previous month, unlike the user dashboard
    monthly_growth = (this_month - last_month) / last_month * 100 if last_month > 0 else 0

    cutoff = now - timedelta(days=30)
    active_users = {
        r.get("user_id")
        for r in reports
        if (parse_ts(r.get("created_at")) or cutoff) > cutoff
    }

    return {
        "totalUsers": total_users,
        "totalReports": len(reports),
        "totalRevenue": _sum(
            (p for p in payments if p.get("payment_status") == PaymentStatus.completed.value), "amount"
        ),
        "pendingPayments": _sum(
            (p for p in payments if p.get("payment_status") in (PaymentStatus.pending.value, PaymentStatus.processing.value)),
            "amount",
        ),
        "monthlyGrowth": round(monthly_growth, 2),
        "activeUsers": len(active_users - {None}),
    }


# ====== MANAGER ======

def manager_stats(
    reports: List[Dict[str, Any]],
    pending_proofs: int,
    active_users: int,
    now: datetime,
) -> Dict[str, Any]:
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    # Weeks start on Sunday
    start_of_week = start_of_day - timedelta(days=(start_of_day.weekday() + 1) % 7)
    start_of_month = start_of_day.replace(day=1)

    def created_since(since: datetime):
        return [r for r in reports if (parse_ts(r.get("created_at")) or since - timedelta(seconds=1)) >= since]

    today = created_since(start_of_day)
    week = created_since(start_of_week)
    month = created_since(start_of_month)

    approved = [r for r in month if r.get("status") == ReportStatus.approved.value]
    rejected = [r for r in month if r.get("status") == ReportStatus.rejected.value]
    approval_rate = round(len(approved) / len(month) * 100) if month else 0
    rejection_rate = round(len(rejected) / len(month) * 100) if month else 0

    hours = []
    for r in approved:
        created = parse_ts(r.get("created_at"))
        decided = parse_ts(r.get("approved_at"))
        if created and decided:
            hours.append((decided - created).total_seconds() / 3600)
    average_approval_time = round(sum(hours) / len(hours)) if hours else 0

    pending_reports = sum(1 for r in reports if r.get("status") == ReportStatus.pending.value)

    return {
        "totalUsers": active_users,
        "totalReports": len(reports),
        "totalPayments": _sum(reports, "total_amount"),
        "pendingPayments": _sum(
            (r for r in reports if r.get("status") in (ReportStatus.pending.value, ReportStatus.processing.value)),
            "total_amount",
        ),
        "pendingReports": pending_reports,
        "pendingPaymentProofs": pending_proofs,
        "totalReportsToday": len(today),
        "todaySubmissions": len(today),
        "totalAmountToday": _sum(today, "total_amount"),
        "thisWeekAmount": _sum(week, "total_amount"),
        "approvalRate": approval_rate,
        "rejectionRate": rejection_rate,
        "averageApprovalTime": average_approval_time,
    }


def classify_manager_action(action: str) -> Dict[str, str]:
    """Maps an activity_logs.action string onto the manager feed vocabulary."""
    lowered = (action or "").lower()
    if "approved" in lowered:
        return {"type": "approval", "description": "Report approved"}
    if "rejected" in lowered:
        return {"type": "rejection", "description": "Report rejected"}
    if "comment" in lowered:
        return {"type": "comment", "description": "Comment added"}
    return {"type": "comment", "description": action}


# ====== USER ======

def user_stats(
    reports: List[Dict[str, Any]],
    payments: List[Dict[str, Any]],
    now: datetime,
) -> Dict[str, Any]:
    completed = [p for p in payments if p.get("payment_status") == PaymentStatus.completed.value]
    open_payments = [p for p in payments if p.get("payment_status") in OPEN_PAYMENT_STATUSES]

    this_month, last_month = month_counts(reports, now)

    week_ago = now - timedelta(days=7)
    two_weeks_ago = now - timedelta(days=14)
    last_week_paid = _sum(
        (p for p in completed if (parse_ts(p.get("created_at")) or two_weeks_ago) >= week_ago), "amount"
    )
    previous_week_paid = _sum(
        (
            p for p in completed
            if (ts := parse_ts(p.get("created_at"))) is not None and two_weeks_ago <= ts <= week_ago
        ),
        "amount",
    )

    return {
        "totalReports": len(reports),
        "totalAmount": _sum(completed, "amount"),
        "pendingAmount": _sum(open_payments, "amount"),
        "thisMonthReports": this_month,
        "trends": {
            "reportsMonthlyGrowth": round(_growth_pct(this_month, last_month)),
            "paymentsWeeklyGrowth": round(_growth_pct(last_week_paid, previous_week_paid)),
            "pendingPaymentsCount": len(open_payments),
            "thisMonthMessage": "Great progress!" if this_month > 0 else "Start uploading",
        },
    }


def report_summary(reports: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Counters shown above the user's report table."""
    return {
        "totalReports": len(reports),
        "pendingApproval": sum(1 for r in reports if r.get("status") == ReportStatus.pending.value),
        "approved": sum(1 for r in reports if r.get("status") == ReportStatus.approved.value),
        "rejected": sum(1 for r in reports if r.get("status") == ReportStatus.rejected.value),
        "totalAmount": _sum(reports, "total_amount"),
        "paidAmount": _sum(
            (r for r in reports if r.get("payment_status") == PaymentStatus.completed.value), "total_amount"
        ),
        "pendingPayment": _sum(
            (
                r for r in reports
                if r.get("payment_status") in (
                    PaymentStatus.pending.value,
                    PaymentStatus.pending_approval.value,
                    PaymentStatus.rejected.value,
                )
            ),
            "total_amount",
        ),
    }


def payment_summary(payments: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "total_payments": len(payments),
        "total_amount": _sum(payments, "amount"),
        "pending_count": sum(1 for p in payments if p.get("payment_status") == PaymentStatus.pending.value),
        "completed_count": sum(1 for p in payments if p.get("payment_status") == PaymentStatus.completed.value),
        "failed_count": sum(1 for p in payments if p.get("payment_status") == PaymentStatus.failed.value),
    }


def remaining_amount(report: Dict[str, Any], payments: List[Dict[str, Any]]) -> float:
    """Report total minus what has already been paid (completed payments only)."""
    paid = _sum((p for p in payments if p.get("payment_status") == PaymentStatus.completed.value), "amount")
    return round(max(_amount(report, "total_amount") - paid, 0.0), 2)


def uncommitted_amount(report: Dict[str, Any], payments: List[Dict[str, Any]]) -> float:
    """Remaining amount less payments still awaiting completion; the most a new payment may be."""
    open_total = _sum((p for p in payments if p.get("payment_status") in OPEN_PAYMENT_STATUSES), "amount")
    return round(max(remaining_amount(report, payments) - open_total, 0.0), 2)
