# api/routers/user.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from api.supabase_client import supabase
from api.auth import require_roles
from api.helpers.activity import notify_user, record_report_history, log_activity, utc_now_iso
from api.helpers.db_errors import raise_for_db_error
from api.helpers.statuses import (
    CLEARABLE_PAYMENT_STATUSES,
    DECIDABLE_REPORT_STATUSES,
    OPEN_PAYMENT_STATUSES,
    PaymentStatus,
    ReportStatus,
    UserRole,
)
from api.services.dashboard_stats import report_summary, user_stats

router = APIRouter(prefix="/user", tags=["user"])
logger = logging.getLogger(__name__)

users_only = require_roles(UserRole.user.value)

DATE_RANGE_DAYS = {"7days": 7, "30days": 30, "90days": 90, "1year": 365}
RECENT_LIMIT = 5


class ReportFilters(BaseModel):
    model_config = {"populate_by_name": True}

    status: Optional[str] = "all"
    payment_status: Optional[str] = Field(default="all", alias="paymentStatus")
    date_range: Optional[Literal["all", "7days", "30days", "90days", "1year"]] = Field(
        default="all", alias="dateRange"
    )
    search_term: Optional[str] = Field(default=None, alias="searchTerm")


class FiltersBody(BaseModel):
    filters: ReportFilters = Field(default_factory=ReportFilters)


class ClearPaymentRequest(BaseModel):
    model_config = {"populate_by_name": True}

    report_id: str = Field(alias="reportId")


# ====== HELPERS ======

def _own_reports(user_id: str, filters: Optional[ReportFilters] = None, now: Optional[datetime] = None):
    filters = filters or ReportFilters()
    q = supabase.table("reports").select("*").eq("user_id", user_id)

    if filters.status and filters.status != "all":
        q = q.eq("status", filters.status)
    if filters.payment_status and filters.payment_status != "all":
        q = q.eq("payment_status", filters.payment_status)
    days = DATE_RANGE_DAYS.get(filters.date_range or "all")
    if days:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        q = q.gte("created_at", cutoff.isoformat())

    reports = q.order("created_at", desc=True).execute().data or []

    term = (filters.search_term or "").strip().lower()
    if term:
        reports = [
            r for r in reports
            if term in (r.get("filename") or "").lower() or term in (r.get("title") or "").lower()
        ]
    return reports


def synthetic_timeline(report: Dict[str, Any]) -> List[Dict[str, Any]]:
    """History for reports that predate report_history rows."""
    entries = [{
        "id": f"{report['id']}_created",
        "action": "submitted",
        "previous_status": None,
        "new_status": ReportStatus.pending.value,
        "comments": "Report uploaded and submitted for approval",
        "created_at": report.get("created_at"),
        "performed_by": report.get("user_id"),
    }]
    status = report.get("status")
    if status not in DECIDABLE_REPORT_STATUSES:
        entries.append({
            "id": f"{report['id']}_{status}",
            "action": status,
            "previous_status": ReportStatus.pending.value,
            "new_status": status,
            "comments": report.get("manager_comments") or report.get("rejection_reason"),
            "created_at": report.get("approved_at") or report.get("updated_at"),
            "performed_by": report.get("approved_by"),
        })
    if report.get("payment_status") == PaymentStatus.completed.value:
        entries.append({
            "id": f"{report['id']}_paid",
            "action": "payment_completed",
            "previous_status": status,
            "new_status": PaymentStatus.completed.value,
            "comments": "Payment completed",
            "created_at": report.get("payment_date") or report.get("updated_at"),
            "performed_by": report.get("user_id"),
        })
    return entries


def _with_history(reports: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = [r["id"] for r in reports]
    history: List[Dict[str, Any]] = []
    if ids:
        history = (
            supabase.table("report_history")
            .select("*")
            .in_("report_id", ids)
            .order("created_at")
            .execute()
        ).data or []

    by_report: Dict[str, List[Dict[str, Any]]] = {}
    for entry in history:
        by_report.setdefault(entry["report_id"], []).append(entry)

    return [
        {**r, "history_entries": by_report.get(r["id"]) or synthetic_timeline(r)}
        for r in reports
    ]


# ====== DASHBOARD ======

@router.get("/dashboard-stats")
def dashboard_stats(current_user: dict = Depends(users_only)) -> Dict[str, Any]:
    try:
        reports = (
            supabase.table("reports")
            .select("id, total_amount, status, payment_status, created_at")
            .eq("user_id", current_user["id"])
            .execute()
        ).data or []
        payments = (
            supabase.table("payments")
            .select("id, amount, payment_status, created_at")
            .eq("user_id", current_user["id"])
            .execute()
        ).data or []
    except Exception as e:
        raise_for_db_error(e, "Error fetching dashboard stats")

    return user_stats(reports, payments, datetime.now(timezone.utc))


@router.get("/recent-reports")
def recent_reports(
    limit: int = Query(default=RECENT_LIMIT, ge=1, le=50),
    current_user: dict = Depends(users_only),
):
    try:
        reports = (
            supabase.table("reports")
            .select("id, title, filename, report_date, total_amount, status, payment_status, created_at")
            .eq("user_id", current_user["id"])
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        ).data or []
    except Exception as e:
        raise_for_db_error(e, "Error fetching recent reports")
    return {"success": True, "reports": reports}


@router.get("/recent-payments")
def recent_payments(current_user: dict = Depends(users_only)):
    try:
        payments = (
            supabase.table("payments")
            .select("*")
            .eq("user_id", current_user["id"])
            .order("created_at", desc=True)
            .limit(RECENT_LIMIT)
            .execute()
        ).data or []
    except Exception as e:
        raise_for_db_error(e, "Error fetching recent payments")
    return {"success": True, "payments": payments}


@router.get("/reports")
def my_reports(current_user: dict = Depends(users_only)):
    try:
        reports = _own_reports(current_user["id"])
    except Exception as e:
        raise_for_db_error(e, "Error fetching reports")
    return {"success": True, "reports": reports, "count": len(reports)}


@router.post("/report-history")
def report_history(body: FiltersBody, current_user: dict = Depends(users_only)):
    try:
        reports = _with_history(_own_reports(current_user["id"], body.filters))
    except Exception as e:
        raise_for_db_error(e, "Error fetching report history")
    return {"success": True, "reports": reports}


@router.post("/dashboard-comprehensive")
def dashboard_comprehensive(body: FiltersBody, current_user: dict = Depends(users_only)):
    try:
        reports = _own_reports(current_user["id"], body.filters)
    except Exception as e:
        raise_for_db_error(e, "Failed to fetch reports")
    return {"success": True, "reports": reports, "stats": report_summary(reports)}


# ====== PAYMENT RESET ======

@router.post("/clear-pending-payment")
def clear_pending_payment(payload: ClearPaymentRequest, current_user: dict = Depends(users_only)):
    try:
        rows = (
            supabase.table("reports")
            .select("id, user_id, status, payment_status, total_amount")
            .eq("id", payload.report_id)
            .eq("user_id", current_user["id"])
            .limit(1)
            .execute()
        ).data
    except Exception as e:
        raise_for_db_error(e, "Error fetching report")

    if not rows:
        raise HTTPException(status_code=404, detail="Report not found")
    report = rows[0]

    previous = report.get("payment_status")
    if previous not in CLEARABLE_PAYMENT_STATUSES:
        raise HTTPException(status_code=400, detail="Only pending or rejected payments can be cleared")

    try:
        supabase.table("reports").update({
            "payment_status": PaymentStatus.pending.value,
            "payment_method": None,
            "payment_proof_url": None,
            "payment_proof_status": None,
            "manager_comments": None,
            "rejection_reason": None,
            "updated_at": utc_now_iso(),
        }).eq("id", report["id"]).execute()
        supabase.table("payment_proofs").delete().eq("report_id", report["id"]).execute()
        # Cleared payments must not be approvable afterwards
        voided = (
            supabase.table("payments")
            .update({
                "payment_status": PaymentStatus.failed.value,
                "rejection_reason": "Cleared by user",
                "updated_at": utc_now_iso(),
            })
            .eq("report_id", report["id"])
            .in_("payment_status", list(OPEN_PAYMENT_STATUSES))
            .execute()
        ).data or []
    except Exception as e:
        raise_for_db_error(e, "Failed to clear pending payment")

    record_report_history(
        report["id"],
        action="payment_cleared",
        performed_by=current_user["id"],
        previous_status=previous,
        new_status=PaymentStatus.pending.value,
        comments="Payment status cleared by user",
    )
    notify_user(
        current_user["id"],
        "payment_cleared",
        "Payment Cleared",
        "Your payment status has been reset. You can now process payment again.",
        data={"report_id": report["id"], "action": "payment_cleared"},
    )
    log_activity(current_user["id"], "Pending payment cleared", entity_type="report", entity_id=report["id"],
                 details={"previous_status": previous, "voided_payments": [p["id"] for p in voided]})

    return {
        "success": True,
        "message": "Pending payment cleared successfully",
        "data": {"reportId": report["id"], "newPaymentStatus": PaymentStatus.pending.value},
    }
