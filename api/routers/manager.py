# api/routers/manager.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from api.supabase_client import supabase
from api.auth import require_roles
from api.helpers.db_errors import raise_for_db_error
from api.helpers.lookups import attach_users
from api.helpers.statuses import (
    Decision,
    PaymentProofStatus,
    ReportStatus,
    UserRole,
    past_tense,
)
from api.services import approvals
from api.services.dashboard_stats import classify_manager_action, manager_stats

router = APIRouter(prefix="/manager", tags=["manager"])
logger = logging.getLogger(__name__)

staff_only = require_roles(UserRole.manager.value, UserRole.admin.value)


# ====== MODELOS Pydantic ======

class _CamelModel(BaseModel):
    model_config = {"populate_by_name": True}


class ReportDecision(_CamelModel):
    report_id: str = Field(alias="reportId")
    action: Decision
    comments: Optional[str] = None


class ApproveRejectRequest(_CamelModel):
    type: Literal["report", "payment"]
    id: str
    action: Decision
    comments: Optional[str] = None
    reason: Optional[str] = None


class QuickAction(_CamelModel):
    report_id: str = Field(alias="reportId")
    action: Decision


class AddComment(_CamelModel):
    report_id: str = Field(alias="reportId")
    comment: str = Field(..., min_length=1)
    action: Optional[Decision] = None


class PaymentProofDecision(_CamelModel):
    payment_proof_id: str = Field(alias="paymentProofId")
    action: Decision
    comments: Optional[str] = None


# ====== QUEUE ======

@router.get("/pending-reports")
def pending_reports(current_user: dict = Depends(staff_only)) -> Dict[str, Any]:
    try:
        reports = (
            supabase.table("reports")
            .select("*")
            .eq("status", ReportStatus.pending.value)
            .order("created_at", desc=True)
            .execute()
        ).data or []
    except Exception as e:
        raise_for_db_error(e, "Error fetching pending reports")

    return {"reports": attach_users(reports), "count": len(reports)}


@router.post("/approve-report")
def approve_report(payload: ReportDecision, current_user: dict = Depends(staff_only)):
    report = approvals.decide_report(
        payload.report_id,
        payload.action.value,
        current_user,
        comments=payload.comments,
        rejection_reason=payload.comments,
    )
    return {"message": f"Report {report['status']} successfully", "report": report}


@router.post("/approve-reject")
def approve_reject(payload: ApproveRejectRequest, current_user: dict = Depends(staff_only)):
    if payload.type == "report":
        row = approvals.decide_report(
            payload.id,
            payload.action.value,
            current_user,
            comments=payload.comments,
            rejection_reason=payload.reason,
        )
    else:
        row = approvals.decide_payment(
            payload.id,
            payload.action.value,
            current_user,
            comments=payload.comments,
            reason=payload.reason,
        )
    return {"message": f"{payload.type.capitalize()} {past_tense(payload.action.value)} successfully", "data": row}


@router.post("/quick-action")
def quick_action(payload: QuickAction, current_user: dict = Depends(staff_only)):
    report = approvals.fetch_report(payload.report_id)
    if report.get("status") != ReportStatus.pending.value:
        raise HTTPException(status_code=400, detail="Quick actions are only available for pending reports")

    rejection_reason = approvals.QUICK_REJECTION_REASON if payload.action == Decision.reject else None
    updated = approvals.decide_report(
        payload.report_id,
        payload.action.value,
        current_user,
        rejection_reason=rejection_reason,
    )
    return {"message": f"Report {updated['status']} successfully", "report": updated}


@router.post("/add-comment")
def add_comment(payload: AddComment, current_user: dict = Depends(staff_only)):
    report = approvals.add_comment(
        payload.report_id,
        payload.comment.strip(),
        current_user,
        decision=payload.action.value if payload.action else None,
    )
    return {"message": "Comment added successfully", "report": report}


# ====== PAYMENT PROOFS ======

@router.get("/payment-proofs")
def payment_proofs(
    status: PaymentProofStatus = Query(default=PaymentProofStatus.pending_approval),
    current_user: dict = Depends(staff_only),
) -> Dict[str, Any]:
    try:
        proofs = (
            supabase.table("payment_proofs")
            .select("*")
            .eq("status", status.value)
            .order("uploaded_at", desc=True)
            .execute()
        ).data or []
        report_ids = sorted({p["report_id"] for p in proofs if p.get("report_id")})
        reports = []
        if report_ids:
            reports = (
                supabase.table("reports")
                .select("id, title, filename, total_amount, status, payment_status")
                .in_("id", report_ids)
                .execute()
            ).data or []
    except Exception as e:
        raise_for_db_error(e, "Error fetching payment proofs")

    by_id = {r["id"]: r for r in reports}
    rows = [{**p, "report": by_id.get(p.get("report_id"))} for p in attach_users(proofs)]
    return {"paymentProofs": rows, "count": len(rows)}


@router.post("/approve-payment-proof")
def approve_payment_proof(payload: PaymentProofDecision, current_user: dict = Depends(staff_only)):
    proof = approvals.decide_payment_proof(
        payload.payment_proof_id,
        payload.action.value,
        current_user,
        comments=payload.comments,
    )
    return {"message": f"Payment proof {proof['status']} successfully", "paymentProof": proof}


# ====== DASHBOARD ======

@router.get("/dashboard-stats")
def dashboard_stats(current_user: dict = Depends(staff_only)) -> Dict[str, Any]:
    try:
        reports = (
            supabase.table("reports")
            .select("id, total_amount, status, created_at, approved_at")
            .execute()
        ).data or []
        proofs = (
            supabase.table("payment_proofs")
            .select("id", count="exact")
            .eq("status", PaymentProofStatus.pending_approval.value)
            .execute()
        )
        users = (
            supabase.table("users")
            .select("id", count="exact")
            .eq("is_active", True)
            .execute()
        )
    except Exception as e:
        raise_for_db_error(e, "Error fetching manager stats")

    pending_proofs = proofs.count if proofs.count is not None else len(proofs.data or [])
    active_users = users.count if users.count is not None else len(users.data or [])
    return manager_stats(reports, pending_proofs, active_users, datetime.now(timezone.utc))


@router.get("/recent-activity")
def recent_activity(
    limit: int = Query(default=10, ge=1, le=50),
    current_user: dict = Depends(staff_only),
) -> Dict[str, Any]:
    try:
        reports = (
            supabase.table("reports")
            .select("id, user_id, title, filename, total_amount, status, created_at")
            .eq("status", ReportStatus.pending.value)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        ).data or []
        proofs = (
            supabase.table("payment_proofs")
            .select("id, user_id, report_id, amount, status, uploaded_at")
            .eq("status", PaymentProofStatus.pending_approval.value)
            .order("uploaded_at", desc=True)
            .limit(limit)
            .execute()
        ).data or []
        actions = (
            supabase.table("activity_logs")
            .select("id, user_id, action, entity_type, entity_id, details, created_at")
            .eq("entity_type", "report")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        ).data or []
    except Exception as e:
        raise_for_db_error(e, "Error fetching recent activity")

    recent_actions = [{**a, **classify_manager_action(a.get("action"))} for a in attach_users(actions)]

    return {
        "pendingReports": attach_users(reports),
        "pendingPaymentProofs": attach_users(proofs),
        "recentActions": recent_actions,
    }
