# api/routers/payments.py
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from api.supabase_client import supabase
from api.auth import get_current_user, require_roles
from api.helpers.activity import (
    log_activity,
    notify_staff,
    notify_user,
    record_report_history,
    utc_now_iso,
)
from api.helpers.db_errors import raise_for_db_error
from api.helpers.lookups import attach_users
from api.helpers.statuses import (
    ONLINE_METHODS,
    PROOF_FILE_TYPES,
    STAFF_ROLES,
    PaymentMethod,
    PaymentProofStatus,
    PaymentStatus,
    UserRole,
)
from api.services.approvals import refresh_remaining_amount
from api.services.dashboard_stats import payment_summary, uncommitted_amount

router = APIRouter(prefix="/payments", tags=["payments"])
logger = logging.getLogger(__name__)

users_only = require_roles(UserRole.user.value)


# ====== MODELOS Pydantic ======

class _PaymentBase(BaseModel):
    model_config = {"populate_by_name": True}

    report_id: str = Field(alias="reportId")
    amount: float
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")

    @field_validator("amount")
    @classmethod
    def amount_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Amount must be greater than 0")
        return round(v, 2)


class PaymentCreate(_PaymentBase):
    method: PaymentMethod
    proof_url: Optional[str] = Field(default=None, alias="proofUrl")
    notes: Optional[str] = None
    payment_date: Optional[date] = Field(default=None, alias="paymentDate")


class PaymentSubmit(_PaymentBase):
    payment_method: Literal["online", "offline"] = Field(alias="paymentMethod")
    # which online rail was used; stored in payments.payment_method
    online_method: PaymentMethod = Field(default=PaymentMethod.credit_card, alias="onlineMethod")
    proof_url: Optional[str] = Field(default=None, alias="proofUrl")


class ProofUpload(BaseModel):
    model_config = {"populate_by_name": True}

    report_id: str = Field(alias="reportId")
    file_url: str = Field(alias="fileUrl", min_length=1)
    file_name: str = Field(alias="fileName", min_length=1)
    amount: Optional[float] = None
    notes: Optional[str] = None
    payment_id: Optional[str] = Field(default=None, alias="paymentId")


# ====== HELPERS ======

def proof_file_type(name: str) -> str:
    return name.rsplit(".", 1)[-1].lower() if "." in name else ""


def _load_owned_report(report_id: str, current_user: Dict[str, Any]) -> Dict[str, Any]:
    try:
        rows = supabase.table("reports").select("*").eq("id", report_id).limit(1).execute().data
    except Exception as e:
        raise_for_db_error(e, "Error fetching report")
    if not rows:
        raise HTTPException(status_code=404, detail="Report not found")
    if rows[0].get("user_id") != current_user["id"]:
        raise HTTPException(status_code=403, detail="You can only pay for your own reports")
    return rows[0]


def _available_for(report: Dict[str, Any]) -> float:
    try:
        payments = (
            supabase.table("payments")
            .select("amount, payment_status")
            .eq("report_id", report["id"])
            .execute()
        ).data or []
    except Exception as e:
        raise_for_db_error(e, "Error loading report payments")
    # Open payments count against the total until they are failed
    return uncommitted_amount(report, payments)


def _check_amount(report: Dict[str, Any], amount: float) -> float:
    available = _available_for(report)
    if amount > available:
        raise HTTPException(
            status_code=400,
            detail=f"Payment amount ({amount:.2f}) exceeds remaining amount ({available:.2f})",
        )
    return available


def _insert_payment(row: Dict[str, Any]) -> Dict[str, Any]:
    try:
        ins = supabase.table("payments").insert(row).execute()
    except Exception as e:
        raise_for_db_error(e, "Failed to create payment record")
    if not ins.data:
        raise HTTPException(status_code=500, detail="Insert payment succeeded but returned no data")
    return ins.data[0]


def _update_report(report_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    try:
        rows = supabase.table("reports").update({**changes, "updated_at": utc_now_iso()}).eq("id", report_id).execute().data
    except Exception as e:
        raise_for_db_error(e, "Error updating report payment fields")
    return rows[0] if rows else {}


# ====== ENDPOINTS ======

@router.post("/create", status_code=201)
def create_payment(payload: PaymentCreate, current_user: dict = Depends(get_current_user)):
    report = _load_owned_report(payload.report_id, current_user)
    _check_amount(report, payload.amount)

    method = payload.method.value
    status = PaymentStatus.processing.value if method in ONLINE_METHODS else PaymentStatus.pending.value
    payment_date = (payload.payment_date.isoformat() if payload.payment_date else utc_now_iso())

    payment = _insert_payment({
        "user_id": current_user["id"],
        "report_id": report["id"],
        "amount": payload.amount,
        "payment_method": method,
        "payment_status": status,
        "transaction_id": payload.transaction_id,
        "proof_url": payload.proof_url,
        "notes": payload.notes,
        "payment_date": payment_date,
    })

    report_changes: Dict[str, Any] = {
        "payment_status": status,
        "payment_method": method,
        "payment_date": payment_date,
    }
    if payload.proof_url:
        report_changes["payment_proof_url"] = payload.proof_url
    _update_report(report["id"], report_changes)

    notify_user(
        current_user["id"],
        "payment_created",
        "Payment recorded",
        f"Your {method.replace('_', ' ')} payment of {payload.amount:.2f} is {status}.",
        data={"payment_id": payment["id"], "report_id": report["id"]},
    )
    log_activity(
        current_user["id"],
        "Payment created",
        entity_type="payment",
        entity_id=payment["id"],
        details={"report_id": report["id"], "amount": payload.amount, "method": method},
    )
    return {"success": True, "message": "Payment created successfully", "payment": payment}


@router.post("/submit")
def submit_payment(payload: PaymentSubmit, current_user: dict = Depends(get_current_user)):
    report = _load_owned_report(payload.report_id, current_user)
    _check_amount(report, payload.amount)

    online = payload.payment_method == "online"
    if not online and not payload.proof_url:
        raise HTTPException(status_code=400, detail="Payment proof is required for offline payments")

    status = PaymentStatus.completed.value if online else PaymentStatus.pending_approval.value
    method = payload.online_method.value if online else PaymentMethod.offline.value

    payment = _insert_payment({
        "user_id": current_user["id"],
        "report_id": report["id"],
        "amount": payload.amount,
        "payment_method": method,
        "payment_status": status,
        "transaction_id": payload.transaction_id,
        "proof_url": payload.proof_url,
        "payment_date": utc_now_iso(),
    })

    report_changes: Dict[str, Any] = {"payment_status": status, "payment_method": method}
    if not online:
        report_changes["payment_proof_url"] = payload.proof_url
        report_changes["payment_proof_status"] = PaymentProofStatus.pending_approval.value
    updated = _update_report(report["id"], report_changes)

    if online:
        refresh_remaining_amount(updated or report)
    else:
        try:
            supabase.table("payment_proofs").insert({
                "payment_id": payment["id"],
                "report_id": report["id"],
                "user_id": current_user["id"],
                "file_url": payload.proof_url,
                "file_type": proof_file_type(payload.proof_url),
                "amount": payload.amount,
                "status": PaymentProofStatus.pending_approval.value,
                "uploaded_at": utc_now_iso(),
            }).execute()
        except Exception as e:
            raise_for_db_error(e, "Failed to record payment proof")
        notify_staff(
            "payment_proof_uploaded",
            "Offline payment awaiting approval",
            f"{current_user.get('full_name') or current_user['email']} submitted an offline payment "
            f"of {payload.amount:.2f}.",
            data={"payment_id": payment["id"], "report_id": report["id"]},
            roles=(UserRole.manager.value,),
        )

    record_report_history(
        report["id"],
        action="payment_completed" if online else "payment_submitted",
        performed_by=current_user["id"],
        previous_status=report.get("payment_status"),
        new_status=status,
    )
    log_activity(
        current_user["id"],
        "Payment completed" if online else "Payment submitted",
        entity_type="payment",
        entity_id=payment["id"],
        details={"report_id": report["id"], "amount": payload.amount, "method": method},
    )
    return {
        "success": True,
        "message": "Payment submitted successfully",
        "paymentId": payment["id"],
        "status": status,
    }


@router.post("/upload-proof", status_code=201)
def upload_proof(payload: ProofUpload, current_user: dict = Depends(users_only)):
    file_type = proof_file_type(payload.file_name)
    if file_type not in PROOF_FILE_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid file type. Allowed: {', '.join(PROOF_FILE_TYPES)}",
        )

    report = _load_owned_report(payload.report_id, current_user)
    amount = payload.amount if payload.amount is not None else report.get("total_amount")

    try:
        ins = supabase.table("payment_proofs").insert({
            "payment_id": payload.payment_id,
            "report_id": report["id"],
            "user_id": current_user["id"],
            "file_url": payload.file_url,
            "file_type": file_type,
            "amount": amount,
            "notes": payload.notes,
            "status": PaymentProofStatus.pending_approval.value,
            "uploaded_at": utc_now_iso(),
        }).execute()
    except Exception as e:
        raise_for_db_error(e, "Failed to record payment proof")
    proof = (ins.data or [{}])[0]

    _update_report(report["id"], {
        "payment_proof_url": payload.file_url,
        "payment_proof_status": "pending",
    })

    notified = notify_staff(
        "payment_proof_uploaded",
        "Payment proof uploaded",
        f"{current_user.get('full_name') or current_user['email']} uploaded a payment proof for "
        f'"{report.get("title") or report.get("filename")}".',
        data={"proof_id": proof.get("id"), "report_id": report["id"]},
        roles=(UserRole.manager.value,),
    )
    log_activity(
        current_user["id"],
        "Payment proof uploaded",
        entity_type="payment",
        entity_id=payload.payment_id or proof.get("id"),
        details={"report_id": report["id"], "file_name": payload.file_name},
    )
    return {"success": True, "message": "Payment proof uploaded successfully", "proof": proof, "notified": notified}


@router.get("/history")
def payment_history(
    status: Optional[PaymentStatus] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    current_user: dict = Depends(get_current_user),
) -> Dict[str, Any]:
    try:
        q = supabase.table("payments").select("*")
        if current_user["role"] not in STAFF_ROLES:
            q = q.eq("user_id", current_user["id"])
        if status is not None:
            q = q.eq("payment_status", status.value)
        payments: List[Dict[str, Any]] = q.order("created_at", desc=True).limit(limit).execute().data or []

        report_ids = sorted({p["report_id"] for p in payments if p.get("report_id")})
        reports = []
        if report_ids:
            reports = (
                supabase.table("reports")
                .select("id, title, filename, total_amount, status")
                .in_("id", report_ids)
                .execute()
            ).data or []
    except Exception as e:
        raise_for_db_error(e, "Error fetching payment history")

    by_id = {r["id"]: r for r in reports}
    rows = [{**p, "report": by_id.get(p.get("report_id"))} for p in payments]
    if current_user["role"] in STAFF_ROLES:
        rows = attach_users(rows)

    return {"payments": rows, "stats": payment_summary(payments)}


@router.get("/{payment_id}")
def get_payment(payment_id: str, current_user: dict = Depends(get_current_user)) -> Dict[str, Any]:
    try:
        rows = supabase.table("payments").select("*").eq("id", payment_id).limit(1).execute().data
    except Exception as e:
        raise_for_db_error(e, "Error fetching payment")

    if not rows:
        raise HTTPException(status_code=404, detail="Payment not found")
    payment = rows[0]
    if payment.get("user_id") != current_user["id"] and current_user["role"] not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Access denied")
    return payment
