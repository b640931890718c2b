# api/services/approvals.py
# ================================
# Manager decisions
# ================================
# Reports, payments and payment proofs are approved or rejected from several
# manager endpoints (queue, quick action, comment-with-decision, unified
# approve-reject). All of them go through here so the status rules and the
# audit trail stay identical.
#
# Every decision:
#   1. checks the current status (decided rows -> 400),
#   2. updates the row, guarded on that status so only one decision lands,
#   3. writes report_history + activity_logs,
#   4. notifies the report owner.

import logging
from typing import Any, Dict, List, Optional, Sequence

from fastapi import HTTPException

from api.supabase_client import supabase
from api.helpers.activity import (
    log_activity,
    notify_user,
    record_report_history,
    utc_now_iso,
)
from api.helpers.db_errors import raise_for_db_error
from api.helpers.statuses import (
    DECIDABLE_REPORT_STATUSES,
    OPEN_PAYMENT_STATUSES,
    Decision,
    PaymentProofStatus,
    PaymentStatus,
    past_tense,
)
from api.services.dashboard_stats import remaining_amount

logger = logging.getLogger(__name__)

QUICK_REJECTION_REASON = "Quick rejection from dashboard"


def _fetch_one(table: str, row_id: str, label: str) -> Dict[str, Any]:
    try:
        rows = supabase.table(table).select("*").eq("id", row_id).limit(1).execute().data
    except Exception as e:
        raise_for_db_error(e, f"Error fetching {label}")
    if not rows:
        raise HTTPException(status_code=404, detail=f"{label.capitalize()} not found")
    return rows[0]


def _update(table: str, row_id: str, changes: Dict[str, Any], label: str) -> Dict[str, Any]:
    changes = {**changes, "updated_at": utc_now_iso()}
    try:
        rows = supabase.table(table).update(changes).eq("id", row_id).execute().data
    except Exception as e:
        raise_for_db_error(e, f"Error updating {label}")
    if not rows:
        raise HTTPException(status_code=404, detail=f"{label.capitalize()} not found")
    return rows[0]


def _transition(
    table: str,
    row_id: str,
    column: str,
    allowed: Sequence[str],
    changes: Dict[str, Any],
    label: str,
) -> Dict[str, Any]:
    """
    Update that only matches while `column` is still one of `allowed`.
    A concurrent decision that got there first leaves no row -> 400.
    """
    changes = {**changes, "updated_at": utc_now_iso()}
    try:
        rows = (
            supabase.table(table)
            .update(changes)
            .eq("id", row_id)
            .in_(column, list(allowed))
            .execute()
        ).data
    except Exception as e:
        raise_for_db_error(e, f"Error updating {label}")
    if not rows:
        raise HTTPException(status_code=400, detail=f"{label.capitalize()} has already been processed")
    return rows[0]


def fetch_report(report_id: str) -> Dict[str, Any]:
    return _fetch_one("reports", report_id, "report")


def _report_payments(report_id: str) -> List[Dict[str, Any]]:
    try:
        return (
            supabase.table("payments")
            .select("id, amount, payment_status")
            .eq("report_id", report_id)
            .execute()
        ).data or []
    except Exception as e:
        raise_for_db_error(e, "Error loading report payments")


def _check_completion(report_id: Optional[str], amount) -> None:
    """400 when completing `amount` would pay the report past its total."""
    if not report_id:
        return
    report = fetch_report(report_id)
    remaining = remaining_amount(report, _report_payments(report_id))
    amount = float(amount or 0)
    if amount > remaining:
        raise HTTPException(
            status_code=400,
            detail=f"Payment amount ({amount:.2f}) exceeds remaining amount ({remaining:.2f})",
        )


def refresh_remaining_amount(report: Dict[str, Any]) -> float:
    """Recomputes reports.remaining_amount from the completed payments on record."""
    remaining = remaining_amount(report, _report_payments(report["id"]))
    _update("reports", report["id"], {"remaining_amount": remaining}, "report")
    return remaining


# ====== REPORTS ======

def decide_report(
    report_id: str,
    decision: str,
    manager: Dict[str, Any],
    comments: Optional[str] = None,
    rejection_reason: Optional[str] = None,
) -> Dict[str, Any]:
    report = fetch_report(report_id)
    previous = report.get("status")
    if previous not in DECIDABLE_REPORT_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Report has already been processed (status: {previous})",
        )

    new_status = past_tense(decision)
    changes: Dict[str, Any] = {
        "status": new_status,
        "approved_by": manager["id"],
        "approved_at": utc_now_iso(),
        "manager_comments": comments,
    }
    if decision == Decision.reject.value:
        changes["rejection_reason"] = rejection_reason or comments or "Rejected by manager"

    updated = _transition("reports", report_id, "status", DECIDABLE_REPORT_STATUSES, changes, "report")
    title = report.get("title") or report.get("filename") or "Your report"

    record_report_history(
        report_id,
        action=new_status,
        performed_by=manager["id"],
        previous_status=previous,
        new_status=new_status,
        comments=comments or changes.get("rejection_reason"),
    )
    log_activity(
        manager["id"],
        f"Report {new_status}",
        entity_type="report",
        entity_id=report_id,
        details={"comments": comments, "previous_status": previous},
    )

    message = f'"{title}" has been {new_status}.'
    if decision == Decision.reject.value and changes.get("rejection_reason"):
        message += f" Reason: {changes['rejection_reason']}"
    elif comments:
        message += f" Comments: {comments}"
    notify_user(
        report["user_id"],
        f"report_{new_status}",
        f"Report {new_status.capitalize()}",
        message,
        data={"report_id": report_id, "status": new_status},
    )

    logger.info("[Approvals] Report %s %s by %s", report_id, new_status, manager["id"])
    return updated


def add_comment(
    report_id: str,
    comment: str,
    manager: Dict[str, Any],
    decision: Optional[str] = None,
) -> Dict[str, Any]:
    """A plain comment, or a comment that also approves/rejects the report."""
    if decision:
        return decide_report(report_id, decision, manager, comments=comment, rejection_reason=comment)

    report = fetch_report(report_id)
    updated = _update("reports", report_id, {"manager_comments": comment}, "report")

    record_report_history(
        report_id,
        action="commented",
        performed_by=manager["id"],
        previous_status=report.get("status"),
        new_status=report.get("status"),
        comments=comment,
    )
    log_activity(manager["id"], "Comment added to report", entity_type="report", entity_id=report_id,
                 details={"comment": comment})
    notify_user(
        report["user_id"],
        "comment_added",
        "New comment on your report",
        comment,
        data={"report_id": report_id},
    )
    return updated


# ====== PAYMENTS ======

def decide_payment(
    payment_id: str,
    decision: str,
    manager: Dict[str, Any],
    comments: Optional[str] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    payment = _fetch_one("payments", payment_id, "payment")
    previous = payment.get("payment_status")
    if previous not in OPEN_PAYMENT_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Payment has already been processed (status: {previous})",
        )

    approved = decision == Decision.approve.value
    report_id = payment.get("report_id")
    if approved:
        _check_completion(report_id, payment.get("amount"))

    new_status = PaymentStatus.completed.value if approved else PaymentStatus.failed.value
    changes: Dict[str, Any] = {
        "payment_status": new_status,
        "approved_by": manager["id"],
        "approved_at": utc_now_iso(),
        "manager_comments": comments,
    }
    if not approved:
        changes["rejection_reason"] = reason or comments or "Rejected by manager"
    updated = _transition("payments", payment_id, "payment_status", OPEN_PAYMENT_STATUSES, changes, "payment")

    if report_id:
        report = _update("reports", report_id, {"payment_status": new_status}, "report")
        if approved:
            refresh_remaining_amount(report)
        record_report_history(
            report_id,
            action=f"payment_{past_tense(decision)}",
            performed_by=manager["id"],
            previous_status=previous,
            new_status=new_status,
            comments=comments or changes.get("rejection_reason"),
        )

    log_activity(
        manager["id"],
        f"Payment {past_tense(decision)}",
        entity_type="payment",
        entity_id=payment_id,
        details={"report_id": report_id, "amount": payment.get("amount")},
    )
    notify_user(
        payment["user_id"],
        f"payment_{past_tense(decision)}",
        f"Payment {past_tense(decision).capitalize()}",
        f"Your payment of {payment.get('amount')} has been {past_tense(decision)}."
        + (f" Reason: {changes['rejection_reason']}" if not approved else ""),
        data={"payment_id": payment_id, "report_id": report_id},
    )

    logger.info("[Approvals] Payment %s -> %s by %s", payment_id, new_status, manager["id"])
    return updated


def decide_payment_proof(
    proof_id: str,
    decision: str,
    manager: Dict[str, Any],
    comments: Optional[str] = None,
) -> Dict[str, Any]:
    proof = _fetch_one("payment_proofs", proof_id, "payment proof")
    if proof.get("status") != PaymentProofStatus.pending_approval.value:
        raise HTTPException(
            status_code=400,
            detail=f"Payment proof has already been processed (status: {proof.get('status')})",
        )

    approved = decision == Decision.approve.value
    proof_status = past_tense(decision)
    payment_id = proof.get("payment_id")
    report_id = proof.get("report_id")

    payment: Dict[str, Any] = {}
    if payment_id:
        payment = _fetch_one("payments", payment_id, "payment")
        if payment.get("payment_status") not in OPEN_PAYMENT_STATUSES:
            raise HTTPException(
                status_code=400,
                detail=f"Payment has already been processed (status: {payment.get('payment_status')})",
            )
    if approved:
        _check_completion(report_id, payment.get("amount", proof.get("amount")))

    changes: Dict[str, Any] = {
        "status": proof_status,
        "approved_by": manager["id"],
        "approved_at": utc_now_iso(),
        "manager_comments": comments,
    }
    if not approved:
        changes["rejection_reason"] = comments or "Payment proof rejected"
    updated = _transition(
        "payment_proofs",
        proof_id,
        "status",
        (PaymentProofStatus.pending_approval.value,),
        changes,
        "payment proof",
    )

    if payment_id:
        _transition(
            "payments",
            payment_id,
            "payment_status",
            OPEN_PAYMENT_STATUSES,
            {
                "payment_status": PaymentStatus.completed.value if approved else PaymentStatus.failed.value,
                "approved_by": manager["id"],
                "approved_at": utc_now_iso(),
            },
            "payment",
        )

    if report_id:
        report = _update(
            "reports",
            report_id,
            {
                "payment_status": PaymentStatus.completed.value if approved else PaymentStatus.rejected.value,
                "payment_proof_status": proof_status,
            },
            "report",
        )
        if approved:
            refresh_remaining_amount(report)
        record_report_history(
            report_id,
            action=f"payment_proof_{proof_status}",
            performed_by=manager["id"],
            comments=comments,
        )

    log_activity(
        manager["id"],
        f"Payment proof {proof_status}",
        entity_type="payment",
        entity_id=payment_id or proof_id,
        details={"proof_id": proof_id, "report_id": report_id},
    )
    notify_user(
        proof["user_id"],
        f"payment_proof_{proof_status}",
        f"Payment Proof {proof_status.capitalize()}",
        f"Your payment proof has been {proof_status}."
        + (f" Comments: {comments}" if comments else ""),
        data={"proof_id": proof_id, "report_id": report_id},
    )
    return updated
