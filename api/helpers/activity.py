# api/helpers/activity.py
# ================================
# Audit trail helpers
# ================================
# Activity logs, report history and notifications are side effects of the
# workflow endpoints. A failure here is logged and swallowed so it never
# turns a completed approval or payment into a 500.

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from api.supabase_client import supabase
from api.helpers.statuses import STAFF_ROLES

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _bg_insert(table_name: str, data, label: str = "") -> Optional[List[Dict[str, Any]]]:
    """Insert with error logging instead of propagating."""
    try:
        result = supabase.table(table_name).insert(data).execute()
        return result.data
    except Exception as exc:
        logger.error("[Activity %s] Insert into %s failed: %s", label, table_name, exc)
        return None


def log_activity(
    user_id: str,
    action: str,
    entity_type: str = "system",
    entity_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    _bg_insert(
        "activity_logs",
        {
            "user_id": user_id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": details or {},
        },
        label="log",
    )


def record_report_history(
    report_id: str,
    action: str,
    performed_by: str,
    new_status: Optional[str] = None,
    previous_status: Optional[str] = None,
    comments: Optional[str] = None,
) -> None:
    _bg_insert(
        "report_history",
        {
            "report_id": report_id,
            "action": action,
            "previous_status": previous_status,
            "new_status": new_status,
            "comments": comments,
            "performed_by": performed_by,
        },
        label="history",
    )


def notify_user(
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    rows = _bg_insert(
        "notifications",
        {
            "user_id": user_id,
            "type": notification_type,
            "title": title,
            "message": message,
            "data": data or {},
            "read": False,
            "email_sent": False,
        },
        label="notify",
    )
    return rows[0] if rows else None


def notify_staff(
    notification_type: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    roles: Iterable[str] = STAFF_ROLES,
) -> int:
    """Fan a notification out to every active manager/admin. Returns how many were sent."""
    try:
        staff = (
            supabase.table("users")
            .select("id")
            .in_("role", list(roles))
            .eq("is_active", True)
            .execute()
        ).data or []
    except Exception as exc:
        logger.error("[Activity notify] Could not load staff: %s", exc)
        return 0

    if not staff:
        return 0

    rows = [
        {
            "user_id": member["id"],
            "type": notification_type,
            "title": title,
            "message": message,
            "data": data or {},
            "read": False,
            "email_sent": False,
        }
        for member in staff
    ]
    inserted = _bg_insert("notifications", rows, label="notify-staff")
    return len(inserted or [])
