# ============================================================================
# ReportFlow - In-app Notifications Router
# ============================================================================
# Notifications are rows in `notifications`, written by the workflow
# endpoints (approvals, payments, submissions) and read here by their owner.

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field, model_validator

from api.auth import get_current_user, require_roles
from api.supabase_client import supabase
from api.helpers.activity import log_activity, utc_now_iso
from api.helpers.db_errors import raise_for_db_error
from api.helpers.statuses import STAFF_ROLES

router = APIRouter(prefix="/notifications", tags=["notifications"])
logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50
MAX_LATEST = 20

staff_only = require_roles(*STAFF_ROLES)


# ============================================================================
# Pydantic Models
# ============================================================================

class MarkReadRequest(BaseModel):
    model_config = {"populate_by_name": True}

    notification_id: Optional[str] = Field(default=None, alias="notificationId")
    notification_ids: List[str] = Field(default_factory=list, alias="notificationIds")

    @model_validator(mode="after")
    def one_of_ids(self):
        if not self.notification_id and not self.notification_ids:
            raise ValueError("Notification ID is required")
        return self

    def ids(self) -> List[str]:
        ids = list(self.notification_ids)
        if self.notification_id and self.notification_id not in ids:
            ids.append(self.notification_id)
        return ids


class SendNotificationRequest(BaseModel):
    model_config = {"populate_by_name": True}

    user_id: str = Field(alias="userId")
    type: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Endpoints
# ============================================================================

@router.get("")
def list_notifications(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1),
    current_user: dict = Depends(get_current_user),
):
    """Paginated notifications for the current user, newest first."""
    limit = min(limit, MAX_PAGE_SIZE)
    offset = (page - 1) * limit

    try:
        result = (
            supabase.table("notifications")
            .select("*", count="exact")
            .eq("user_id", current_user["id"])
            .order("created_at", desc=True)
            .range(offset, offset + limit - 1)
            .execute()
        )
    except Exception as e:
        raise_for_db_error(e, "Failed to fetch notifications")

    total = result.count or 0
    total_pages = (total + limit - 1) // limit
    return {
        "success": True,
        "notifications": result.data or [],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": total_pages,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
        },
    }


@router.get("/latest")
def latest_notifications(
    limit: int = Query(default=5),
    current_user: dict = Depends(get_current_user),
):
    limit = min(max(limit, 1), MAX_LATEST)
    try:
        result = (
            supabase.table("notifications")
            .select("*")
            .eq("user_id", current_user["id"])
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
    except Exception as e:
        raise_for_db_error(e, "Failed to fetch latest notifications")

    return {"success": True, "notifications": result.data or []}


@router.get("/unread-count")
def unread_count(current_user: dict = Depends(get_current_user)):
    try:
        result = (
            supabase.table("notifications")
            .select("id", count="exact")
            .eq("user_id", current_user["id"])
            .eq("read", False)
            .execute()
        )
    except Exception as e:
        raise_for_db_error(e, "Failed to count notifications")

    count = result.count if result.count is not None else len(result.data or [])
    return {"success": True, "count": count}


@router.post("/mark-read")
def mark_read(payload: MarkReadRequest, current_user: dict = Depends(get_current_user)):
    try:
        result = (
            supabase.table("notifications")
            .update({"read": True, "updated_at": utc_now_iso()})
            .in_("id", payload.ids())
            .eq("user_id", current_user["id"])
            .execute()
        )
    except Exception as e:
        raise_for_db_error(e, "Failed to mark notification as read")

    return {"success": True, "message": "Notification marked as read", "updated": len(result.data or [])}


@router.post("/mark-all-read")
def mark_all_read(current_user: dict = Depends(get_current_user)):
    try:
        result = (
            supabase.table("notifications")
            .update({"read": True, "updated_at": utc_now_iso()})
            .eq("user_id", current_user["id"])
            .eq("read", False)
            .execute()
        )
    except Exception as e:
        raise_for_db_error(e, "Failed to mark notifications as read")

    return {"success": True, "message": "All notifications marked as read", "updated": len(result.data or [])}


@router.delete("/{notification_id}")
def delete_notification(notification_id: str, current_user: dict = Depends(get_current_user)):
    # Scoped to the caller; someone else's id simply matches nothing
    try:
        result = (
            supabase.table("notifications")
            .delete()
            .eq("id", notification_id)
            .eq("user_id", current_user["id"])
            .execute()
        )
    except Exception as e:
        raise_for_db_error(e, "Failed to delete notification")

    if not result.data:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True, "message": "Notification deleted"}


@router.post("/send", status_code=201)
def send_notification(payload: SendNotificationRequest, current_user: dict = Depends(staff_only)):
    """Direct message from a manager/admin to one active user."""
    try:
        target = (
            supabase.table("users")
            .select("id, email, full_name")
            .eq("id", payload.user_id)
            .eq("is_active", True)
            .limit(1)
            .execute()
        ).data
        if not target:
            raise HTTPException(status_code=404, detail="User not found")

        inserted = (
            supabase.table("notifications")
            .insert({
                "user_id": payload.user_id,
                "type": payload.type,
                "title": payload.title,
                "message": payload.message,
                "data": payload.data,
                "read": False,
                "email_sent": False,
            })
            .execute()
        ).data
    except Exception as e:
        raise_for_db_error(e, "Failed to create notification")

    notification = (inserted or [{}])[0]
    log_activity(
        current_user["id"],
        f"Notification sent: {payload.title}",
        entity_type="notification",
        entity_id=notification.get("id"),
        details={"recipient_id": payload.user_id, "type": payload.type},
    )
    logger.info("[Notifications] %s -> %s: %s", current_user["id"], payload.user_id, payload.title)
    return {"success": True, "notification": notification}
