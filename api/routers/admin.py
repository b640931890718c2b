# api/routers/admin.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from api.supabase_client import supabase
from api.auth import PUBLIC_USER_FIELDS, MIN_PASSWORD_LENGTH, get_current_user, require_roles
from api.helpers.activity import log_activity, utc_now_iso
from api.helpers.db_errors import raise_for_db_error
from api.helpers.lookups import attach_users
from api.helpers.statuses import UserRole
from api.services.dashboard_stats import admin_stats
from utils.auth import generate_temp_password, hash_password

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)

admin_only = require_roles(UserRole.admin.value)
staff_only = require_roles(UserRole.admin.value, UserRole.manager.value)


class UserCreate(BaseModel):
    email: str = Field(..., min_length=3)
    full_name: str = Field(..., min_length=1)
    role: UserRole = UserRole.user
    phone: Optional[str] = None
    password: Optional[str] = None  # generated when omitted

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


class UserUpdate(BaseModel):
    full_name: Optional[str] = Field(default=None, min_length=1)
    role: Optional[UserRole] = None
    phone: Optional[str] = None
    is_active: Optional[bool] = None


class UserStatusUpdate(BaseModel):
    is_active: bool


class BulkUserAction(BaseModel):
    model_config = {"populate_by_name": True}

    action: Literal["activate", "deactivate", "delete"]
    user_ids: List[str] = Field(alias="userIds", min_length=1)


def _is_duplicate(exc: Exception) -> bool:
    msg = str(exc).lower()
    return "duplicate" in msg or "unique" in msg or "23505" in msg


def fetch_user_by_id(user_id: str) -> Dict[str, Any]:
    try:
        res = supabase.table("users").select(PUBLIC_USER_FIELDS).eq("id", user_id).limit(1).execute()
    except Exception as e:
        raise_for_db_error(e, "Error fetching user")

    if not res.data:
        raise HTTPException(status_code=404, detail="User not found")
    return res.data[0]


# ====== USERS ======

@router.get("/users")
def list_users(
    role: Optional[UserRole] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    current_user: dict = Depends(staff_only),
) -> Dict[str, Any]:
    try:
        q = supabase.table("users").select(PUBLIC_USER_FIELDS)
        if role is not None:
            q = q.eq("role", role.value)
        if is_active is not None:
            q = q.eq("is_active", is_active)
        # Managers only see the accounts they created
        if current_user["role"] == UserRole.manager.value:
            q = q.eq("created_by", current_user["id"])
        users = q.order("created_at", desc=True).execute().data or []
    except Exception as e:
        raise_for_db_error(e, "Error fetching users")

    return {"users": users, "count": len(users)}


@router.post("/users", status_code=201)
def create_user(payload: UserCreate, current_user: dict = Depends(staff_only)) -> Dict[str, Any]:
    if current_user["role"] == UserRole.manager.value and payload.role == UserRole.admin:
        raise HTTPException(status_code=403, detail="Managers cannot create admin accounts")

    password = payload.password
    generated = password is None
    if generated:
        password = generate_temp_password()
    elif len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters long",
        )

    try:
        existing = supabase.table("users").select("id").eq("email", payload.email).limit(1).execute().data
    except Exception as e:
        raise_for_db_error(e, "Error checking existing user")
    if existing:
        raise HTTPException(status_code=409, detail="A user with this email already exists")

    row = {
        "email": payload.email,
        "full_name": payload.full_name.strip(),
        "role": payload.role.value,
        "phone": payload.phone,
        "password_hash": hash_password(password),
        "is_active": True,
        "created_by": current_user["id"],
    }

    try:
        ins = supabase.table("users").insert(row).execute()
    except Exception as e:
        if _is_duplicate(e):
            raise HTTPException(status_code=409, detail="A user with this email already exists")
        raise_for_db_error(e, "Error creating user")

    if not ins.data:
        raise HTTPException(status_code=500, detail="Insert user succeeded but returned no data")

    created = {k: v for k, v in ins.data[0].items() if k != "password_hash"}
    log_activity(
        current_user["id"],
        f"Created {payload.role.value} account",
        entity_type="user",
        entity_id=created.get("id"),
        details={"email": payload.email},
    )
    logger.info("[Admin] %s created user %s (%s)", current_user["email"], payload.email, payload.role.value)

    result: Dict[str, Any] = {"message": "User created successfully", "user": created}
    if generated:
        result["temporaryPassword"] = password
    return result


@router.post("/users/bulk")
def bulk_user_action(payload: BulkUserAction, current_user: dict = Depends(admin_only)) -> Dict[str, Any]:
    if current_user["id"] in payload.user_ids and payload.action in ("deactivate", "delete"):
        raise HTTPException(status_code=400, detail="You cannot deactivate or delete your own account")

    try:
        q = supabase.table("users")
        if payload.action == "delete":
            res = q.delete().in_("id", payload.user_ids).execute()
        else:
            res = q.update({
                "is_active": payload.action == "activate",
                "updated_at": utc_now_iso(),
            }).in_("id", payload.user_ids).execute()
    except Exception as e:
        raise_for_db_error(e, f"Error running bulk {payload.action}")

    affected = len(res.data or [])
    log_activity(
        current_user["id"],
        f"Bulk {payload.action} users",
        entity_type="user",
        details={"user_ids": payload.user_ids, "affected": affected},
    )
    return {"message": f"Bulk {payload.action} completed", "affected": affected}


@router.get("/users/{user_id}")
def get_user(user_id: str, current_user: dict = Depends(admin_only)) -> Dict[str, Any]:
    return fetch_user_by_id(user_id)


@router.put("/users/{user_id}")
def update_user(user_id: str, payload: UserUpdate, current_user: dict = Depends(admin_only)) -> Dict[str, Any]:
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    if "role" in changes:
        changes["role"] = payload.role.value
    if user_id == current_user["id"] and changes.get("is_active") is False:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")

    changes["updated_at"] = utc_now_iso()
    try:
        upd = supabase.table("users").update(changes).eq("id", user_id).execute()
    except Exception as e:
        raise_for_db_error(e, "Error updating user")

    if not upd.data:
        raise HTTPException(status_code=404, detail="User not found")

    log_activity(current_user["id"], "Updated user account", entity_type="user", entity_id=user_id,
                 details={"fields": sorted(k for k in changes if k != "updated_at")})
    return fetch_user_by_id(user_id)


@router.put("/users/{user_id}/status")
def set_user_status(user_id: str, payload: UserStatusUpdate, current_user: dict = Depends(admin_only)):
    if user_id == current_user["id"] and not payload.is_active:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")

    try:
        upd = supabase.table("users").update({
            "is_active": payload.is_active,
            "updated_at": utc_now_iso(),
        }).eq("id", user_id).execute()
    except Exception as e:
        raise_for_db_error(e, "Error updating user status")

    if not upd.data:
        raise HTTPException(status_code=404, detail="User not found")

    state = "activated" if payload.is_active else "deactivated"
    log_activity(current_user["id"], f"User {state}", entity_type="user", entity_id=user_id)
    return {"message": f"User {state} successfully", "user": fetch_user_by_id(user_id)}


@router.post("/users/{user_id}/reset-password")
def reset_user_password(user_id: str, current_user: dict = Depends(admin_only)):
    fetch_user_by_id(user_id)
    temporary = generate_temp_password()

    try:
        supabase.table("users").update({
            "password_hash": hash_password(temporary),
            "updated_at": utc_now_iso(),
        }).eq("id", user_id).execute()
    except Exception as e:
        raise_for_db_error(e, "Error resetting password")

    log_activity(current_user["id"], "Password reset by admin", entity_type="user", entity_id=user_id)
    return {"message": "Password reset successfully", "temporaryPassword": temporary}


@router.delete("/users/{user_id}")
def delete_user(user_id: str, current_user: dict = Depends(admin_only)):
    if user_id == current_user["id"]:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")

    try:
        res = supabase.table("users").delete().eq("id", user_id).execute()
    except Exception as e:
        raise_for_db_error(e, "Error deleting user")

    if not res.data:
        raise HTTPException(status_code=404, detail="User not found")

    log_activity(current_user["id"], "Deleted user account", entity_type="user", entity_id=user_id)
    return {"ok": True, "deleted": user_id}


# ====== STATS / AUDIT ======

@router.get("/dashboard-stats")
def dashboard_stats(current_user: dict = Depends(admin_only)) -> Dict[str, Any]:
    try:
        users = supabase.table("users").select("id", count="exact").execute()
        reports = (
            supabase.table("reports")
            .select("id, user_id, title, filename, total_amount, status, created_at")
            .order("created_at", desc=True)
            .execute()
        ).data or []
        payments = supabase.table("payments").select("amount, payment_status").execute().data or []
    except Exception as e:
        raise_for_db_error(e, "Error fetching dashboard stats")

    total_users = users.count if users.count is not None else len(users.data or [])
    stats = admin_stats(total_users, reports, payments, datetime.now(timezone.utc))
    stats["recentActivity"] = attach_users(reports[:5])
    return stats


@router.get("/activity-logs")
def activity_logs(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    entity_type: Optional[str] = Query(default=None),
    current_user: dict = Depends(admin_only),
) -> Dict[str, Any]:
    offset = (page - 1) * limit
    try:
        q = supabase.table("activity_logs").select("*", count="exact")
        if entity_type:
            q = q.eq("entity_type", entity_type)
        res = q.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
    except Exception as e:
        raise_for_db_error(e, "Error fetching activity logs")

    total = res.count or 0
    return {
        "logs": attach_users(res.data or []),
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": (total + limit - 1) // limit,
        },
    }
