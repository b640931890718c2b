# api/auth.py

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, Field

from api.supabase_client import supabase
from api.helpers.activity import log_activity, utc_now_iso
from api.helpers.db_errors import is_rls_recursion, raise_for_db_error, RLS_CONFLICT_DETAIL
from utils.auth import hash_password, verify_password

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = "HS256"
JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", "7"))

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not defined in the .env")

MIN_PASSWORD_LENGTH = 6

# Columns safe to hand back to clients (never password_hash)
PUBLIC_USER_FIELDS = "id, email, full_name, role, phone, is_active, created_by, created_at, updated_at"

_bearer = HTTPBearer(auto_error=False)


# ====== MODELOS Pydantic ======

class LoginRequest(BaseModel):
    email: str
    password: str


class UpdatePasswordRequest(BaseModel):
    model_config = {"populate_by_name": True}

    current_password: str = Field(alias="currentPassword")
    new_password: str = Field(alias="newPassword")


# ====== TOKENS ======

def create_access_token(user: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Signs a JWT carrying the caller's id, email and role.
    The role claim is what the RLS policies read, so it must match users.role.
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=JWT_EXPIRES_DAYS))
    payload = {
        "userId": user["id"],
        "email": user.get("email"),
        "role": user.get("role"),
        "exp": expire,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user.get("id"),
        "email": user.get("email"),
        "full_name": user.get("full_name"),
        "role": user.get("role"),
        "phone": user.get("phone"),
        "is_active": user.get("is_active", True),
    }


# ====== DEPENDENCIES ======

def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Dict[str, Any]:
    """
    Resolves the bearer token to a fresh, active user row.
    Role changes and deactivations take effect on the next request.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="No token provided")

    claims = decode_access_token(credentials.credentials)
    user_id = claims.get("userId")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    try:
        result = (
            supabase.table("users")
            .select(PUBLIC_USER_FIELDS)
            .eq("id", user_id)
            .eq("is_active", True)
            .limit(1)
            .execute()
        )
    except Exception as e:
        raise_for_db_error(e, "Error querying user store")

    if not result.data:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    return result.data[0]


def require_roles(*roles: str):
    """Dependency factory: 403 unless the caller holds one of `roles`."""

    def _checker(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if current_user.get("role") not in roles:
            raise HTTPException(status_code=403, detail="Access denied")
        return current_user

    return _checker


# ====== ENDPOINT: Login ======

@router.post("/login")
def login(payload: LoginRequest):
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    try:
        result = (
            supabase.table("users")
            .select("*")
            .eq("email", email)
            .eq("is_active", True)
            .execute()
        )
    except Exception as e:
        if is_rls_recursion(e):
            logger.error("[Auth] Login blocked by recursive RLS policy: %r", e)
            raise HTTPException(status_code=503, detail=RLS_CONFLICT_DETAIL)
        logger.error("[Auth] Unexpected error on login lookup: %r", e)
        raise HTTPException(status_code=500, detail="Error querying user store")

    rows = result.data or []
    if len(rows) > 1:
        raise HTTPException(status_code=409, detail="Multiple user profiles found. Please contact administrator.")
    if not rows:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    user = rows[0]
    hashed = user.get("password_hash")
    if not hashed:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    # bcrypt raises ValueError on malformed hashes; treat it as a bad login
    try:
        ok = verify_password(payload.password, hashed)
    except ValueError as e:
        logger.warning("[Auth] bcrypt ValueError during login: %r", e)
        ok = False

    if not ok:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    token = create_access_token(user)
    logger.info("[Auth] Login ok for %s (%s)", email, user.get("role"))
    log_activity(user["id"], "User logged in", entity_type="user", entity_id=user["id"])

    return {
        "message": "Login successful",
        "user": public_user(user),
        "token": token,
    }


@router.get("/verify")
def verify(current_user: dict = Depends(get_current_user)):
    return {"message": "Token valid", "user": public_user(current_user)}


@router.post("/logout")
def logout(current_user: dict = Depends(get_current_user)):
    # Tokens are stateless; the client drops it. We only keep the audit trail.
    log_activity(current_user["id"], "User logged out", entity_type="user", entity_id=current_user["id"])
    return {"message": "Signed out successfully"}


@router.post("/update-password")
def update_password(payload: UpdatePasswordRequest, current_user: dict = Depends(get_current_user)):
    if len(payload.new_password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters long",
        )

    try:
        stored = (
            supabase.table("users")
            .select("id, password_hash")
            .eq("id", current_user["id"])
            .limit(1)
            .execute()
        ).data
    except Exception as e:
        raise_for_db_error(e, "Error querying user store")

    if not stored or not stored[0].get("password_hash"):
        raise HTTPException(status_code=400, detail="User has no password configured")

    try:
        ok = verify_password(payload.current_password, stored[0]["password_hash"])
    except ValueError:
        ok = False
    if not ok:
        raise HTTPException(status_code=400, detail="Current password is incorrect")

    try:
        supabase.table("users").update({
            "password_hash": hash_password(payload.new_password),
            "updated_at": utc_now_iso(),
        }).eq("id", current_user["id"]).execute()
    except Exception as e:
        raise_for_db_error(e, "Error updating password")

    log_activity(current_user["id"], "Password updated", entity_type="user", entity_id=current_user["id"])
    return {"message": "Password updated successfully"}
