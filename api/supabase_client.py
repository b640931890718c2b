import logging
import os
from typing import Any, Dict

from supabase import create_client, Client

from api.helpers.db_errors import RLS_CONFLICT_DETAIL, is_rls_recursion

logger = logging.getLogger(__name__)

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
    raise RuntimeError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY in environment")

# Service-role client: bypasses RLS, so every router enforces ownership itself.
supabase: Client = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)


def ping_database() -> Dict[str, Any]:
    """
    One-row read of `users`. The table whose policies used to recurse,
    so a broken policy set shows up here first.
    """
    try:
        supabase.table("users").select("id").limit(1).execute()
    except Exception as e:
        if is_rls_recursion(e):
            return {"database": "rls_recursion", "detail": RLS_CONFLICT_DETAIL}
        logger.error("[Supabase] ping failed: %s", e)
        return {"database": "error", "detail": str(e)}
    return {"database": "ok"}
