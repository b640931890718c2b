# api/helpers/lookups.py
# Joins done in Python instead of PostgREST embeds, so rows read the same
# whether or not the foreign keys are declared in the hosted schema.

from typing import Any, Dict, Iterable, List

from api.supabase_client import supabase
from api.helpers.db_errors import raise_for_db_error

AUTHOR_FIELDS = "id, email, full_name, role"


def users_by_id(user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    ids = sorted({uid for uid in user_ids if uid})
    if not ids:
        return {}
    try:
        rows = supabase.table("users").select(AUTHOR_FIELDS).in_("id", ids).execute().data or []
    except Exception as e:
        raise_for_db_error(e, "Error loading users")
    return {r["id"]: r for r in rows}


def attach_users(rows: List[Dict[str, Any]], key: str = "user_id", as_field: str = "user") -> List[Dict[str, Any]]:
    """Adds `as_field` = {id, email, full_name, role} (or None) to each row."""
    lookup = users_by_id(r.get(key) for r in rows)
    return [{**r, as_field: lookup.get(r.get(key))} for r in rows]
