# api/helpers/db_errors.py
# ================================
# Translation of PostgREST errors into HTTP errors
# ================================
# The users/reports/payments policies used to query `users` from inside a
# `users` policy. Postgres aborts those queries with 42P17 (infinite
# recursion detected in policy). When that shows up we answer 503 and point
# at the policy fix instead of a bare 500.

import logging

from fastapi import HTTPException
from postgrest.exceptions import APIError

logger = logging.getLogger(__name__)

RLS_RECURSION_CODE = "42P17"

RLS_CONFLICT_DETAIL = (
    "RLS_POLICY_CONFLICT: database security policies are recursive. "
    "Run `python -m sql.apply_rls_fix` or paste the output of "
    "`python -m sql.print_rls_fix` into the Supabase SQL editor."
)


def is_rls_recursion(exc: Exception) -> bool:
    if isinstance(exc, APIError) and exc.code == RLS_RECURSION_CODE:
        return True
    msg = str(exc).lower()
    return RLS_RECURSION_CODE.lower() in msg or "infinite recursion" in msg


def raise_for_db_error(exc: Exception, detail: str) -> None:
    """
    Re-raise a Supabase failure as an HTTPException.
    RLS recursion -> 503, anything else -> 500 with `detail`.
    """
    if isinstance(exc, HTTPException):
        raise exc
    if is_rls_recursion(exc):
        logger.error("[DB] RLS recursion detected: %s", exc)
        raise HTTPException(status_code=503, detail=RLS_CONFLICT_DETAIL)
    logger.error("[DB] %s: %r", detail, exc)
    raise HTTPException(status_code=500, detail=f"{detail}: {str(exc)}")
