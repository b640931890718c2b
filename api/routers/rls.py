# api/routers/rls.py
# Admin view over the live row-level security policies, plus the fix.
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse

from api.auth import require_roles
from api.helpers.activity import log_activity
from api.helpers.statuses import UserRole
from api.services import rls_policies

router = APIRouter(prefix="/admin/rls", tags=["rls"])

admin_only = require_roles(UserRole.admin.value)


@router.get("/policies")
async def live_policies(current_user: dict = Depends(admin_only)) -> Dict[str, Any]:
    """pg_policies for the workflow tables, with any recursive ones flagged."""
    try:
        rows = await rls_policies.fetch_live_policies()
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error reading pg_policies: {e}")

    findings = rls_policies.find_recursive_policies(rows)
    return {
        "policies": rows,
        "recursive": [
            {"table": f.table, "policy": f.policy, "path": f.description}
            for f in findings
        ],
        "healthy": not findings,
    }


@router.get("/fix-sql", response_class=PlainTextResponse)
def fix_sql(current_user: dict = Depends(admin_only)) -> str:
    return rls_policies.render_fix_sql()


@router.post("/apply")
async def apply_fix(current_user: dict = Depends(admin_only)) -> Dict[str, Any]:
    try:
        statements = await rls_policies.apply_fix()
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error applying policy fix: {e}")

    log_activity(current_user["id"], "RLS policy fix applied", entity_type="system",
                 details={"statements": len(statements)})
    return {"message": "Policies replaced", "statements": len(statements)}
