# api/routers/reports.py
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, Field, field_validator

from api.supabase_client import supabase
from api.auth import get_current_user, require_roles
from api.helpers.activity import (
    log_activity,
    notify_staff,
    record_report_history,
    utc_now_iso,
)
from api.helpers.db_errors import raise_for_db_error
from api.helpers.lookups import attach_users
from api.helpers.statuses import STAFF_ROLES, PaymentStatus, ReportStatus, UserRole
from api.services.amount_extraction import (
    MAX_FILE_SIZE,
    MAX_FILES_PER_REPORT,
    UnsupportedFileType,
    extract_file,
    format_file_size,
    validate_upload,
)

router = APIRouter(prefix="/reports", tags=["reports"])
logger = logging.getLogger(__name__)

users_only = require_roles(UserRole.user.value)


class SubmittedFile(BaseModel):
    model_config = {"populate_by_name": True, "extra": "allow"}

    name: str = Field(..., min_length=1)
    url: Optional[str] = None
    extracted_files: List[Dict[str, Any]] = Field(default_factory=list, alias="extractedFiles")
    calculated_amount: float = Field(default=0, alias="calculatedAmount")


class ReportSubmit(BaseModel):
    model_config = {"populate_by_name": True}

    files: List[SubmittedFile]
    total_amount: float = Field(alias="totalAmount")
    report_date: date = Field(alias="reportDate")
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None

    @field_validator("files")
    @classmethod
    def files_present(cls, v: List[SubmittedFile]) -> List[SubmittedFile]:
        if not v:
            raise ValueError("At least one file is required")
        if len(v) > MAX_FILES_PER_REPORT:
            raise ValueError(f"A report can include at most {MAX_FILES_PER_REPORT} files")
        return v

    @field_validator("total_amount")
    @classmethod
    def amount_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Total amount must be greater than 0")
        return round(v, 2)


@router.post("/process")
def process_file(file: UploadFile = File(...), current_user: dict = Depends(get_current_user)):
    """
    Parses one uploaded statement and returns the amounts found in it.
    Nothing is stored; the client submits the result with /reports/submit.
    Plain `def`: parsing runs in FastAPI's threadpool, off the event loop.
    """
    filename = file.filename or ""
    too_large = HTTPException(
        status_code=400,
        detail=f"File size exceeds maximum allowed size ({format_file_size(MAX_FILE_SIZE)})",
    )
    if file.size is not None and file.size > MAX_FILE_SIZE:
        raise too_large

    # Never hold more than the limit (+1 byte to detect overflow) in memory
    content = file.file.read(MAX_FILE_SIZE + 1)
    if len(content) > MAX_FILE_SIZE:
        raise too_large

    validation = validate_upload(filename, len(content))
    if not validation.is_valid:
        raise HTTPException(status_code=400, detail="; ".join(validation.errors))

    try:
        extracted = extract_file(filename, content)
    except UnsupportedFileType as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "success": True,
        "file": extracted.to_dict(),
        "fileSize": format_file_size(len(content)),
        "warnings": validation.warnings + extracted.warnings,
        "totalAmount": extracted.total_amount,
    }


@router.post("/submit", status_code=201)
def submit_report(payload: ReportSubmit, current_user: dict = Depends(users_only)):
    first = payload.files[0]
    now = utc_now_iso()
    row = {
        "user_id": current_user["id"],
        "title": payload.title or first.name,
        "description": payload.description,
        "category": payload.category,
        "filename": first.name,
        "file_path": first.url,
        "report_date": payload.report_date.isoformat(),
        "upload_date": now,
        "total_amount": payload.total_amount,
        "remaining_amount": payload.total_amount,
        "status": ReportStatus.pending.value,
        "payment_status": PaymentStatus.pending.value,
        "processing_details": {
            "fileDetails": [f.model_dump(by_alias=True) for f in payload.files],
            "calculatedAmounts": [f.calculated_amount for f in payload.files],
        },
    }

    try:
        ins = supabase.table("reports").insert(row).execute()
    except Exception as e:
        raise_for_db_error(e, "Failed to create report")

    if not ins.data:
        raise HTTPException(status_code=500, detail="Insert report succeeded but returned no data")
    report = ins.data[0]

    file_rows = [
        {
            "report_id": report["id"],
            "file_name": f.name,
            "file_type": f.name.rsplit(".", 1)[-1].lower() if "." in f.name else "unknown",
            "file_url": f.url or "",
            "extracted_files": f.extracted_files,
            "calculated_amount": f.calculated_amount,
        }
        for f in payload.files
    ]
    try:
        supabase.table("report_files").insert(file_rows).execute()
    except Exception as e:
        # The report itself is in; file rows are detail
        logger.error("[Reports] report_files insert failed for %s: %s", report["id"], e)

    record_report_history(
        report["id"],
        action="submitted",
        performed_by=current_user["id"],
        new_status=ReportStatus.pending.value,
    )
    log_activity(
        current_user["id"],
        "Report submitted",
        entity_type="report",
        entity_id=report["id"],
        details={"total_amount": payload.total_amount, "files": len(payload.files)},
    )
    notify_staff(
        "report_submitted",
        "New report awaiting approval",
        f"{current_user.get('full_name') or current_user['email']} submitted "
        f'"{report.get("title")}" for {payload.total_amount:.2f}.',
        data={"report_id": report["id"]},
        roles=(UserRole.manager.value,),
    )

    logger.info("[Reports] %s submitted report %s (%.2f)", current_user["email"], report["id"], payload.total_amount)
    return {"success": True, "message": "Report submitted successfully", "reportId": report["id"], "report": report}


@router.get("/{report_id}")
def get_report(report_id: str, current_user: dict = Depends(get_current_user)) -> Dict[str, Any]:
    try:
        rows = supabase.table("reports").select("*").eq("id", report_id).limit(1).execute().data
        if not rows:
            raise HTTPException(status_code=404, detail="Report not found")
        report = rows[0]

        if report.get("user_id") != current_user["id"] and current_user["role"] not in STAFF_ROLES:
            raise HTTPException(status_code=403, detail="Access denied")

        files = supabase.table("report_files").select("*").eq("report_id", report_id).execute().data or []
        history = (
            supabase.table("report_history")
            .select("*")
            .eq("report_id", report_id)
            .order("created_at", desc=True)
            .execute()
        ).data or []
    except Exception as e:
        raise_for_db_error(e, "Error fetching report")

    return {
        "report": attach_users([report])[0],
        "files": files,
        "history": history,
    }
