# api/routers/invoices.py
from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.supabase_client import supabase
from api.auth import get_current_user
from api.helpers.activity import log_activity
from api.helpers.db_errors import raise_for_db_error
from api.helpers.lookups import users_by_id
from api.helpers.statuses import STAFF_ROLES, PaymentStatus

router = APIRouter(prefix="/invoices", tags=["invoices"])
logger = logging.getLogger(__name__)

INVOICE_TAX_RATE = float(os.getenv("INVOICE_TAX_RATE", "0"))
INVOICE_DUE_DAYS = 30
INVOICE_CURRENCY = "INR"

DEFAULT_COMPANY_DETAILS = {
    "name": "Report Processing Solutions",
    "address": "123 Business Park",
    "city": "Mumbai",
    "state": "Maharashtra",
    "zipCode": "400001",
    "country": "India",
    "email": "billing@reportprocessing.com",
    "phone": "+91-22-1234-5678",
    "gst": "27ABCDE1234F1Z5",
}


class InvoiceGenerate(BaseModel):
    model_config = {"populate_by_name": True}

    payment_id: str = Field(alias="paymentId")


def generate_invoice_number(now: Optional[datetime] = None) -> str:
    """INV + yy + mm + last six digits of the epoch-millisecond timestamp."""
    now = now or datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    return f"INV{now:%y}{now:%m}{str(millis)[-6:]}"


def invoice_amounts(amount: float, tax_rate: float = INVOICE_TAX_RATE) -> Dict[str, float]:
    amount = round(float(amount or 0), 2)
    tax = round(amount * tax_rate, 2)
    return {"amount": amount, "tax_amount": tax, "total_amount": round(amount + tax, 2)}


def line_items(report: Optional[Dict[str, Any]], payment: Dict[str, Any]) -> List[Dict[str, Any]]:
    report = report or {}
    description = report.get("title") or report.get("filename") or "Report processing"
    if report.get("report_date"):
        description += f" ({report['report_date']})"
    amount = round(float(payment.get("amount") or 0), 2)
    return [{"description": description, "quantity": 1, "rate": amount, "amount": amount}]


def _can_access(row: Dict[str, Any], current_user: Dict[str, Any]) -> bool:
    return row.get("user_id") == current_user["id"] or current_user["role"] in STAFF_ROLES


def _report_for(report_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not report_id:
        return None
    rows = (
        supabase.table("reports")
        .select("id, title, filename, report_date, total_amount, created_at")
        .eq("id", report_id)
        .limit(1)
        .execute()
    ).data
    return rows[0] if rows else None


def _invoice_document(invoice: Dict[str, Any], payment: Dict[str, Any], report, customer) -> Dict[str, Any]:
    return {
        "invoice": invoice,
        "company": DEFAULT_COMPANY_DETAILS,
        "customer": customer,
        "report": report,
        "payment": {
            "id": payment.get("id"),
            "method": payment.get("payment_method"),
            "transaction_id": payment.get("transaction_id"),
            "payment_date": payment.get("payment_date"),
        },
        "items": line_items(report, payment),
    }


@router.post("/generate")
def generate_invoice(payload: InvoiceGenerate, current_user: dict = Depends(get_current_user)):
    try:
        payments = (
            supabase.table("payments")
            .select("*")
            .eq("id", payload.payment_id)
            .eq("payment_status", PaymentStatus.completed.value)
            .limit(1)
            .execute()
        ).data
        if not payments:
            raise HTTPException(status_code=404, detail="Payment not found or not completed")
        payment = payments[0]

        if not _can_access(payment, current_user):
            raise HTTPException(status_code=403, detail="Access denied")

        report = _report_for(payment.get("report_id"))
        existing = (
            supabase.table("invoices")
            .select("*")
            .eq("payment_id", payment["id"])
            .limit(1)
            .execute()
        ).data
    except Exception as e:
        raise_for_db_error(e, "Error loading payment for invoice")

    customer = users_by_id([payment.get("user_id")]).get(payment.get("user_id"))

    if existing:
        return {"created": False, **_invoice_document(existing[0], payment, report, customer)}

    now = datetime.now(timezone.utc)
    row = {
        "payment_id": payment["id"],
        "report_id": payment.get("report_id"),
        "user_id": payment.get("user_id"),
        "invoice_number": generate_invoice_number(now),
        "invoice_date": now.date().isoformat(),
        "due_date": (now + timedelta(days=INVOICE_DUE_DAYS)).date().isoformat(),
        "currency": INVOICE_CURRENCY,
        "status": "paid",
        **invoice_amounts(payment.get("amount")),
    }

    try:
        ins = supabase.table("invoices").insert(row).execute()
    except Exception as e:
        raise_for_db_error(e, "Error saving invoice")
    invoice = (ins.data or [row])[0]

    log_activity(
        current_user["id"],
        f"Invoice generated: {row['invoice_number']}",
        entity_type="payment",
        entity_id=payment["id"],
        details={"invoice_number": row["invoice_number"], "amount": row["total_amount"]},
    )
    logger.info("[Invoices] %s generated for payment %s", row["invoice_number"], payment["id"])
    return {"created": True, **_invoice_document(invoice, payment, report, customer)}


@router.get("")
def list_invoices(current_user: dict = Depends(get_current_user)) -> Dict[str, Any]:
    try:
        q = supabase.table("invoices").select("*")
        if current_user["role"] not in STAFF_ROLES:
            q = q.eq("user_id", current_user["id"])
        invoices = q.order("created_at", desc=True).execute().data or []
    except Exception as e:
        raise_for_db_error(e, "Error fetching invoices")

    return {"invoices": invoices, "count": len(invoices)}


@router.get("/{invoice_id}")
def get_invoice(invoice_id: str, current_user: dict = Depends(get_current_user)) -> Dict[str, Any]:
    try:
        rows = supabase.table("invoices").select("*").eq("id", invoice_id).limit(1).execute().data
        if not rows:
            raise HTTPException(status_code=404, detail="Invoice not found")
        invoice = rows[0]
        if not _can_access(invoice, current_user):
            raise HTTPException(status_code=403, detail="Access denied")

        payments = supabase.table("payments").select("*").eq("id", invoice["payment_id"]).limit(1).execute().data
        report = _report_for(invoice.get("report_id"))
    except Exception as e:
        raise_for_db_error(e, "Error fetching invoice")

    payment = payments[0] if payments else {"amount": invoice.get("amount")}
    customer = users_by_id([invoice.get("user_id")]).get(invoice.get("user_id"))
    return _invoice_document(invoice, payment, report, customer)
