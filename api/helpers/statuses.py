# api/helpers/statuses.py
# ================================
# Status vocabularies shared by routers
# ================================
# Values match the text columns in Supabase; the enums subclass str so they
# can be written straight into insert/update payloads.

from enum import Enum


class UserRole(str, Enum):
    admin = "admin"
    manager = "manager"
    user = "user"


class ReportStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    approved = "approved"
    rejected = "rejected"
    paid = "paid"
    failed = "failed"


class PaymentStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    pending_approval = "pending_approval"
    completed = "completed"
    rejected = "rejected"
    failed = "failed"
    refunded = "refunded"
    partial = "partial"


class PaymentMethod(str, Enum):
    credit_card = "credit_card"
    upi = "upi"
    net_banking = "net_banking"
    offline = "offline"


class PaymentProofStatus(str, Enum):
    pending_approval = "pending_approval"
    approved = "approved"
    rejected = "rejected"


class Decision(str, Enum):
    approve = "approve"
    reject = "reject"


STAFF_ROLES = (UserRole.admin.value, UserRole.manager.value)
ONLINE_METHODS = (PaymentMethod.credit_card.value, PaymentMethod.upi.value, PaymentMethod.net_banking.value)

# Reports a manager may still decide on
DECIDABLE_REPORT_STATUSES = (ReportStatus.pending.value, ReportStatus.processing.value)

# Report payment states a user may reset before paying again
CLEARABLE_PAYMENT_STATUSES = (
    PaymentStatus.pending.value,
    PaymentStatus.rejected.value,
    PaymentStatus.pending_approval.value,
)

OPEN_PAYMENT_STATUSES = (
    PaymentStatus.pending.value,
    PaymentStatus.processing.value,
    PaymentStatus.pending_approval.value,
)

PROOF_FILE_TYPES = ("pdf", "jpg", "jpeg", "png")


def past_tense(decision: str) -> str:
    """'approve' -> 'approved', 'reject' -> 'rejected'."""
    return "approved" if decision == Decision.approve.value else "rejected"
