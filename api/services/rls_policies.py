# api/services/rls_policies.py
# ================================
# Row-level security policies
# ================================
# The policies for every workflow table are declared once here. Ownership is
# `auth.uid()`; role checks read the role from the JWT claim. A policy on
# `users` that sub-selects `users` (or reports -> users -> reports) makes
# Postgres abort with 42P17, which is what the detection below looks for.
#
# Functions:
#   build_policies(role_claim) -> List[Policy]
#   fix_statements(policies) / render_fix_sql(policies) -> SQL
#   find_recursive_policies(live_rows) -> List[RecursionFinding]
#   fetch_live_policies() / apply_fix()  (asyncpg over SUPABASE_DB_URL)

import logging
import os
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import asyncpg

logger = logging.getLogger(__name__)

SUPABASE_DB_URL = os.getenv("SUPABASE_DB_URL")
SCHEMA_NAME = "public"

# Supabase puts the Postgres role ("authenticated") in the top-level `role`
# claim, so the application role is read from app_metadata.
ROLE_CLAIM = os.getenv("RLS_ROLE_CLAIM", "(auth.jwt() -> 'app_metadata' ->> 'role')")

POLICY_TABLES = (
    "users",
    "reports",
    "payments",
    "payment_proofs",
    "invoices",
    "notifications",
    "activity_logs",
    "report_history",
)

# Names used by earlier rounds of hand-written fixes; all are dropped first.
LEGACY_POLICY_NAMES: Dict[str, Sequence[str]] = {
    "users": ("Users can view own profile", "Users can update own profile", "Admins can manage users"),
    "reports": ("Users can view own reports", "Users can insert own reports", "Managers can update reports"),
    "payments": ("Users can view own payments", "Managers can update payments", "Users can insert own payments"),
    "payment_proofs": (
        "Users can view own payment proofs",
        "Users can insert own payment proofs",
        "Managers can update payment proofs",
    ),
    "invoices": ("Users can view own invoices",),
    "notifications": (
        "Users can view own notifications",
        "Users can update own notifications",
        "System can insert notifications",
    ),
    "activity_logs": ("Admins can view all activity logs", "Users can insert activity logs"),
    "report_history": ("Users can view own report history",),
}

_TABLE_REF = re.compile(
    r'\b(?:from|join)\s+(?:"?(\w+)"?\.)?"?(\w+)"?',
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Policy:
    name: str
    table: str
    command: str = "SELECT"
    using: Optional[str] = None
    with_check: Optional[str] = None

    def create_sql(self) -> str:
        sql = f'CREATE POLICY "{self.name}" ON {self.table}\n  FOR {self.command}'
        if self.using:
            sql += f"\n  USING ({self.using})"
        if self.with_check:
            sql += f"\n  WITH CHECK ({self.with_check})"
        return sql

    def drop_sql(self) -> str:
        return drop_policy_sql(self.table, self.name)


@dataclass
class RecursionFinding:
    table: str
    policy: str
    path: List[str] = field(default_factory=list)

    @property
    def description(self) -> str:
        return " -> ".join(self.path)


def drop_policy_sql(table: str, name: str) -> str:
    return f'DROP POLICY IF EXISTS "{name}" ON {table}'


# ====== CATALOGUE ======

def build_policies(role_claim: str = ROLE_CLAIM) -> List[Policy]:
    staff = f"{role_claim} IN ('admin', 'manager')"
    admin = f"{role_claim} = 'admin'"

    def own(column: str = "user_id") -> str:
        return f"auth.uid() = {column}"

    return [
        # users
        Policy("Users can view own profile", "users", "SELECT", using=f"{own('id')} OR {staff}"),
        Policy("Users can update own profile", "users", "UPDATE", using=f"{own('id')} OR {admin}"),
        Policy("Admins can manage users", "users", "ALL", using=staff, with_check=staff),
        # reports
        Policy("Users can view own reports", "reports", "SELECT", using=f"{own()} OR {staff}"),
        Policy("Users can insert own reports", "reports", "INSERT", with_check=own()),
        Policy("Managers can update reports", "reports", "UPDATE", using=f"{own()} OR {staff}"),
        # payments
        Policy("Users can view own payments", "payments", "SELECT", using=f"{own()} OR {staff}"),
        Policy("Users can insert own payments", "payments", "INSERT", with_check=own()),
        Policy("Managers can update payments", "payments", "UPDATE", using=staff),
        # payment_proofs
        Policy("Users can view own payment proofs", "payment_proofs", "SELECT", using=f"{own()} OR {staff}"),
        Policy("Users can insert own payment proofs", "payment_proofs", "INSERT", with_check=own()),
        Policy("Managers can update payment proofs", "payment_proofs", "UPDATE", using=staff),
        # invoices
        Policy("Users can view own invoices", "invoices", "SELECT", using=f"{own()} OR {staff}"),
        # notifications
        Policy("Users can view own notifications", "notifications", "SELECT", using=own()),
        Policy("Users can update own notifications", "notifications", "UPDATE", using=own()),
        Policy("System can insert notifications", "notifications", "INSERT", with_check="true"),
        # activity_logs
        Policy("Admins can view all activity logs", "activity_logs", "SELECT", using=admin),
        Policy("Users can insert activity logs", "activity_logs", "INSERT", with_check=own()),
        # report_history reads reports; reports never reads report_history
        Policy(
            "Users can view own report history",
            "report_history",
            "SELECT",
            using=(
                f"{staff} OR EXISTS (SELECT 1 FROM reports r "
                "WHERE r.id = report_history.report_id AND r.user_id = auth.uid())"
            ),
        ),
    ]


def fix_statements(policies: Optional[Iterable[Policy]] = None) -> List[str]:
    """Ordered statements: enable RLS, drop every known name, create, reload PostgREST."""
    policies = list(policies) if policies is not None else build_policies()
    tables = list(dict.fromkeys(p.table for p in policies))

    statements = [f"ALTER TABLE {t} ENABLE ROW LEVEL SECURITY" for t in tables]

    dropped = set()
    for table in tables:
        names = list(LEGACY_POLICY_NAMES.get(table, ())) + [p.name for p in policies if p.table == table]
        for name in names:
            if (table, name) in dropped:
                continue
            dropped.add((table, name))
            statements.append(drop_policy_sql(table, name))

    statements.extend(p.create_sql() for p in policies)
    statements.append("NOTIFY pgrst, 'reload schema'")
    return statements


def render_fix_sql(policies: Optional[Iterable[Policy]] = None) -> str:
    header = (
        "-- Non-recursive row-level security policies.\n"
        "-- Role checks read the JWT claim; no policy selects from users.\n"
    )
    return header + "\n\n".join(f"{stmt};" for stmt in fix_statements(policies)) + "\n"


# ====== DETECTION ======

def referenced_tables(expression: Optional[str]) -> List[str]:
    """Tables named after FROM/JOIN in a policy expression (public schema only)."""
    if not expression:
        return []
    found = []
    for schema, name in _TABLE_REF.findall(expression):
        if schema and schema.lower() != SCHEMA_NAME:
            continue
        name = name.lower()
        if name == "select":
            continue
        if name not in found:
            found.append(name)
    return found


def _policy_refs(row: Dict) -> List[str]:
    refs = referenced_tables(row.get("qual"))
    for name in referenced_tables(row.get("with_check")):
        if name not in refs:
            refs.append(name)
    return refs


def _path_back(graph: Dict[str, set], start: str, target: str) -> Optional[List[str]]:
    queue = deque([[start]])
    seen = {start}
    while queue:
        path = queue.popleft()
        node = path[-1]
        if node == target:
            return path
        for nxt in sorted(graph.get(node, ())):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(path + [nxt])
    return None


def find_recursive_policies(live_rows: Iterable[Dict]) -> List[RecursionFinding]:
    """
    Takes pg_policies rows (tablename, policyname, qual, with_check) and
    returns every policy whose expression can reach its own table again,
    either directly or through another table's policies.
    """
    rows = list(live_rows)
    graph: Dict[str, set] = {}
    for row in rows:
        graph.setdefault(row["tablename"], set()).update(_policy_refs(row))

    findings: List[RecursionFinding] = []
    for row in rows:
        table = row["tablename"]
        for ref in _policy_refs(row):
            if ref == table:
                findings.append(RecursionFinding(table, row["policyname"], [table, table]))
                break
            back = _path_back(graph, ref, table)
            if back:
                findings.append(RecursionFinding(table, row["policyname"], [table] + back))
                break
    return findings


# ====== DATABASE ======

async def get_db_connection() -> asyncpg.Connection:
    if not SUPABASE_DB_URL:
        raise RuntimeError("SUPABASE_DB_URL is not defined in the .env")
    return await asyncpg.connect(SUPABASE_DB_URL)


async def fetch_live_policies(tables: Sequence[str] = POLICY_TABLES) -> List[Dict]:
    conn = await get_db_connection()
    try:
        rows = await conn.fetch(
            """
            SELECT tablename, policyname, cmd, qual, with_check
            FROM pg_policies
            WHERE schemaname = $1 AND tablename = ANY($2::text[])
            ORDER BY tablename, policyname;
            """,
            SCHEMA_NAME,
            list(tables),
        )
    finally:
        await conn.close()
    return [dict(r) for r in rows]


async def apply_fix(policies: Optional[Iterable[Policy]] = None) -> List[str]:
    """Runs the fix in a single transaction. Returns the statements executed."""
    statements = fix_statements(policies)
    conn = await get_db_connection()
    try:
        async with conn.transaction():
            for stmt in statements:
                await conn.execute(stmt)
    finally:
        await conn.close()
    logger.info("[RLS] Applied %d statements", len(statements))
    return statements
