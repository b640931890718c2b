import asyncio

import pytest

from api.helpers.db_errors import is_rls_recursion
from api.services.rls_policies import (
    POLICY_TABLES,
    build_policies,
    find_recursive_policies,
    fix_statements,
    referenced_tables,
    render_fix_sql,
)
from tests.conftest import auth_headers

LEGACY_USERS_QUAL = (
    "((auth.uid() = id) OR (( SELECT users_1.role FROM users users_1 "
    "WHERE (users_1.id = auth.uid())) = ANY (ARRAY['admin'::text, 'manager'::text])))"
)


def _as_live_rows(policies):
    return [
        {"tablename": p.table, "policyname": p.name, "cmd": p.command, "qual": p.using, "with_check": p.with_check}
        for p in policies
    ]


def test_catalogue_covers_every_table():
    tables = {p.table for p in build_policies()}
    assert tables == set(POLICY_TABLES)


def test_no_policy_reads_users():
    for p in build_policies():
        assert "users" not in referenced_tables(p.using)
        assert "users" not in referenced_tables(p.with_check)


def test_role_claim_is_configurable():
    policies = build_policies("(auth.jwt() ->> 'role')")
    profile = next(p for p in policies if p.name == "Users can view own profile")
    assert profile.using == "auth.uid() = id OR (auth.jwt() ->> 'role') IN ('admin', 'manager')"


def test_render_fix_sql_orders_statements():
    sql = render_fix_sql()

    assert "ALTER TABLE users ENABLE ROW LEVEL SECURITY;" in sql
    drop = 'DROP POLICY IF EXISTS "Users can view own profile" ON users;'
    assert sql.count(drop) == 1
    assert sql.index(drop) < sql.index('CREATE POLICY "Users can view own profile" ON users')
    assert sql.rstrip().endswith("NOTIFY pgrst, 'reload schema';")


def test_fix_statements_drop_legacy_names_once():
    statements = fix_statements()
    drops = [s for s in statements if s.startswith("DROP POLICY")]
    assert len(drops) == len(set(drops))
    assert 'DROP POLICY IF EXISTS "Managers can update payments" ON payments' in drops


def test_referenced_tables():
    assert referenced_tables(LEGACY_USERS_QUAL) == ["users"]
    assert referenced_tables("EXISTS (SELECT 1 FROM public.reports r JOIN payments p ON p.report_id = r.id)") == [
        "reports",
        "payments",
    ]
    assert referenced_tables("EXISTS (SELECT 1 FROM auth.users au WHERE au.id = auth.uid())") == []
    assert referenced_tables(None) == []


def test_detects_self_referencing_users_policy():
    rows = [{"tablename": "users", "policyname": "Users can view own profile", "qual": LEGACY_USERS_QUAL,
             "with_check": None}]

    findings = find_recursive_policies(rows)

    assert len(findings) == 1
    assert findings[0].table == "users"
    assert findings[0].description == "users -> users"


def test_detects_cycle_across_tables():
    rows = [
        {"tablename": "reports", "policyname": "r", "with_check": None,
         "qual": "EXISTS (SELECT 1 FROM public.payments p WHERE p.report_id = reports.id)"},
        {"tablename": "payments", "policyname": "p", "with_check": None,
         "qual": "EXISTS (SELECT 1 FROM reports r WHERE r.id = payments.report_id)"},
    ]

    findings = {f.table: f.description for f in find_recursive_policies(rows)}

    assert findings == {
        "reports": "reports -> payments -> reports",
        "payments": "payments -> reports -> payments",
    }


def test_catalogue_is_not_recursive():
    assert find_recursive_policies(_as_live_rows(build_policies())) == []


def test_is_rls_recursion_matches_message():
    assert is_rls_recursion(Exception('infinite recursion detected in policy for relation "users"'))
    assert not is_rls_recursion(Exception("connection reset"))


def test_fix_sql_endpoint_is_admin_only(client, admin, manager):
    assert client.get("/admin/rls/fix-sql", headers=auth_headers(manager)).status_code == 403

    res = client.get("/admin/rls/fix-sql", headers=auth_headers(admin))
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/plain")
    assert "NOTIFY pgrst" in res.text


def test_policies_endpoint_flags_recursion(client, admin, monkeypatch):
    from api.services import rls_policies

    async def fake_fetch(tables=POLICY_TABLES):
        return [{"tablename": "users", "policyname": "legacy", "cmd": "SELECT",
                 "qual": LEGACY_USERS_QUAL, "with_check": None}]

    monkeypatch.setattr(rls_policies, "fetch_live_policies", fake_fetch)

    res = client.get("/admin/rls/policies", headers=auth_headers(admin))

    assert res.status_code == 200
    body = res.json()
    assert body["healthy"] is False
    assert body["recursive"] == [{"table": "users", "policy": "legacy", "path": "users -> users"}]


def test_apply_endpoint_logs_activity(client, db, admin, monkeypatch):
    from api.services import rls_policies

    async def fake_apply(policies=None):
        return fix_statements()

    monkeypatch.setattr(rls_policies, "apply_fix", fake_apply)

    res = client.post("/admin/rls/apply", headers=auth_headers(admin))

    assert res.status_code == 200
    assert res.json()["statements"] == len(fix_statements())
    assert db.rows("activity_logs", user_id=admin["id"], action="RLS policy fix applied")


def test_policies_endpoint_without_db_url(client, admin, monkeypatch):
    from api.services import rls_policies

    async def no_dsn(tables=POLICY_TABLES):
        raise RuntimeError("SUPABASE_DB_URL is not defined in the .env")

    monkeypatch.setattr(rls_policies, "fetch_live_policies", no_dsn)

    res = client.get("/admin/rls/policies", headers=auth_headers(admin))
    assert res.status_code == 500
    assert "SUPABASE_DB_URL" in res.json()["detail"]


class FakeTransaction:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        self.conn.in_transaction = True
        self.conn.events.append("begin")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.conn.in_transaction = False
        self.conn.events.append("rollback" if exc_type else "commit")
        return False


class FakeConnection:
    """Records what rls_policies does with an asyncpg connection."""

    def __init__(self, rows=None, fail_on=None):
        self.rows = rows or []
        self.fail_on = fail_on
        self.in_transaction = False
        self.executed = []
        self.fetched = []
        self.events = []
        self.closed = False

    async def fetch(self, query, *args):
        self.fetched.append((query, args))
        return self.rows

    def transaction(self):
        return FakeTransaction(self)

    async def execute(self, stmt):
        self.executed.append((stmt, self.in_transaction))
        if self.fail_on is not None and len(self.executed) == self.fail_on:
            raise RuntimeError("statement failed")
        return "OK"

    async def close(self):
        self.closed = True


def _connect_with(monkeypatch, conn):
    from api.services import rls_policies

    async def connect():
        return conn

    monkeypatch.setattr(rls_policies, "get_db_connection", connect)
    return rls_policies


def test_apply_fix_runs_every_statement_in_one_transaction(monkeypatch):
    conn = FakeConnection()
    rls_policies = _connect_with(monkeypatch, conn)

    applied = asyncio.run(rls_policies.apply_fix())

    assert applied == fix_statements()
    assert [stmt for stmt, _ in conn.executed] == applied
    assert all(inside for _, inside in conn.executed)
    assert conn.events == ["begin", "commit"]
    assert conn.closed


def test_apply_fix_rolls_back_and_closes_on_failure(monkeypatch):
    conn = FakeConnection(fail_on=3)
    rls_policies = _connect_with(monkeypatch, conn)

    with pytest.raises(RuntimeError, match="statement failed"):
        asyncio.run(rls_policies.apply_fix())

    assert len(conn.executed) == 3
    assert conn.events == ["begin", "rollback"]
    assert conn.closed


def test_fetch_live_policies_reads_public_schema(monkeypatch):
    row = {"tablename": "users", "policyname": "legacy", "cmd": "SELECT", "qual": LEGACY_USERS_QUAL,
           "with_check": None}
    conn = FakeConnection(rows=[row])
    rls_policies = _connect_with(monkeypatch, conn)

    rows = asyncio.run(rls_policies.fetch_live_policies(["users", "reports"]))

    assert rows == [row]
    assert rows[0] is not row
    query, args = conn.fetched[0]
    assert "pg_policies" in query
    assert args == ("public", ["users", "reports"])
    assert conn.closed


def test_fetch_live_policies_closes_on_error(monkeypatch):
    conn = FakeConnection()

    async def broken_fetch(query, *args):
        raise RuntimeError("connection lost")

    conn.fetch = broken_fetch
    rls_policies = _connect_with(monkeypatch, conn)

    with pytest.raises(RuntimeError):
        asyncio.run(rls_policies.fetch_live_policies())
    assert conn.closed


def test_db_connection_needs_url(monkeypatch):
    from api.services import rls_policies

    monkeypatch.setattr(rls_policies, "SUPABASE_DB_URL", None)

    with pytest.raises(RuntimeError, match="SUPABASE_DB_URL"):
        asyncio.run(rls_policies.get_db_connection())
