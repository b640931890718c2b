"""
Prints the row-level security fix as plain SQL, ready to paste into the
Supabase SQL editor.

    python -m sql.print_rls_fix > rls_fix.sql
"""
from dotenv import load_dotenv

# RLS_ROLE_CLAIM may be overridden in .env
load_dotenv()

from api.services.rls_policies import render_fix_sql

if __name__ == "__main__":
    print(render_fix_sql())
