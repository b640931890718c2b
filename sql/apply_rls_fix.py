"""
Replaces the workflow table policies with the non-recursive set in a single
transaction, then re-checks the live database.

    python -m sql.apply_rls_fix
"""
import asyncio
import sys
from dotenv import load_dotenv

load_dotenv()

from api.services.rls_policies import apply_fix, fetch_live_policies, find_recursive_policies


async def run() -> int:
    print("=" * 60)
    print("RLS POLICY FIX")
    print("=" * 60)

    print("\n[STEP 1] Applying policies...")
    statements = await apply_fix()
    for stmt in statements:
        print(f"  [OK] {stmt.splitlines()[0]}")

    print("\n[STEP 2] Verifying...")
    findings = find_recursive_policies(await fetch_live_policies())

    print("\n" + "=" * 60)
    if findings:
        for f in findings:
            print(f"  [RECURSIVE] {f.table}: \"{f.policy}\"  ({f.description})")
        print(f"[ATTENTION] {len(findings)} recursive policies remain")
        print("=" * 60)
        return 1

    print(f"[SUCCESS] {len(statements)} statements applied, no recursion left")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(run()))
    except Exception as e:
        print(f"\n[ERROR FATAL] {str(e)}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
