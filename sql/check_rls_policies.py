"""
Lists the live policies on the workflow tables and flags recursive ones.
Exit code 1 when any recursion is found.

    python -m sql.check_rls_policies
"""
import asyncio
import sys
from dotenv import load_dotenv

load_dotenv()

from api.services.rls_policies import fetch_live_policies, find_recursive_policies


def main() -> int:
    print("=" * 60)
    print("RLS POLICY CHECK")
    print("=" * 60)

    try:
        rows = asyncio.run(fetch_live_policies())
    except Exception as e:
        print(f"\n[ERROR FATAL] {str(e)}")
        return 2

    print(f"\n[STEP 1] Live policies: {len(rows)}")
    print("-" * 60)
    current = None
    for row in rows:
        if row["tablename"] != current:
            current = row["tablename"]
            print(f"\n  {current}")
        print(f"    - {row['policyname']} ({row['cmd']})")

    print("\n[STEP 2] Looking for recursive policies...")
    findings = find_recursive_policies(rows)

    print("\n" + "=" * 60)
    if not findings:
        print("[OK] No recursive policies found")
        print("=" * 60)
        return 0

    for f in findings:
        print(f"  [RECURSIVE] {f.table}: \"{f.policy}\"  ({f.description})")
    print("\n[ATTENTION] Run `python -m sql.apply_rls_fix` to replace them")
    print("=" * 60)
    return 1


if __name__ == "__main__":
    sys.exit(main())
