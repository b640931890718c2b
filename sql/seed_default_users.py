"""
Creates the default admin/manager/user accounts when they do not exist.
Existing accounts are left untouched.

Emails and passwords come from SEED_<ROLE>_EMAIL / SEED_<ROLE>_PASSWORD.
A role without a password gets a generated one, printed once.

    python -m sql.seed_default_users
"""
import os
import sys
from dotenv import load_dotenv

load_dotenv()

from api.supabase_client import supabase
from utils.auth import generate_temp_password, hash_password

DEFAULT_ACCOUNTS = [
    ("admin", "System Administrator"),
    ("manager", "Manager User"),
    ("user", "Regular User"),
]


def default_users(env=os.environ):
    users = []
    for role, full_name in DEFAULT_ACCOUNTS:
        key = role.upper()
        password = env.get(f"SEED_{key}_PASSWORD")
        users.append({
            "email": env.get(f"SEED_{key}_EMAIL") or f"{role}@example.com",
            "password": password or generate_temp_password(),
            "generated": not password,
            "full_name": full_name,
            "role": role,
        })
    return users


def seed(users=None):
    users = default_users() if users is None else users
    created, skipped = 0, 0
    for u in users:
        existing = supabase.table("users").select("id").eq("email", u["email"]).limit(1).execute().data
        if existing:
            print(f"  SKIP {u['email']} (already exists)")
            skipped += 1
            continue

        supabase.table("users").insert({
            "email": u["email"],
            "full_name": u["full_name"],
            "role": u["role"],
            "password_hash": hash_password(u["password"]),
            "is_active": True,
        }).execute()
        print(f"  [OK] {u['email']} ({u['role']})")
        if u.get("generated"):
            print(f"       generated password: {u['password']}")
        created += 1
    return created, skipped


if __name__ == "__main__":
    print("=" * 60)
    print("SEED DEFAULT USERS")
    print("=" * 60)
    try:
        created, skipped = seed()
    except Exception as e:
        print(f"\n[ERROR FATAL] {str(e)}")
        sys.exit(1)
    print("\n" + "=" * 60)
    print(f"  Created: {created}")
    print(f"  Skipped: {skipped}")
    print("=" * 60)
