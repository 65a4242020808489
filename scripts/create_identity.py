#!/usr/bin/env python3
"""Seed an identity directly in the credential store.

Self-registration only offers the public roles; use this to create operator
accounts (MODERATOR, ADMIN, SUPER_ADMIN) or fixtures for local testing.

Usage:
    python scripts/create_identity.py --email admin@example.com --password 'Secret123' --role ADMIN

    IDENTITY_EMAIL=ops@example.com IDENTITY_PASSWORD='Secret123' python scripts/create_identity.py

Environment Variables:
    IDENTITY_EMAIL / IDENTITY_PASSWORD / IDENTITY_ROLE / IDENTITY_PHONE
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_identity(
    email: str,
    password: str,
    role: str,
    phone_number: str | None = None,
    dry_run: bool = False,
) -> dict:
    # Import here so the env defaults below are applied before settings load
    from youthauth.service.credentials import normalize_phone
    from youthauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_identity_by_email(email)
    if existing:
        print(f"Identity {email} already exists (id: {existing.id}, role: {existing.role})")
        return {"identity_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} identity: {email}")
        return {"identity_id": None, "email": email, "status": "dry_run"}

    identity = runtime.store.create_identity(
        email,
        runtime.passwords.hash(password),
        role=role,
        phone_number=normalize_phone(phone_number) if phone_number else None,
        email_verified=True,
    )
    print(f"Created {role} identity: {identity.email} (id: {identity.id})")
    return {"identity_id": identity.id, "email": identity.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed an identity for YouthAuth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("IDENTITY_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("IDENTITY_PASSWORD"))
    parser.add_argument("--role", default=os.environ.get("IDENTITY_ROLE", "ADMIN"))
    parser.add_argument("--phone", default=os.environ.get("IDENTITY_PHONE"))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email and --password (or IDENTITY_EMAIL/IDENTITY_PASSWORD) are required")
        sys.exit(1)

    from youthauth.storage.models import Role

    role = args.role.upper()
    if role not in {r.value for r in Role}:
        print(f"Error: unknown role {args.role}")
        sys.exit(1)

    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/youthauth-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        create_identity(args.email, args.password, role, args.phone, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
