#!/usr/bin/env python3
"""
Create the first admin account and its profile.
Run this after the schema is created.

Usage:
    python scripts/create_admin.py --id-number ADM001 --name "Bagian Akademik" --email admin@pnl.ac.id --password secret123
"""

import argparse
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.credentials import MIN_PASSWORD_LENGTH
from src.database import db
from src.errors import AccountExistsError
from src.logger import app_logger as logger
from src.models import Profile, Role
from src.services.identity_client import IdentityGateway


def create_admin(gateway: IdentityGateway, database, id_number: str, name: str, email: str, password: str) -> Profile:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    existing = database.get_profile_by_id_number(id_number)
    if existing is not None:
        print(f"- Skipped (exists): {existing.id_number} ({existing.email})")
        return existing

    if not gateway.supports_privileged_creation:
        raise SystemExit("SUPABASE_SERVICE_ROLE_KEY is required to create the admin account")

    try:
        account_id = gateway.create_account_privileged(email, password)
    except AccountExistsError:
        raise SystemExit(f"An auth account for {email} already exists without a profile")

    profile = Profile(
        account_id=account_id,
        email=email,
        id_number=id_number,
        display_name=name,
        role=Role.ADMIN.value,
        level_user=1,
    )
    database.create_profile(profile)
    print(f"✓ Created admin: {name} ({email})")
    return profile


def main() -> None:
    parser = argparse.ArgumentParser(description="Create the dashboard admin account")
    parser.add_argument("--id-number", required=True, help="Login ID used on the sign-in form")
    parser.add_argument("--name", required=True)
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    args = parser.parse_args()

    try:
        create_admin(IdentityGateway.from_config(), db, args.id_number.strip(), args.name.strip(),
                     args.email.strip(), args.password)
        print("\n✅ Admin ready")
    except Exception as e:
        print(f"\n❌ Admin creation failed: {e}")
        logger.error(f"Fatal error creating admin: {e}", exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
