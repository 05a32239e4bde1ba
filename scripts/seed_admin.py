#!/usr/bin/env python3
"""Create the first Nesema admin account from ADMIN_EMAIL / ADMIN_PASSWORD."""

from __future__ import annotations

import argparse
import os
import sys

from nesema.accounts import seed_admin
from nesema.db.session import init_db, session_scope


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed the bootstrap admin account. Credentials default to the ADMIN_EMAIL and "
        "ADMIN_PASSWORD environment variables.",
    )
    parser.add_argument("--email", default=os.getenv("ADMIN_EMAIL"), help="Admin e-mail address")
    parser.add_argument("--password", default=os.getenv("ADMIN_PASSWORD"), help="Admin password")
    parser.add_argument(
        "--skip-schema",
        action="store_true",
        help="Do not create missing tables before seeding",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if not args.email or not args.password:
        print("ADMIN_EMAIL and ADMIN_PASSWORD env vars are required", file=sys.stderr)
        return 2

    if not args.skip_schema:
        init_db()

    try:
        with session_scope() as session:
            result = seed_admin(session, args.email, args.password)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    print(result["message"])
    print(f"  user id: {result['user_id']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
