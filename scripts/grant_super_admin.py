#!/usr/bin/env python3
"""Make a user a super admin (idempotent).

Usage:
  python scripts/grant_super_admin.py --email ops@example.com
  python scripts/grant_super_admin.py --email ops@example.com --principal-id <uuid>
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.aideplus.errors import TargetNotFound
from app.aideplus.modules.admins.service import ensure_super_admin
from scripts._db_utils import database_url_from_env, script_session


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email to make super admin")
    parser.add_argument("--principal-id", default=None, help="Identity provider user id, if the user never signed in")
    args = parser.parse_args()

    try:
        with script_session(database_url_from_env()) as s:
            record = ensure_super_admin(s, args.email, args.principal_id)
            print(f"{args.email} is super admin (admin id {record.id})")
    except TargetNotFound as e:
        print(e.message)
        sys.exit(1)


if __name__ == "__main__":
    main()
