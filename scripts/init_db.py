"""
Create tables (sqlite/dev) and seed the first super admin (idempotent).

Usage:
  python scripts/init_db.py --create-tables
  SUPER_ADMIN_EMAIL=ops@example.com SUPER_ADMIN_PRINCIPAL_ID=<uuid> python scripts/init_db.py
"""
import argparse
import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.aideplus.models import Base
from app.aideplus.modules.admins.service import ensure_super_admin
from scripts._db_utils import create_script_engine, database_url_from_env, script_session


def create_tables(database_url: str) -> None:
    """Schema for local development; production schema comes from alembic."""
    engine = create_script_engine(database_url)
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()
    print("Created tables.")


def seed_only(*, database_url: str | None = None) -> None:
    """
    Ensure the bootstrap super admin exists. Reads SUPER_ADMIN_EMAIL and
    (optionally) SUPER_ADMIN_PRINCIPAL_ID; does nothing when the email is unset.
    """
    email = (os.environ.get("SUPER_ADMIN_EMAIL") or "").strip().lower()
    principal_id = (os.environ.get("SUPER_ADMIN_PRINCIPAL_ID") or "").strip() or None
    if not email:
        print("SUPER_ADMIN_EMAIL not set; skipping super admin seed.")
        return

    db_url = (database_url or database_url_from_env()).strip()
    with script_session(db_url) as s:
        record = ensure_super_admin(s, email, principal_id)
        print(f"Super admin ready: {email} (admin id {record.id})")


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--create-tables", action="store_true", help="Create tables from the models (dev only)")
    parser.add_argument("--database-url", default=None)
    args = parser.parse_args()

    db_url = args.database_url or database_url_from_env()
    if args.create_tables:
        create_tables(db_url)
    seed_only(database_url=db_url)


if __name__ == "__main__":
    main()
