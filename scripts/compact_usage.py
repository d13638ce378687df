#!/usr/bin/env python3
"""Delete usage records whose period ended more than --keep-days ago.

Quota checks only read the current period, so this is housekeeping.

Usage:
  python scripts/compact_usage.py --keep-days 90
"""

import argparse
import sys
from datetime import timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.aideplus import models  # noqa: F401
from app.aideplus.modules.usage.service import compact_usage_records
from app.aideplus.utils import utcnow
from scripts._db_utils import database_url_from_env, script_session


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--keep-days", type=int, default=90)
    args = parser.parse_args()
    if args.keep_days < 1:
        parser.error("--keep-days must be at least 1")

    before = utcnow() - timedelta(days=args.keep_days)
    with script_session(database_url_from_env()) as s:
        deleted = compact_usage_records(s, before)
    print(f"Deleted {deleted} usage records ended before {before.date().isoformat()}")


if __name__ == "__main__":
    main()
