#!/usr/bin/env python3
"""
Start the entitlement API.

Runs the release phase (alembic upgrade + super admin seed) unless told not to,
then execs gunicorn on app.wsgi:app so gunicorn becomes PID 1.

Usage:
    python scripts/start.py
    python scripts/start.py --skip-release     # migrations already applied by a release job

Environment:
    PORT                 bind port (default 8080)
    WEB_CONCURRENCY      gunicorn workers (default 2)
    GUNICORN_TIMEOUT     worker timeout seconds (default 60)
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

DEFAULT_PORT = 8080


def _int_env(name: str, default: int, *, low: int, high: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = low - 1
    if not (low <= value <= high):
        print(f"[start] {name}={raw!r} is not an integer in {low}-{high}", flush=True)
        sys.exit(1)
    return value


def gunicorn_argv(port: int, workers: int, timeout: int) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", str(timeout),
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def _warn_missing_integrations() -> None:
    env = (os.environ.get("ENV") or "").strip().lower()
    if env not in ("prod", "production"):
        return
    for name in ("STRIPE_WEBHOOK_SECRET", "STRIPE_SECRET_KEY", "HCAPTCHA_SECRET_KEY"):
        if not (os.environ.get(name) or "").strip():
            print(f"[start] WARNING: {name} is not set; the matching integration is disabled", flush=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run release tasks and exec gunicorn for the entitlement API.")
    parser.add_argument("--skip-release", action="store_true", help="Do not run migrations and seeding first.")
    args = parser.parse_args()

    port = _int_env("PORT", DEFAULT_PORT, low=1, high=65535)
    workers = _int_env("WEB_CONCURRENCY", 2, low=1, high=64)
    timeout = _int_env("GUNICORN_TIMEOUT", 60, low=5, high=600)
    _warn_missing_integrations()

    if not args.skip_release:
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"[start] release failed, not starting: {e}", flush=True)
            sys.exit(1)

    print(f"[start] gunicorn app.wsgi:app on 0.0.0.0:{port} workers={workers}; health at /health", flush=True)
    os.execvp("gunicorn", gunicorn_argv(port, workers, timeout))


if __name__ == "__main__":
    main()
