#!/usr/bin/env python3
"""Mint registration access keys without going through the HTTP endpoint.

Usage:
    DATABASE_URL=postgresql://... python scripts/generate_access_key.py --count 3

    # Print what would happen without touching the store:
    python scripts/generate_access_key.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set,
        which is only useful for trying the script out)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def generate_keys(count: int, dry_run: bool = False) -> list[str]:
    # imported late so the environment below is in place before settings load
    from docprescrip.service.auth import generate_access_key_value
    from docprescrip.service.runtime import get_runtime

    if dry_run:
        return [generate_access_key_value() for _ in range(count)]
    runtime = get_runtime()
    return [runtime.auth.issue_access_key() for _ in range(count)]


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate Doc Prescrip registration access keys",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--count", type=int, default=1, help="Number of keys to create")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print sample keys without storing them",
    )
    args = parser.parse_args()

    if args.count < 1:
        print("Error: --count must be at least 1")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        # tokens are never issued here, but the runtime refuses to start without one
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        keys = generate_keys(args.count, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    prefix = "[DRY RUN] " if args.dry_run else ""
    for key in keys:
        print(f"{prefix}{key}")


if __name__ == "__main__":
    main()
