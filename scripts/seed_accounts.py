#!/usr/bin/env python3
"""Load registration codes and registered client accounts into the store.

Usage:
    # Using the file paths from settings (REGISTRATION_CODES_FILE, REGISTERED_CLIENTS_FILE):
    python scripts/seed_accounts.py

    # Or with explicit paths:
    python scripts/seed_accounts.py --codes registration-codes.txt --clients seeds/registered-clients.txt

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    SHARED_FS_ROOT: Directory for memory-store state when DATABASE_URL is not set
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def seed(codes_path: Path | None, clients_path: Path | None, dry_run: bool = False) -> dict:
    """Load both seed files; either may be skipped by passing None.

    Returns:
        dict with counts of codes added and client accounts created
    """
    # Import here to avoid loading config before env vars are set
    from tokenwarden.service.runtime import get_runtime
    from tokenwarden.service.seeds import (
        load_registered_clients,
        load_registration_codes,
        parse_registered_clients,
        parse_registration_codes,
    )

    if dry_run:
        codes = parse_registration_codes(codes_path.read_text()) if codes_path else []
        clients = parse_registered_clients(clients_path.read_text()) if clients_path else []
        print(f"[DRY RUN] Would load {len(codes)} codes and {len(clients)} clients")
        return {"codes_added": 0, "clients_created": 0, "status": "dry_run"}

    runtime = get_runtime()
    codes_added = load_registration_codes(runtime.store, codes_path) if codes_path else 0
    created = (
        load_registered_clients(runtime.store, runtime.hasher, clients_path)
        if clients_path
        else []
    )
    runtime.hasher.shutdown()
    return {
        "codes_added": codes_added,
        "clients_created": len(created),
        "status": "loaded",
    }


def _existing(path_value: str | None) -> Path | None:
    if not path_value:
        return None
    path = Path(path_value)
    if not path.exists():
        print(f"Note: {path} not found, skipping")
        return None
    return path


def build_parser(settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Seed registration codes and client accounts for tokenwarden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--codes",
        default=settings.registration_codes_file,
        help="Registration code file, one code per line",
    )
    parser.add_argument(
        "--clients",
        default=settings.registered_clients_file,
        help="Client file of username:password:recoveryKey lines",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse the files without writing anything",
    )
    return parser


def main():
    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/tokenwarden-seed"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # seeding never touches rate limits
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from tokenwarden.config import get_settings

    args = build_parser(get_settings()).parse_args()

    try:
        result = seed(_existing(args.codes), _existing(args.clients), args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "loaded":
        print("\nSeed data loaded.")
        print(f"  Registration codes added: {result['codes_added']}")
        print(f"  Client accounts created: {result['clients_created']}")


if __name__ == "__main__":
    main()
