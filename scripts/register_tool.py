#!/usr/bin/env python3
"""Register a tool in the policy store, or update it if the name exists.

Usage:
    # Register a search tool open to regular users:
    python scripts/register_tool.py --name search --description "Web search" \
        --per-minute 10 --per-day 100 --role user

    # Disable an existing tool globally:
    python scripts/register_tool.py --name search --disable

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def register_or_update(args: argparse.Namespace) -> dict:
    """Create the tool or apply the given fields to the existing one.

    Returns:
        dict with tool_id, name, and status ('created', 'updated', 'unchanged' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from toolgate.service.runtime import Runtime

    runtime = Runtime()
    try:
        existing = runtime.store.get_tool_by_name(args.name)
        roles = args.role or None

        if existing:
            if args.dry_run:
                print(f"[DRY RUN] Would update tool {args.name} (id: {existing.id})")
                return {"tool_id": existing.id, "name": args.name, "status": "dry_run"}
            updated = runtime.registry.update_tool(
                existing.id,
                description=args.description,
                is_enabled=args.enabled,
                requires_auth=args.requires_auth,
                rate_limit_per_minute=args.per_minute,
                rate_limit_per_day=args.per_day,
                allowed_roles=roles,
            )
            return {
                "tool_id": existing.id,
                "name": args.name,
                "status": "updated" if updated else "unchanged",
            }

        if args.dry_run:
            print(f"[DRY RUN] Would register tool: {args.name}")
            return {"tool_id": None, "name": args.name, "status": "dry_run"}

        options = {
            "is_enabled": True if args.enabled is None else args.enabled,
            "requires_auth": bool(args.requires_auth),
            "allowed_roles": roles,
        }
        if args.per_minute is not None:
            options["rate_limit_per_minute"] = args.per_minute
        if args.per_day is not None:
            options["rate_limit_per_day"] = args.per_day
        tool_id = runtime.registry.register_tool(
            args.name, args.description or "", **options
        )
        return {"tool_id": tool_id, "name": args.name, "status": "created"}
    finally:
        runtime.shutdown()


def main():
    parser = argparse.ArgumentParser(
        description="Register or update a tool in the toolgate registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", required=True, help="Unique tool name")
    parser.add_argument("--description", default=None, help="Tool description")
    parser.add_argument("--per-minute", type=int, default=None, help="Calls allowed per minute")
    parser.add_argument("--per-day", type=int, default=None, help="Calls allowed per day")
    parser.add_argument(
        "--role",
        action="append",
        default=[],
        help="Allowed role (repeat for several)",
    )
    state = parser.add_mutually_exclusive_group()
    state.add_argument("--enable", dest="enabled", action="store_const", const=True)
    state.add_argument("--disable", dest="enabled", action="store_const", const=False)
    parser.add_argument(
        "--requires-auth",
        action="store_const",
        const=True,
        default=None,
        help="Mark the tool as requiring an authenticated user",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = register_or_update(args)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Registered tool {result['name']} (id: {result['tool_id']})")
    elif result["status"] == "updated":
        print(f"Updated tool {result['name']} (id: {result['tool_id']})")
    elif result["status"] == "unchanged":
        print(f"No changes applied to tool {result['name']}")


if __name__ == "__main__":
    main()
