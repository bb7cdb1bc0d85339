#!/usr/bin/env python3
"""
Mio Backend — Archive Manager: scheduled sweep and one-off archival CLI

Management script for message archival.  Provides two subcommands:

  sweep    — Archive every conversation at or above ARCHIVE_THRESHOLD.
  archive  — Archive a single conversation, regardless of participants.

Usage examples
--------------
  # Run the sweep (what the scheduler triggers nightly)
  python scripts/archive_manager.py sweep

  # Archive one conversation and print the raw result
  python scripts/archive_manager.py archive --conversation abc123 --json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

# Ensure the project root is importable
sys.path.insert(0, ".")

from app.config import get_settings
from app.errors import MioError
from app.redis_client import close_redis, connect_redis
from app.services.archive_lease import ArchiveLease
from app.services.archive_service import ArchiveService
from app.store import get_store
from app.utils.storage import ArchiveStorage


async def _build_service() -> ArchiveService:
    redis = await connect_redis()
    lease = ArchiveLease(redis, get_settings().ARCHIVE_LEASE_SECONDS)
    return ArchiveService(get_store(), ArchiveStorage(), lease)


async def _shutdown() -> None:
    await close_redis()
    await get_store().close()


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: sweep
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_sweep(args: argparse.Namespace) -> int:
    """Archive all conversations that crossed the threshold."""
    service = await _build_service()
    try:
        summary = await service.sweep()
    finally:
        await _shutdown()

    print(f"\n{'=' * 60}")
    print(f"  Archive Sweep")
    print(f"{'=' * 60}")
    print(f"  Conversations due: {summary.scanned}")
    print(f"  Archived:          {summary.archived}")
    print(f"  Skipped:           {summary.skipped}")
    print(f"  Failed:            {summary.failed}")

    failures = [d for d in summary.details if "error" in d]
    if failures:
        print(f"\n  Failures:")
        for detail in failures:
            print(f"    {detail.get('conversation_id', '-')}: {detail['error']}")
    print(f"{'=' * 60}\n")

    if args.json:
        print(json.dumps(summary.model_dump(), indent=2, default=str))
    return 0


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: archive
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_archive(args: argparse.Namespace) -> int:
    """Archive one conversation."""
    service = await _build_service()
    try:
        result = await service.archive_conversation(args.conversation)
    except MioError as exc:
        print(f"Archive failed ({exc.code}): {exc.message}", file=sys.stderr)
        return 1
    finally:
        await _shutdown()

    if result.success:
        print(f"Archived {result.archived_count} messages to {result.archive_path}")
    else:
        print(f"No changes: {result.message}")

    if args.json:
        print(json.dumps(result.model_dump(), indent=2, default=str))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Mio Archive Manager — scheduled sweep and one-off message archival.",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available subcommands",
    )

    # ── sweep ─────────────────────────────────────────────────────────
    sweep_parser = subparsers.add_parser(
        "sweep",
        help="Archive every conversation at or above the archive threshold.",
    )
    sweep_parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Also output the raw JSON summary.",
    )

    # ── archive ───────────────────────────────────────────────────────
    archive_parser = subparsers.add_parser(
        "archive",
        help="Archive a single conversation.",
    )
    archive_parser.add_argument(
        "--conversation", "-c",
        type=str,
        required=True,
        help="Conversation id to archive.",
    )
    archive_parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Also output the raw JSON result.",
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "sweep":
        sys.exit(asyncio.run(cmd_sweep(args)))
    elif args.command == "archive":
        sys.exit(asyncio.run(cmd_archive(args)))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
