"""Command-line tool for inspecting and repairing stored projects."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence, TextIO

from .api.settings import SyncApiSettings
from .audit import LoggingAuditSink
from .changes import ChangeFeed
from .context import SyncContext
from .errors import NotFoundError, SyncError
from .service import ProjectSyncService
from .snapshots import SnapshotManager
from .sqlite_store import SQLiteEntityStore


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="storysync", description="Inspect and maintain synced story projects."
    )
    parser.add_argument(
        "--database",
        type=Path,
        help=(
            "Path to the SQLite database. "
            "Defaults to STORYSYNC_DATABASE_PATH when unset."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    show = subparsers.add_parser("show", help="Print the assembled project document.")
    show.add_argument("owner")

    snapshots = subparsers.add_parser("snapshots", help="List retained snapshots.")
    snapshots.add_argument("owner")

    restore = subparsers.add_parser(
        "restore", help="Restore the project to a retained snapshot."
    )
    restore.add_argument("owner")
    restore.add_argument("version", type=int)

    changes = subparsers.add_parser("changes", help="Print change feed entries.")
    changes.add_argument("owner")
    changes.add_argument(
        "--since",
        type=int,
        default=0,
        help="Only show entries after this sequence number (default: 0).",
    )

    import_ = subparsers.add_parser(
        "import", help="Replace the project with a document read from a JSON file."
    )
    import_.add_argument("owner")
    import_.add_argument("file", type=Path)
    import_.add_argument(
        "--base-version",
        type=int,
        help="Version the file was based on. Defaults to the stored version.",
    )
    return parser.parse_args(argv)


def _dump(payload: Any, output: TextIO) -> None:
    output.write(json.dumps(payload, ensure_ascii=False, indent=2))
    output.write("\n")


async def _run_command(
    args: argparse.Namespace,
    settings: SyncApiSettings,
    database: Path,
    output: TextIO,
) -> None:
    store = SQLiteEntityStore(database)
    await store.ensure_schema()
    service = ProjectSyncService(
        snapshots=SnapshotManager(retention=settings.snapshot_retention),
        changes=ChangeFeed(retention=settings.changelog_retention),
        audit_sink=LoggingAuditSink(),
    )
    ctx = SyncContext(owner_id=args.owner, store=store, device_id="cli")

    if args.command == "show":
        state = await service.get_project(ctx)
        _dump({"projectData": state.document, "updatedAt": state.version}, output)
    elif args.command == "snapshots":
        summaries = await service.list_snapshots(ctx)
        _dump({"snapshots": [summary.to_payload() for summary in summaries]}, output)
    elif args.command == "restore":
        restored = await service.restore_snapshot(ctx, args.version)
        _dump(
            {
                "ok": True,
                "updatedAt": restored.version,
                "restoredFrom": restored.restored_from,
            },
            output,
        )
    elif args.command == "changes":
        page = await service.changes_since(ctx, args.since)
        _dump(page.to_payload(), output)
    elif args.command == "import":
        document = json.loads(args.file.read_text(encoding="utf-8"))
        base_version = args.base_version
        if base_version is None:
            try:
                base_version = (await service.get_project(ctx)).version
            except NotFoundError:
                base_version = None
        saved = await service.save_project(
            ctx, document=document, base_version=base_version
        )
        _dump({"ok": True, "updatedAt": saved.version}, output)


def main(argv: Sequence[str] | None = None, *, output: TextIO | None = None) -> None:
    """Run the ``storysync`` command line tool."""

    args = _parse_args(argv)
    stream = output or sys.stdout
    try:
        settings = SyncApiSettings.from_env()
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    database = args.database or settings.database_path
    if database is None:
        print(
            "No database configured. Pass --database or set STORYSYNC_DATABASE_PATH.",
            file=sys.stderr,
        )
        raise SystemExit(2)

    try:
        asyncio.run(_run_command(args, settings, database, stream))
    except SyncError as exc:
        print(json.dumps(exc.to_detail(), ensure_ascii=False), file=sys.stderr)
        raise SystemExit(1) from exc
    except (OSError, json.JSONDecodeError) as exc:
        print(f"Failed to read input: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc


if __name__ == "__main__":  # pragma: no cover
    main()
