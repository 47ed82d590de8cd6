"""Convoy CLI: stage, launch and manage convoys, and run the feeder daemon."""

import argparse
import json
import signal
import sys
from typing import Any

from . import __version__
from .config import HQ_STORE, load_config
from .convoys import (
    add_to_convoy,
    check_convoy,
    close_convoy,
    convoy_status,
    create_convoy,
    find_stranded,
    list_convoys,
    reopen_convoy,
)
from .dispatch import CommandDispatcher
from .exceptions import ConvoyError, StagingError
from .launch import launch, launch_convoy, render_launch, render_launch_json, render_staging_failure
from .lock_utils import daemon_lock_or_skip
from .logging_utils import setup_logging
from .manager import ConvoyManager
from .staging import render_findings, render_json, render_result, stage
from .store import open_stores


def _fmt_table(rows: list[list[str]], headers: list[str]) -> str:
    """Format rows as a simple aligned table."""
    all_rows = [headers] + rows
    widths = [max(len(r[i]) for r in all_rows) for i in range(len(headers))]
    lines = []
    lines.append("  ".join(h.ljust(w) for h, w in zip(headers, widths)))
    lines.append("  ".join("-" * w for w in widths))
    for row in rows:
        lines.append("  ".join(c.ljust(w) for c, w in zip(row, widths)))
    return "\n".join(lines)


def _stores(config: dict[str, Any]) -> dict[str, Any]:
    stores = open_stores(config)
    if HQ_STORE not in stores:
        print("Error: hq store is not available (check stores: in .convoy/config.yaml)", file=sys.stderr)
        sys.exit(1)
    return stores


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def cmd_stage(args: argparse.Namespace) -> None:
    """Analyze dependencies, compute waves, create or update a staged convoy."""
    config = load_config()
    stores = _stores(config)

    result = stage(stores, args.ids, config, title=args.title)
    if result.errors:
        if args.json:
            print(render_json(result), end="")
        else:
            print(render_findings(result.errors, "Errors"), end="", file=sys.stderr)
        print(f"convoy staging failed: {len(result.errors)} error(s) found", file=sys.stderr)
        sys.exit(1)

    if not args.launch:
        if args.json:
            print(render_json(result), end="")
        else:
            print(render_result(result), end="")
        return

    if not args.json:
        print(render_result(result), end="")
        print()
    launched = launch_convoy(stores, result.convoy_id, CommandDispatcher(config), config, force=args.force)
    launched.stage_result = result
    if args.json:
        print(render_launch_json(launched), end="")
    else:
        print(render_launch(launched), end="")


def cmd_launch(args: argparse.Namespace) -> None:
    """Launch a staged convoy, or stage and launch in one step."""
    config = load_config()
    stores = _stores(config)

    try:
        result = launch(stores, args.ids, CommandDispatcher(config), config, force=args.force, title=args.title)
    except StagingError as e:
        print(render_staging_failure(e), end="", file=sys.stderr)
        print(str(e), file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(render_launch_json(result), end="")
    else:
        print(render_launch(result), end="")


def cmd_create(args: argparse.Namespace) -> None:
    """Create an open convoy tracking the given items."""
    config = load_config()
    convoy = create_convoy(_stores(config), args.title, args.items, config)
    print(f"Created convoy {convoy.id} tracking {len(args.items)} item(s)")


def cmd_add(args: argparse.Namespace) -> None:
    config = load_config()
    added = add_to_convoy(_stores(config), args.convoy, args.items, config)
    print(f"Added {added} item(s) to {args.convoy}")


def cmd_check(args: argparse.Namespace) -> None:
    """Close the convoy if all its tracked items are done."""
    config = load_config()
    if check_convoy(_stores(config), args.convoy, config):
        print(f"Convoy {args.convoy} complete, closed")
    else:
        print(f"Convoy {args.convoy} still has work")


def cmd_close(args: argparse.Namespace) -> None:
    config = load_config()
    close_convoy(_stores(config), args.convoy, reason=args.reason or "")
    print(f"Closed {args.convoy}")


def cmd_reopen(args: argparse.Namespace) -> None:
    config = load_config()
    reopen_convoy(_stores(config), args.convoy)
    print(f"Reopened {args.convoy}")


def cmd_list(args: argparse.Namespace) -> None:
    """List convoys in a table."""
    config = load_config()
    statuses = args.status.split(",") if args.status else None
    convoys = list_convoys(_stores(config)[HQ_STORE], statuses=statuses)

    if args.json:
        print(json.dumps([c.to_dict() for c in convoys], indent=2))
        return

    if not convoys:
        print("No convoys found.")
        return

    rows = [[c.id, c.status, (c.title or "")[:50]] for c in convoys]
    print(_fmt_table(rows, ["ID", "STATUS", "TITLE"]))
    print(f"\n{len(convoys)} convoy(s)")


def cmd_status(args: argparse.Namespace) -> None:
    """Show a convoy and the state of its tracked items."""
    config = load_config()
    summary = convoy_status(_stores(config), args.convoy, config)

    if args.json:
        print(json.dumps(summary, indent=2))
        return

    print(f"{summary['id']}  {summary['title']}")
    print(f"  status:    {summary['status']}")
    print(f"  progress:  {summary['completed']}/{summary['total']} closed")
    if summary["items"]:
        print()
        rows = [
            [i["id"], i["status"], i["type"] or "task", i["assignee"], (i["title"] or "")[:40]]
            for i in summary["items"]
        ]
        print(_fmt_table(rows, ["ID", "STATUS", "TYPE", "ASSIGNEE", "TITLE"]))


def cmd_stranded(args: argparse.Namespace) -> None:
    """List open convoys with ready work and nothing in flight."""
    config = load_config()
    stranded = find_stranded(_stores(config), config)

    if args.json:
        print(json.dumps([s.to_dict() for s in stranded], indent=2))
        return

    if not stranded:
        print("No stranded convoys.")
        return

    rows = [[s.id, str(s.ready_count), ", ".join(s.ready_items)[:60]] for s in stranded]
    print(_fmt_table(rows, ["ID", "READY", "ITEMS"]))


def cmd_daemon(args: argparse.Namespace) -> None:
    """Run the event feeder and stranded scanner until stopped."""
    config = load_config()
    log_path = setup_logging(debug=args.debug)
    if log_path:
        print(f"Logging to {log_path}", file=sys.stderr)

    with daemon_lock_or_skip() as acquired:
        if not acquired:
            print("Another convoy daemon is running, exiting")
            sys.exit(0)

        manager = ConvoyManager(config)
        if args.once:
            result = manager.scan_once()
            manager.stop()
            if not result.ok:
                print(f"Scan failed: {result.error}", file=sys.stderr)
                sys.exit(1)
            print(f"Scanned {result.stranded} stranded convoy(s), fed {len(result.fed)}")
            return

        def _shutdown(signum, frame):
            manager.stop_event.set()

        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGINT, _shutdown)

        manager.start()
        manager.wait()
        manager.stop(timeout=30)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="convoy",
        description="Stage, launch and feed dependency-ordered convoys",
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    sub = parser.add_subparsers(dest="command")

    # stage <ids...>
    p_stage = sub.add_parser("stage", help="Stage a convoy from a container, items, or a staged convoy")
    p_stage.add_argument("ids", nargs="+", help="Container id, item ids, or convoy id")
    p_stage.add_argument("--json", action="store_true", help="Machine-readable output")
    p_stage.add_argument("--launch", action="store_true", help="Launch immediately after staging")
    p_stage.add_argument("--force", "-f", action="store_true", help="Launch even with warnings")
    p_stage.add_argument("--title", "-t", help="Convoy title")
    p_stage.set_defaults(func=cmd_stage)

    # launch <ids...>
    p_launch = sub.add_parser("launch", help="Open a staged convoy and dispatch wave 1")
    p_launch.add_argument("ids", nargs="+", help="Staged convoy id, or input to stage first")
    p_launch.add_argument("--force", "-f", action="store_true", help="Launch even with warnings or paused targets")
    p_launch.add_argument("--json", action="store_true", help="Machine-readable output")
    p_launch.add_argument("--title", "-t", help="Convoy title when staging first")
    p_launch.set_defaults(func=cmd_launch)

    # create <title> <items...>
    p_create = sub.add_parser("create", help="Create an open convoy tracking items")
    p_create.add_argument("title", help="Convoy title")
    p_create.add_argument("items", nargs="+", help="Item ids")
    p_create.set_defaults(func=cmd_create)

    # add <convoy> <items...>
    p_add = sub.add_parser("add", help="Add items to a convoy")
    p_add.add_argument("convoy", help="Convoy id")
    p_add.add_argument("items", nargs="+", help="Item ids")
    p_add.set_defaults(func=cmd_add)

    # check <convoy>
    p_check = sub.add_parser("check", help="Close a convoy whose items are all done")
    p_check.add_argument("convoy", help="Convoy id")
    p_check.set_defaults(func=cmd_check)

    # close <convoy>
    p_close = sub.add_parser("close", help="Close a convoy")
    p_close.add_argument("convoy", help="Convoy id")
    p_close.add_argument("--reason", "-r", help="Reason for closing")
    p_close.set_defaults(func=cmd_close)

    # reopen <convoy>
    p_reopen = sub.add_parser("reopen", help="Reopen a closed convoy")
    p_reopen.add_argument("convoy", help="Convoy id")
    p_reopen.set_defaults(func=cmd_reopen)

    # list
    p_list = sub.add_parser("list", help="List convoys")
    p_list.add_argument("--status", "-s", help="Filter by status (e.g. open,staged:ready)")
    p_list.add_argument("--json", action="store_true", help="Machine-readable output")
    p_list.set_defaults(func=cmd_list)

    # status <convoy>
    p_status = sub.add_parser("status", help="Show convoy progress")
    p_status.add_argument("convoy", help="Convoy id")
    p_status.add_argument("--json", action="store_true", help="Machine-readable output")
    p_status.set_defaults(func=cmd_status)

    # stranded
    p_stranded = sub.add_parser("stranded", help="List convoys with ready work and nothing in flight")
    p_stranded.add_argument("--json", action="store_true", help="Machine-readable output")
    p_stranded.set_defaults(func=cmd_stranded)

    # daemon
    p_daemon = sub.add_parser("daemon", help="Run the event feeder and stranded scanner")
    p_daemon.add_argument("--debug", action="store_true", help="Debug logging to .convoy/logs/")
    p_daemon.add_argument("--once", action="store_true", help="Run one stranded scan and exit")
    p_daemon.set_defaults(func=cmd_daemon)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(0)

    if args.command != "daemon":
        setup_logging(log_file=False, quiet=True)

    try:
        args.func(args)
    except ConvoyError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
