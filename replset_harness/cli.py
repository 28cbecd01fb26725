"""
Command line runner for the replica set checks.

Usage Examples:
    python -m replset_harness rs.toml status              # Leader and roles
    python -m replset_harness rs.toml await-replication   # Wait for secondaries
    python -m replset_harness rs.toml check-hashes        # Compare data hashes
    python -m replset_harness rs.toml check-oplogs        # Compare oplogs
    python -m replset_harness rs.toml check-all           # All of the above
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from rich.table import Table

from .config import load_config
from .console import console, set_quiet
from .errors import HarnessError
from .member import OpTimeKind
from .replset import ReplicaSetTest

COMMANDS = ("status", "await-replication", "check-hashes", "check-oplogs", "check-all")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replset_harness",
        description="Replica set convergence and consistency checks",
    )
    parser.add_argument("config", help="Path to the harness TOML configuration")
    parser.add_argument("command", choices=COMMANDS, help="Check to run")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Override the configured default timeout (seconds)")
    parser.add_argument("--durable", action="store_true",
                        help="Wait for the last durable optime instead of last applied")
    parser.add_argument("--exclude", action="append", default=[], metavar="DB",
                        help="Database to leave out of the hash check (repeatable)")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print the result")
    return parser


async def print_status(rst: ReplicaSetTest) -> None:
    view = await rst.view()
    table = Table(title=f"Replica set {rst.name}")
    table.add_column("Member")
    table.add_column("Role")
    table.add_column("Config version")
    for member, role, version in zip(view.members, view.roles, view.config_versions):
        table.add_row(member.identity, role.value, "-" if version is None else str(version))
    console.print(table, soft_wrap=True)
    if view.ambiguous:
        console.print("[red]More than one member claims to be primary[/red]")


async def run(args: argparse.Namespace) -> None:
    rst = ReplicaSetTest.from_config(load_config(args.config))
    kind = OpTimeKind.LAST_DURABLE if args.durable else OpTimeKind.LAST_APPLIED

    if args.command == "status":
        await print_status(rst)
    if args.command in ("await-replication", "check-all"):
        await rst.await_replication(args.timeout, kind)
    if args.command in ("check-hashes", "check-all"):
        await rst.check_replicated_data_hashes(args.exclude, timeout=args.timeout)
    if args.command in ("check-oplogs", "check-all"):
        await rst.ensure_oplogs_match()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    set_quiet(args.quiet)
    try:
        asyncio.run(run(args))
    except HarnessError as e:
        set_quiet(False)
        console.print(f"[red]❌ {args.command} failed: {e}[/red]")
        return 1
    console.print(f"[green]✅ {args.command} passed[/green]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
