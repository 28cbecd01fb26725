"""
Oplog alignment: every member must hold the same sequence of oplog entries
from the newest point all of them still retain.
"""

import collections
import json
from typing import Any, Dict, List, Optional, Sequence

from .console import console
from .errors import OplogDivergence
from .member import MemberHandle
from .optime import Timestamp


def render_entry(entry: Dict[str, Any]) -> str:
    return json.dumps(entry, default=str)


async def first_oplog_timestamp(member: MemberHandle) -> Optional[Timestamp]:
    """Timestamp of the oldest entry the member still has, or None if its oplog is empty."""
    async for entry in member.read_oplog():
        return Timestamp.from_document(entry["ts"])
    return None


async def dump_oplog(member: MemberHandle, limit: int = 100) -> List[str]:
    """Print and return the latest `limit` oplog entries of a member."""
    console.print(f"[yellow]Dumping the latest {limit} documents from the oplog of "
                  f"{member}[/yellow]")
    latest = collections.deque(maxlen=limit)
    async for entry in member.read_oplog():
        latest.append(render_entry(entry))
    # Newest first
    lines = list(reversed(latest))
    for line in lines:
        console.print(line, markup=False)
    return lines


def _minority(groups: Dict[Any, List[str]], fallback: Any) -> List[str]:
    """Members outside the largest group; on a tie, everyone outside the fallback group."""
    sizes = sorted((len(names) for names in groups.values()), reverse=True)
    if len(sizes) > 1 and sizes[0] == sizes[1]:
        majority_key = fallback
    else:
        majority_key = max(groups, key=lambda key: len(groups[key]))
    return [name for key, names in groups.items() if key != majority_key for name in names]


class OplogAlignmentChecker:
    """Walks all oplogs in lockstep and ensures matching entries."""

    async def ensure_oplogs_match(self, members: Sequence[MemberHandle]) -> int:
        """
        Compare the oplogs of all members entry by entry.

        Returns the number of entries compared. Raises OplogDivergence naming
        the member(s) whose oplog differs.
        """
        if len(members) < 2:
            return 0

        first_timestamps = [await first_oplog_timestamp(member) for member in members]
        empty = [m.identity for m, ts in zip(members, first_timestamps) if ts is None]
        if empty:
            if len(empty) == len(members):
                return 0
            raise OplogDivergence(empty, "oplog is empty while other members have entries")

        # Start all readers at the same place.
        start = max(first_timestamps)
        console.print(f"[blue]Comparing oplogs of {len(members)} members from {start}[/blue]")
        readers = [member.read_oplog(start) for member in members]

        compared = 0
        while True:
            entries = [await anext(reader, None) for reader in readers]
            exhausted = [m.identity for m, e in zip(members, entries) if e is None]

            if len(exhausted) == len(members):
                break

            if exhausted:
                remaining = [m.identity for m, e in zip(members, entries) if e is not None]
                divergent = exhausted if len(exhausted) <= len(remaining) else remaining
                raise OplogDivergence(
                    divergent,
                    f"oplog length differs after {compared} matching entries: "
                    f"{', '.join(remaining)} have more oplog",
                )

            timestamps = [Timestamp.from_document(entry["ts"]) for entry in entries]
            if len(set(timestamps)) > 1:
                groups: Dict[Timestamp, List[str]] = {}
                for member, ts in zip(members, timestamps):
                    groups.setdefault(ts, []).append(member.identity)
                raise OplogDivergence(
                    _minority(groups, timestamps[0]),
                    f"non-matching ts at entry {compared}: "
                    + ", ".join(f"{m.identity}={ts}" for m, ts in zip(members, timestamps)),
                )
            compared += 1

        console.print(f"[green]Oplogs match ({compared} entries)[/green]")
        return compared
