"""
Cross-member data consistency verification.

Compares per-namespace content hashes between the leader and every
data-bearing secondary. When a hash differs, both members' documents are
walked in _id order to pin down which documents are missing or different.
The comparison runs while the leader holds an exclusive hold, so background
expiry cannot change the data between hashing the leader and the secondaries.
"""

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

from .console import console
from .errors import ConsistencyMismatch, TransientObservationError
from .leadership import LeadershipTracker, ReplicaSetView
from .member import DatabaseDigest, MemberHandle, MemberRole
from .oplog import dump_oplog
from .replication import ReplicationConvergenceChecker

# Not every namespace in this database is replicated.
INTERNAL_DATABASE = "local"


@dataclass
class DivergenceReport:
    database: str
    collection: str
    missing_on_a: List[str] = field(default_factory=list)
    missing_on_b: List[str] = field(default_factory=list)
    mismatched_pairs: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def namespace(self) -> str:
        return f"{self.database}.{self.collection}"

    @property
    def is_empty(self) -> bool:
        return not (self.missing_on_a or self.missing_on_b or self.mismatched_pairs)


def render_document(doc: Dict[str, Any]) -> str:
    """One-line rendering; field order is significant."""
    return json.dumps(doc, default=str)


def _key_is_less(a: Any, b: Any) -> bool:
    try:
        return a < b
    except TypeError:
        # Mixed _id types order by type name first.
        return (type(a).__name__, repr(a)) < (type(b).__name__, repr(b))


async def diff_documents(a_docs: AsyncIterator[Dict[str, Any]],
                         b_docs: AsyncIterator[Dict[str, Any]],
                         database: str, collection: str) -> DivergenceReport:
    """
    Merge two document streams ordered by _id descending.

    Equal documents advance both sides. Documents with the same _id but
    different content are recorded as a mismatched pair. Otherwise the
    document with the larger _id has no counterpart on the other side and
    only that side advances.
    """
    report = DivergenceReport(database, collection)
    a = await anext(a_docs, None)
    b = await anext(b_docs, None)

    while a is not None or b is not None:
        if a is None:
            report.missing_on_a.append(render_document(b))
            b = await anext(b_docs, None)
        elif b is None:
            report.missing_on_b.append(render_document(a))
            a = await anext(a_docs, None)
        elif render_document(a) == render_document(b):
            # Latest document matched.
            a = await anext(a_docs, None)
            b = await anext(b_docs, None)
        else:
            a_key, b_key = a.get("_id"), b.get("_id")
            if a_key == b_key:
                report.mismatched_pairs.append((render_document(a), render_document(b)))
                a = await anext(a_docs, None)
                b = await anext(b_docs, None)
            elif _key_is_less(a_key, b_key):
                report.missing_on_a.append(render_document(b))
                b = await anext(b_docs, None)
            else:
                report.missing_on_b.append(render_document(a))
                a = await anext(a_docs, None)

    return report


class ExclusiveHold:
    """
    Scoped exclusive hold on a member (e.g. an fsync lock).

    The release always runs. A failed release is raised when nothing else
    went wrong inside the block, and only logged otherwise so it does not
    replace the original error.
    """

    def __init__(self, member: MemberHandle):
        self.member = member

    async def __aenter__(self) -> MemberHandle:
        await self.member.acquire_exclusive_hold()
        return self.member

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            await self.member.release_exclusive_hold()
        except Exception as e:
            message = (f"failed to release the exclusive hold on {self.member}, which may "
                       f"cause this test to hang: {e}")
            if exc_type is None:
                raise RuntimeError(message) from e
            console.print(f"[red]{message}[/red]")
        return False


class ConsistencyVerifier:
    """Checks that the leader and its secondaries hold identical data."""

    def __init__(self, tracker: LeadershipTracker,
                 replication: Optional[ReplicationConvergenceChecker] = None,
                 oplog_dump_limit: int = 100):
        self.tracker = tracker
        self.replication = replication
        self.oplog_dump_limit = oplog_dump_limit

    async def check_replicated_data_hashes(self, members: Sequence[MemberHandle],
                                           excluded: Iterable[str] = (),
                                           msg_prefix: str = "checkReplicatedDataHashes",
                                           report_capped: bool = False,
                                           timeout: Optional[float] = None) -> List[DivergenceReport]:
        """
        Compare data hashes across the set.

        Returns diagnostic reports for capped namespaces whose hashes differ
        when report_capped is set (these never fail the check). Raises
        ConsistencyMismatch carrying every DivergenceReport otherwise.
        """
        view = await self.tracker.await_leader_view(members, timeout)
        leader = view.current_leader

        # Lock the primary to prevent background expiry from deleting
        # documents while the hashes are collected.
        async with ExclusiveHold(leader):
            if self.replication is not None:
                await self.replication.await_replication(members, timeout=timeout)
            return await self._check_hashes(view, set(excluded), msg_prefix, report_capped)

    async def dump_divergence(self, a: MemberHandle, b: MemberHandle,
                              database: str, collection: str) -> DivergenceReport:
        console.print(f"[yellow]Dumping collection: {database}.{collection}[/yellow]")
        report = await diff_documents(
            a.read_documents(database, collection, descending=True),
            b.read_documents(database, collection, descending=True),
            database,
            collection,
        )
        for a_doc, b_doc in report.mismatched_pairs:
            console.print("Mismatching documents:")
            console.print(f"    {a}: {a_doc}", markup=False)
            console.print(f"    {b}: {b_doc}", markup=False)
        if report.missing_on_a:
            console.print(f"The following documents are missing on {a}:")
            console.print("\n".join(report.missing_on_a), markup=False)
        if report.missing_on_b:
            console.print(f"The following documents are missing on {b}:")
            console.print("\n".join(report.missing_on_b), markup=False)
        return report

    async def _check_hashes(self, view: ReplicaSetView, excluded: set, msg_prefix: str,
                            report_capped: bool) -> List[DivergenceReport]:
        leader = view.current_leader
        data_bearing = [
            m for m in view.members
            if m is not leader and not m.arbiter and view.role_of(m) != MemberRole.ARBITER
        ]
        secondaries = [m for m in data_bearing if view.role_of(m) != MemberRole.DOWN]
        excluded = excluded | {INTERNAL_DATABASE}

        problems: List[str] = []
        for member in data_bearing:
            if view.role_of(member) == MemberRole.DOWN:
                problems.append(f"{msg_prefix}, could not reach secondary {member}; its data "
                                f"was not compared")

        databases = set(await leader.list_databases())
        for secondary in secondaries:
            databases |= set(await secondary.list_databases())

        reports: List[DivergenceReport] = []
        capped_reports: List[DivergenceReport] = []
        has_dumped_oplog = False

        for database in sorted(databases - excluded):
            leader_digest = await leader.database_digest(database)
            for secondary in secondaries:
                before = len(problems)
                secondary_digest = await secondary.database_digest(database)
                await self._compare_database(
                    leader, secondary, leader_digest, secondary_digest,
                    msg_prefix, problems, reports, capped_reports if report_capped else None,
                )
                if len(problems) > before and not has_dumped_oplog:
                    await self._dump_oplogs([leader] + secondaries)
                    has_dumped_oplog = True

        if problems:
            for problem in problems:
                console.print(f"[red]{problem}[/red]")
            raise ConsistencyMismatch(problems, reports)

        console.print(f"[green]{msg_prefix}: data hashes match on {len(secondaries) + 1} "
                      f"members[/green]")
        return capped_reports

    async def _compare_database(self, leader: MemberHandle, secondary: MemberHandle,
                                leader_digest: DatabaseDigest, secondary_digest: DatabaseDigest,
                                msg_prefix: str, problems: List[str],
                                reports: List[DivergenceReport],
                                capped_reports: Optional[List[DivergenceReport]]) -> None:
        database = leader_digest.database
        leader_names = set(leader_digest.namespaces)
        secondary_names = set(secondary_digest.namespaces)

        if leader_names != secondary_names:
            problems.append(
                f"{msg_prefix}, the primary and secondary {secondary} have a different number "
                f"of collections in {database}: {len(leader_names)} vs {len(secondary_names)} "
                f"(only on primary: {sorted(leader_names - secondary_names)}, only on "
                f"secondary: {sorted(secondary_names - leader_names)})"
            )
            for name in sorted(leader_names ^ secondary_names):
                reports.append(await self.dump_divergence(leader, secondary, database, name))

        shared = sorted(leader_names & secondary_names)
        capped = {name for name, digest in leader_digest.namespaces.items() if digest.is_capped}

        # Capped namespaces are not necessarily truncated at the same points
        # across members, so their hashes may legitimately differ.
        for name in shared:
            leader_hash = leader_digest.namespaces[name].content_hash
            secondary_hash = secondary_digest.namespaces[name].content_hash
            if leader_hash == secondary_hash:
                continue
            if name in capped:
                console.print(f"[dim]{msg_prefix}, capped collection {database}.{name} hash "
                              f"differs on {secondary} (ignored)[/dim]")
                if capped_reports is not None:
                    capped_reports.append(
                        await self.dump_divergence(leader, secondary, database, name))
                continue
            problems.append(
                f"{msg_prefix}, the primary and secondary {secondary} have a different hash for "
                f"the collection {database}.{name}: {leader_hash} vs {secondary_hash}"
            )
            reports.append(await self.dump_divergence(leader, secondary, database, name))

        leader_metadata = await leader.namespace_metadata(database)
        secondary_metadata = await secondary.namespace_metadata(database)
        for name in sorted(set(leader_metadata) & set(secondary_metadata)):
            if leader_metadata[name] != secondary_metadata[name]:
                problems.append(
                    f"{msg_prefix}, the primary and secondary {secondary} have different "
                    f"attributes for the collection {database}.{name}: "
                    f"{leader_metadata[name]} vs {secondary_metadata[name]}"
                )

        for name in shared:
            leader_stats = await leader.namespace_stats(database, name)
            secondary_stats = await secondary.namespace_stats(database, name)
            if leader_stats != secondary_stats:
                problems.append(
                    f"{msg_prefix}, the primary and secondary {secondary} have different stats "
                    f"for the collection {database}.{name}: {leader_stats} vs {secondary_stats}"
                )

        # Without capped collections, matching collection hashes imply a
        # matching database hash.
        if (not capped
                and leader_digest.aggregate_hash is not None
                and secondary_digest.aggregate_hash is not None
                and leader_digest.aggregate_hash != secondary_digest.aggregate_hash):
            problems.append(
                f"{msg_prefix}, the primary and secondary {secondary} have a different hash for "
                f"the {database} database: {leader_digest.aggregate_hash} vs "
                f"{secondary_digest.aggregate_hash}"
            )

    async def _dump_oplogs(self, members: Sequence[MemberHandle]) -> None:
        for member in members:
            try:
                await dump_oplog(member, self.oplog_dump_limit)
            except TransientObservationError as e:
                console.print(f"[red]Could not dump the oplog of {member}: {e}[/red]")
