"""
Pytest configuration and fixtures for replset_harness integration tests.

This module provides:
- In-memory replica set members implementing MemberHandle
- A small fake admin server speaking the TCP line protocol
- Test data generation
- Marker registration
"""

import asyncio
import copy
import hashlib
import json
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from replset_harness import (
    DatabaseDigest,
    Health,
    HarnessConfig,
    MemberHandle,
    MemberState,
    MemberStatusEntry,
    NamespaceDigest,
    NamespaceStats,
    OpTime,
    ReplicationStatus,
    RoleStatus,
    Timestamp,
    TransientObservationError,
)
from replset_harness.console import set_quiet

# Fast polling for tests
TEST_INTERVAL = 0.01
TEST_TIMEOUT = 1.0


class FakeCollection:
    """A namespace held by a FakeMember."""

    def __init__(self, capped: bool = False, index_count: int = 1,
                 options: Optional[Dict[str, Any]] = None):
        self.documents: Dict[Any, Dict[str, Any]] = {}
        self.capped = capped
        self.index_count = index_count
        self.options = options or {}

    def content_hash(self) -> str:
        digest = hashlib.md5()
        for key in sorted(self.documents):
            digest.update(json.dumps(self.documents[key], default=str).encode())
        return digest.hexdigest()


class FakeMember(MemberHandle):
    """In-memory replica set member whose reported state tests set directly."""

    def __init__(self, name: str, state: MemberState = MemberState.SECONDARY,
                 cluster: Optional[List["FakeMember"]] = None):
        self.name = name
        self.state = state
        self.cluster = cluster if cluster is not None else [self]
        self.config_version = 1
        self.applied: Optional[OpTime] = None
        self.durable: Optional[OpTime] = None
        self.majority_committed: Optional[OpTime] = None
        self.reachable = True
        # Overrides what this member reports about its peers' states
        self.seen_states: Optional[Dict[str, MemberState]] = None
        self.databases: Dict[str, Dict[str, FakeCollection]] = {}
        self.oplog: List[Dict[str, Any]] = []
        self.hold_events: List[str] = []
        self.fail_release = False
        self.hard_failure: Optional[Exception] = None

    @property
    def identity(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"FakeMember({self.name}, {self.state.name})"

    def _check(self) -> None:
        if self.hard_failure is not None:
            raise self.hard_failure
        if not self.reachable:
            raise TransientObservationError("connection refused", member=self.name)

    # -- test helpers -------------------------------------------------------

    def set_op_time(self, term: int, seconds: int, increment: int) -> OpTime:
        self.applied = OpTime(Timestamp(seconds, increment), term)
        self.durable = self.applied
        return self.applied

    def insert(self, database: str, collection: str, doc: Dict[str, Any],
               ts: Optional[Timestamp] = None) -> None:
        coll = self.databases.setdefault(database, {}).setdefault(collection, FakeCollection())
        coll.documents[doc["_id"]] = doc
        if ts is None:
            last = self.oplog[-1]["ts"] if self.oplog else Timestamp(100, 0)
            ts = Timestamp(last.seconds, last.increment + 1)
        self.oplog.append({"ts": ts, "op": "i", "ns": f"{database}.{collection}", "o": doc})

    def copy_data_from(self, other: "FakeMember") -> None:
        self.databases = copy.deepcopy(other.databases)
        self.oplog = copy.deepcopy(other.oplog)

    # -- MemberHandle -------------------------------------------------------

    async def role_status(self) -> RoleStatus:
        self._check()
        return RoleStatus(
            is_leader=self.state == MemberState.PRIMARY,
            is_secondary=self.state == MemberState.SECONDARY,
            is_arbiter=self.state == MemberState.ARBITER,
            config_version=self.config_version,
        )

    async def replication_status(self) -> ReplicationStatus:
        self._check()
        entries = []
        for peer in self.cluster:
            if self.seen_states is not None:
                state = self.seen_states.get(peer.name, MemberState.UNKNOWN)
            else:
                state = peer.state if peer.reachable else MemberState.DOWN
            entries.append(MemberStatusEntry(
                name=peer.name,
                state=state,
                health=Health.UP if peer.reachable else Health.DOWN,
                is_self=peer is self,
            ))
        arbiter = self.state == MemberState.ARBITER
        return ReplicationStatus(
            my_state=self.state,
            members=tuple(entries),
            applied=None if arbiter else self.applied,
            durable=None if arbiter else self.durable,
            majority_committed=None if arbiter else self.majority_committed,
        )

    async def list_databases(self):
        self._check()
        return set(self.databases)

    async def database_digest(self, database: str) -> DatabaseDigest:
        self._check()
        collections = self.databases.get(database, {})
        namespaces = {
            name: NamespaceDigest(name, coll.content_hash(), coll.capped)
            for name, coll in collections.items()
        }
        aggregate = hashlib.md5(
            "".join(namespaces[name].content_hash for name in sorted(namespaces)).encode()
        ).hexdigest()
        return DatabaseDigest(database, namespaces, aggregate)

    async def namespace_metadata(self, database: str) -> Dict[str, Any]:
        self._check()
        return {
            name: {"name": name, "options": coll.options}
            for name, coll in self.databases.get(database, {}).items()
        }

    async def namespace_stats(self, database: str, namespace: str) -> NamespaceStats:
        self._check()
        coll = self.databases[database][namespace]
        return NamespaceStats(coll.capped, coll.index_count, f"{database}.{namespace}")

    async def read_documents(self, database: str, namespace: str, descending: bool = False):
        self._check()
        coll = self.databases.get(database, {}).get(namespace)
        if coll is None:
            return
        for key in sorted(coll.documents, reverse=descending):
            yield coll.documents[key]

    async def read_oplog(self, start: Optional[Timestamp] = None):
        self._check()
        for entry in list(self.oplog):
            if start is None or entry["ts"] >= start:
                yield entry

    async def acquire_exclusive_hold(self) -> None:
        self._check()
        self.hold_events.append("acquire")

    async def release_exclusive_hold(self) -> None:
        self.hold_events.append("release")
        if self.fail_release:
            raise RuntimeError("fsyncUnlock failed")


def make_replica_set(size: int = 3, arbiters: int = 0) -> List[FakeMember]:
    """Build a set whose first member is primary, all at the same optime."""
    cluster: List[FakeMember] = []
    for i in range(size):
        if i == 0:
            state = MemberState.PRIMARY
        elif i >= size - arbiters:
            state = MemberState.ARBITER
        else:
            state = MemberState.SECONDARY
        member = FakeMember(f"node{i}:270{i:02d}", state, cluster)
        if state != MemberState.ARBITER:
            member.set_op_time(1, 100, 1)
            member.majority_committed = member.applied
        cluster.append(member)
    return cluster


def later(delay: float, callback, *args) -> asyncio.TimerHandle:
    """Run callback after delay seconds on the running loop."""
    return asyncio.get_running_loop().call_later(delay, callback, *args)


def generate_test_documents(size: int = 10, prefix: str = "doc") -> List[Dict[str, Any]]:
    """Generate deterministic documents keyed by an integer _id."""
    return [{"_id": i, "name": f"{prefix}_{i:04d}", "value": i * 7} for i in range(size)]


def populate(members: List[FakeMember], database: str = "test", collection: str = "ns1",
             size: int = 10) -> None:
    """Write the same documents (and oplog entries) to every data-bearing member."""
    data_members = [m for m in members if m.state != MemberState.ARBITER]
    source = data_members[0]
    for doc in generate_test_documents(size):
        source.insert(database, collection, doc)
    for member in data_members[1:]:
        member.copy_data_from(source)


@pytest.fixture
def replica_set() -> List[FakeMember]:
    return make_replica_set(3)


@pytest.fixture
def harness_config() -> HarnessConfig:
    return HarnessConfig(name="rs_test", default_timeout=TEST_TIMEOUT, poll_interval=TEST_INTERVAL)


# -- TCP admin protocol fake ----------------------------------------------------

class FakeAdminServer:
    """Serves the line protocol from a table of canned replies."""

    def __init__(self, replies: Dict[str, Any]):
        self.replies = replies
        self.received: List[str] = []
        self.server: Optional[asyncio.AbstractServer] = None
        self.port: Optional[int] = None

    async def start(self) -> "FakeAdminServer":
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def stop(self) -> None:
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            line = (await reader.readline()).decode().strip()
            self.received.append(line)
            reply = self.replies.get(line, self.replies.get(line.split(" ")[0]))
            if reply is None:
                reply = {"ok": 0, "errmsg": f"no such command: {line}"}
            payload = reply if isinstance(reply, str) else json.dumps(reply)
            writer.write((payload + "\n").encode())
            await writer.drain()
        finally:
            writer.close()


@pytest_asyncio.fixture
async def admin_server_factory():
    """Start fake admin servers on demand; all are stopped after the test."""
    servers: List[FakeAdminServer] = []

    async def factory(replies: Dict[str, Any]) -> FakeAdminServer:
        server = await FakeAdminServer(replies).start()
        servers.append(server)
        return server

    try:
        yield factory
    finally:
        for server in servers:
            await server.stop()


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "transport: marks tests that open real TCP connections"
    )


@pytest.fixture(autouse=True)
def quiet_console():
    """Keep harness console output out of test logs."""
    set_quiet(True)
    yield
    set_quiet(False)
