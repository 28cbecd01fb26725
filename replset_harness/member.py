"""
The capability a replica set member offers to the harness.

MemberHandle is implemented by whoever owns the member process (a TCP adapter,
a driver wrapper, an in-memory fake). The harness only ever talks to members
through these queries, and expects reachability failures to surface as
TransientObservationError.
"""

import abc
import enum
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Set, Tuple

from .optime import OpTime, Timestamp


class MemberState(enum.IntEnum):
    """States as reported by a member in its replication status."""

    PRIMARY = 1
    SECONDARY = 2
    RECOVERING = 3
    # There is no state 4
    STARTUP_2 = 5
    UNKNOWN = 6
    ARBITER = 7
    DOWN = 8
    ROLLBACK = 9
    REMOVED = 10


class Health(enum.IntEnum):
    DOWN = 0
    UP = 1


class MemberRole(enum.Enum):
    """How the harness classifies a member in a ReplicaSetView."""

    LEADER = "leader"
    SECONDARY = "secondary"
    ARBITER = "arbiter"
    UNKNOWN = "unknown"
    DOWN = "down"


class OpTimeKind(enum.Enum):
    LAST_APPLIED = "lastApplied"
    LAST_DURABLE = "lastDurable"


@dataclass(frozen=True)
class RoleStatus:
    is_leader: bool
    is_secondary: bool = False
    is_arbiter: bool = False
    config_version: int = 0

    @property
    def role(self) -> MemberRole:
        if self.is_leader:
            return MemberRole.LEADER
        if self.is_arbiter:
            return MemberRole.ARBITER
        if self.is_secondary:
            return MemberRole.SECONDARY
        return MemberRole.UNKNOWN


@dataclass(frozen=True)
class MemberStatusEntry:
    name: str
    state: MemberState
    health: Health = Health.UP
    is_self: bool = False


@dataclass(frozen=True)
class ReplicationStatus:
    my_state: MemberState
    members: Tuple[MemberStatusEntry, ...] = ()
    applied: Optional[OpTime] = None
    durable: Optional[OpTime] = None
    majority_committed: Optional[OpTime] = None

    def entry_for(self, name: str) -> Optional[MemberStatusEntry]:
        for entry in self.members:
            if entry.name == name:
                return entry
        return None


@dataclass(frozen=True)
class NamespaceDigest:
    namespace: str
    content_hash: str
    is_capped: bool = False


@dataclass(frozen=True)
class DatabaseDigest:
    database: str
    namespaces: Dict[str, NamespaceDigest] = field(default_factory=dict)
    aggregate_hash: Optional[str] = None


@dataclass(frozen=True)
class NamespaceStats:
    capped: bool
    index_count: int
    canonical_name: str


class MemberHandle(abc.ABC):
    """Administrative query surface of one replica set member."""

    # Configured as an arbiter: holds no data and is never waited on, even
    # while it cannot be reached.
    arbiter = False

    @property
    @abc.abstractmethod
    def identity(self) -> str:
        """Host name the member is known by in replication status replies."""

    @abc.abstractmethod
    async def role_status(self) -> RoleStatus:
        ...

    @abc.abstractmethod
    async def replication_status(self) -> ReplicationStatus:
        ...

    @abc.abstractmethod
    async def list_databases(self) -> Set[str]:
        ...

    @abc.abstractmethod
    async def database_digest(self, database: str) -> DatabaseDigest:
        ...

    @abc.abstractmethod
    async def namespace_metadata(self, database: str) -> Dict[str, Any]:
        """Namespace options and attributes keyed by namespace name."""

    @abc.abstractmethod
    async def namespace_stats(self, database: str, namespace: str) -> NamespaceStats:
        ...

    @abc.abstractmethod
    def read_documents(self, database: str, namespace: str,
                       descending: bool = False) -> AsyncIterator[Dict[str, Any]]:
        """Documents of a namespace ordered by _id."""

    @abc.abstractmethod
    def read_oplog(self, start: Optional[Timestamp] = None) -> AsyncIterator[Dict[str, Any]]:
        """Oplog entries in logged order, from start (inclusive) when given."""

    @abc.abstractmethod
    async def acquire_exclusive_hold(self) -> None:
        ...

    @abc.abstractmethod
    async def release_exclusive_hold(self) -> None:
        ...

    def __str__(self) -> str:
        return self.identity
