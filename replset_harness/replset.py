"""
ReplicaSetTest: one object bundling the harness checks for a set of members.

Holds only the member list and the configuration. Leadership is looked up on
every call and handed back as fresh values, never cached on the instance.
"""

from typing import Iterable, List, Optional, Sequence

from .config import HarnessConfig
from .consistency import ConsistencyVerifier, DivergenceReport
from .leadership import LeadershipTracker, ReplicaSetView
from .member import Health, MemberHandle, MemberState, OpTimeKind, ReplicationStatus
from .oplog import OplogAlignmentChecker
from .optime import OpTime
from .replication import ReplicationConvergenceChecker
from .transport import TcpMember


class ReplicaSetTest:

    def __init__(self, members: Sequence[MemberHandle], config: Optional[HarnessConfig] = None):
        self.config = config or HarnessConfig()
        self.members = tuple(members)
        self.tracker = LeadershipTracker(self.config.default_timeout, self.config.poll_interval)
        self.replication = ReplicationConvergenceChecker(self.tracker)
        self.verifier = ConsistencyVerifier(
            self.tracker, self.replication, oplog_dump_limit=self.config.oplog_dump_limit
        )
        self.oplogs = OplogAlignmentChecker()

    @classmethod
    def from_config(cls, config: HarnessConfig) -> "ReplicaSetTest":
        """Build a ReplicaSetTest talking to the configured members over TCP."""
        members = [
            TcpMember(m.host, m.port, command_timeout=config.command_timeout,
                      arbiter=m.arbiter)
            for m in config.members
        ]
        return cls(members, config)

    @property
    def name(self) -> str:
        return self.config.name

    def node_list(self) -> List[str]:
        return [member.identity for member in self.members]

    async def view(self) -> ReplicaSetView:
        return await self.tracker.refresh_view(self.members)

    async def get_primary(self, timeout: Optional[float] = None) -> MemberHandle:
        return await self.tracker.await_leader(self.members, timeout)

    async def await_no_primary(self, timeout: Optional[float] = None) -> None:
        await self.tracker.await_no_leader(
            self.members, timeout,
            f"Timed out waiting for there to be no primary in replset: {self.name}",
        )

    async def await_nodes_agree_on_primary(self, timeout: Optional[float] = None) -> str:
        return await self.tracker.await_all_agree_on_leader(self.members, timeout)

    async def await_secondary_nodes(self, timeout: Optional[float] = None) -> ReplicaSetView:
        return await self.tracker.await_secondary_nodes(self.members, timeout)

    async def get_secondaries(self, timeout: Optional[float] = None) -> List[MemberHandle]:
        return await self.tracker.get_secondaries(self.members, timeout)

    async def get_secondary(self, timeout: Optional[float] = None) -> MemberHandle:
        return (await self.get_secondaries(timeout))[0]

    async def status(self) -> ReplicationStatus:
        """Replication status as seen by the primary, or the first reachable secondary."""
        view = await self.view()
        source = view.current_leader or (view.secondaries[0] if view.secondaries else None)
        if source is None:
            raise LookupError(f"no reachable member in replset {self.name}")
        return await source.replication_status()

    async def wait_for_state(self, member: MemberHandle, *states: MemberState,
                             timeout: Optional[float] = None) -> None:
        await self.tracker.wait_for_state(self.members, member, states, timeout)

    async def wait_for_state_all(self, members: Sequence[MemberHandle], *states: MemberState,
                                 timeout: Optional[float] = None) -> None:
        await self.tracker.wait_for_state_all(self.members, members, states, timeout)

    async def wait_for_health(self, member: MemberHandle, health: Health,
                              timeout: Optional[float] = None) -> None:
        await self.tracker.wait_for_health(self.members, member, health, timeout)

    async def await_last_op_committed(self, timeout: Optional[float] = None) -> OpTime:
        return await self.replication.await_last_op_committed(self.members, timeout)

    async def await_replication(self, timeout: Optional[float] = None,
                                op_time_kind: OpTimeKind = OpTimeKind.LAST_APPLIED) -> OpTime:
        return await self.replication.await_replication(self.members, op_time_kind, timeout)

    async def check_replicated_data_hashes(self, excluded: Iterable[str] = (),
                                           msg_prefix: str = "checkReplicatedDataHashes",
                                           report_capped: bool = False,
                                           timeout: Optional[float] = None) -> List[DivergenceReport]:
        excluded = set(self.config.excluded_databases) | set(excluded)
        return await self.verifier.check_replicated_data_hashes(
            self.members, excluded, msg_prefix, report_capped, timeout
        )

    async def ensure_oplogs_match(self) -> int:
        return await self.oplogs.ensure_oplogs_match(self.members)
