"""
Waits for writes accepted by the leader to reach the rest of the set.

Two flavours:
- await_last_op_committed: the leader's last optime is in every data-bearing
  member's majority committed snapshot.
- await_replication: every secondary has applied (or made durable) exactly the
  leader's latest optime, observed in a single polling pass.

Leader changes, reconfigurations and secondaries racing ahead of a stale
target are all absorbed by re-reading the target; none of them fail the wait
on their own.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

from .console import console
from .errors import ConfigurationStale, TransientObservationError
from .leadership import LeadershipTracker
from .member import MemberHandle, OpTimeKind
from .observer import MemberObserver
from .optime import OpTime, compare_op_times, is_earlier
from .poller import await_condition


@dataclass
class ReplicationTarget:
    """The optime secondaries are expected to reach, as of the last resolution."""

    leader: MemberHandle
    secondaries: Tuple[MemberHandle, ...]
    config_version: int
    op_time: OpTime
    stale: bool = False

    def replace_with(self, other: "ReplicationTarget") -> None:
        self.leader = other.leader
        self.secondaries = other.secondaries
        self.config_version = other.config_version
        self.op_time = other.op_time
        self.stale = False


class ReplicationConvergenceChecker:

    def __init__(self, tracker: LeadershipTracker):
        self.tracker = tracker

    @property
    def interval(self) -> float:
        return self.tracker.interval

    async def await_last_op_committed(self, members: Sequence[MemberHandle],
                                      timeout: Optional[float] = None) -> OpTime:
        """
        Wait for the leader's last oplog entry to be visible in the majority
        committed snapshot of every non-arbiter member.

        Returns the optime that was waited for.
        """
        timeout = self.tracker.resolve_timeout(timeout)
        target = (await self._await_target(members, timeout)).op_time
        console.print(f"[blue]Waiting for op with OpTime {target} to be committed on all "
                      f"secondaries[/blue]")
        lagging: Dict[str, str] = {}

        async def committed():
            lagging.clear()
            for member in members:
                observer = MemberObserver(member)
                try:
                    if await observer.is_arbiter():
                        continue
                    majority = await observer.majority_committed()
                except TransientObservationError as e:
                    lagging[member.identity] = f"unreachable: {e}"
                    continue

                if majority.is_null() or is_earlier(majority, target):
                    lagging[member.identity] = str(majority)
            return not lagging

        await await_condition(
            committed,
            f"Op with OpTime {target} committed on all secondaries",
            timeout,
            self.interval,
            context=lambda: {"target": str(target), "lagging": dict(lagging)},
        )
        return target

    async def await_replication(self, members: Sequence[MemberHandle],
                                op_time_kind: OpTimeKind = OpTimeKind.LAST_APPLIED,
                                timeout: Optional[float] = None) -> OpTime:
        """
        Wait until every secondary's optime of the given kind equals the
        leader's latest optime.

        Returns the optime all secondaries were synced at.
        """
        timeout = self.tracker.resolve_timeout(timeout)
        target = await self._await_target(members, timeout)
        console.print(f"[blue]awaitReplication: starting: optime for primary {target.leader} "
                      f"is {target.op_time}, config version {target.config_version}[/blue]")
        lagging: Dict[str, str] = {}

        async def synced():
            if target.stale:
                target.replace_with(await self._resolve_target(members))
                console.print(f"[yellow]awaitReplication: resetting: optime for primary "
                              f"{target.leader} is {target.op_time}[/yellow]")

            lagging.clear()
            return await self._check_secondaries(target, op_time_kind, lagging)

        await await_condition(
            synced,
            "awaiting replication",
            timeout,
            self.interval,
            context=lambda: {"target": str(target.op_time), "lagging": dict(lagging)},
        )
        console.print(f"[green]awaitReplication: finished: all secondaries synced at "
                      f"{target.op_time}[/green]")
        return target.op_time

    async def _check_secondaries(self, target: ReplicationTarget, op_time_kind: OpTimeKind,
                                 lagging: Dict[str, str]) -> bool:
        """One polling pass; True only if every data-bearing secondary is synced."""
        all_synced = True
        for member in target.secondaries:
            if member.arbiter:
                continue
            try:
                role = await member.role_status()
                if role.config_version != target.config_version:
                    lagging[member.identity] = (f"config version {role.config_version}, "
                                                f"expected {target.config_version}")
                    if role.config_version > target.config_version:
                        raise ConfigurationStale(
                            f"has config version {role.config_version}, but expected config "
                            f"version {target.config_version}",
                            member=member.identity,
                        )
                    return False

                if role.is_arbiter:
                    continue

                op_time = await MemberObserver(member).op_time(op_time_kind)
                if op_time is None:
                    raise TransientObservationError("reported no optime", member=member.identity)

                if compare_op_times(op_time, target.op_time) > 0:
                    # The leader has moved on since the target was read.
                    newer = await MemberObserver(target.leader).last_applied()
                    console.print(f"[yellow]awaitReplication: optime for {member} is newer, "
                                  f"resetting latest to {newer}[/yellow]")
                    if newer is not None:
                        target.op_time = newer
                    return False
            except TransientObservationError as e:
                # Possibly a new leader or a new config; re-resolve next pass.
                console.print(f"[yellow]awaitReplication: {member}: {e}[/yellow]")
                lagging.setdefault(member.identity, str(e))
                target.stale = True
                return False

            if compare_op_times(op_time, target.op_time) != 0:
                console.print(f"awaitReplication: optime for {member} is {op_time} but latest "
                              f"is {target.op_time}, NOT synced")
                lagging[member.identity] = str(op_time)
                all_synced = False

        return all_synced

    async def _await_target(self, members: Sequence[MemberHandle],
                            timeout: float) -> ReplicationTarget:
        return await await_condition(
            lambda: self._resolve_target(members),
            "awaiting oplog query",
            timeout,
            self.interval,
        )

    async def _resolve_target(self, members: Sequence[MemberHandle]) -> ReplicationTarget:
        view = await self.tracker.refresh_view(members)
        leader = view.current_leader
        if leader is None:
            raise TransientObservationError("no primary while resolving the replication target")

        op_time = await MemberObserver(leader).last_applied()
        if op_time is None:
            raise TransientObservationError("primary reported no optime", member=leader.identity)

        return ReplicationTarget(
            leader=leader,
            secondaries=tuple(member for member in members if member is not leader),
            config_version=view.config_version_of(leader),
            op_time=op_time,
        )
