"""
Leader discovery by cross-polling every member.

Each refresh asks every member whether it is the leader and builds a new
ReplicaSetView from the answers. Views are snapshots: nothing here keeps a
live member table between calls.
"""

import time
from dataclasses import dataclass
from typing import Collection, Dict, List, Optional, Sequence, Tuple

from .console import console
from .errors import TransientObservationError
from .member import Health, MemberHandle, MemberRole, MemberState
from .poller import DEFAULT_INTERVAL, DEFAULT_TIMEOUT, await_condition


@dataclass(frozen=True)
class ReplicaSetView:
    members: Tuple[MemberHandle, ...]
    roles: Tuple[MemberRole, ...]
    config_versions: Tuple[Optional[int], ...]
    current_leader: Optional[MemberHandle]
    ambiguous: bool
    observed_at: float

    def role_of(self, member: MemberHandle) -> MemberRole:
        for candidate, role in zip(self.members, self.roles):
            if candidate is member:
                return role
        raise KeyError(member.identity)

    def config_version_of(self, member: MemberHandle) -> Optional[int]:
        for candidate, version in zip(self.members, self.config_versions):
            if candidate is member:
                return version
        raise KeyError(member.identity)

    @property
    def secondaries(self) -> Tuple[MemberHandle, ...]:
        """Reachable members other than the leader, arbiters included."""
        return tuple(
            member for member, role in zip(self.members, self.roles)
            if role not in (MemberRole.LEADER, MemberRole.DOWN)
        )

    def describe(self) -> Dict[str, str]:
        return {member.identity: role.value for member, role in zip(self.members, self.roles)}


class LeadershipTracker:
    """Finds the current leader and waits for leadership-related conditions."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, interval: float = DEFAULT_INTERVAL):
        self.timeout = timeout
        self.interval = interval

    def resolve_timeout(self, timeout: Optional[float]) -> float:
        """The given timeout, or the default when none is given. Zero is a valid timeout."""
        return self.timeout if timeout is None else timeout

    async def refresh_view(self, members: Sequence[MemberHandle]) -> ReplicaSetView:
        """Ask every member for its role and return a fresh view."""
        roles: List[MemberRole] = []
        versions: List[Optional[int]] = []
        leaders: List[MemberHandle] = []

        for member in members:
            try:
                status = await member.role_status()
            except TransientObservationError as e:
                console.print(f"[yellow]Could not get role status from {member}: {e}[/yellow]")
                roles.append(MemberRole.DOWN)
                versions.append(None)
                continue

            roles.append(status.role)
            versions.append(status.config_version)
            if status.is_leader:
                leaders.append(member)

        ambiguous = len(leaders) > 1
        if ambiguous:
            console.print(
                f"[red]More than one member claims leadership: "
                f"{', '.join(m.identity for m in leaders)}[/red]"
            )

        return ReplicaSetView(
            members=tuple(members),
            roles=tuple(roles),
            config_versions=tuple(versions),
            current_leader=leaders[0] if len(leaders) == 1 else None,
            ambiguous=ambiguous,
            observed_at=time.time(),
        )

    async def await_leader_view(self, members: Sequence[MemberHandle],
                                timeout: Optional[float] = None) -> ReplicaSetView:
        """Poll until exactly one leader is observed; return that view."""
        last_view: List[ReplicaSetView] = []

        async def leader_found():
            view = await self.refresh_view(members)
            last_view[:] = [view]
            return view if view.current_leader is not None else None

        return await await_condition(
            leader_found,
            "Finding primary",
            self.resolve_timeout(timeout),
            self.interval,
            context=lambda: {"roles": last_view[0].describe()} if last_view else {},
        )

    async def await_leader(self, members: Sequence[MemberHandle],
                           timeout: Optional[float] = None) -> MemberHandle:
        view = await self.await_leader_view(members, timeout)
        return view.current_leader

    async def await_no_leader(self, members: Sequence[MemberHandle],
                              timeout: Optional[float] = None,
                              description: str = "Awaiting no primary") -> ReplicaSetView:
        async def no_leader():
            view = await self.refresh_view(members)
            return view if view.current_leader is None else None

        return await await_condition(no_leader, description, self.resolve_timeout(timeout),
                                     self.interval)

    async def await_all_agree_on_leader(self, members: Sequence[MemberHandle],
                                        timeout: Optional[float] = None) -> str:
        """Wait until every member's own status names the same single leader."""
        opinions: Dict[str, List[str]] = {}

        async def agree():
            opinions.clear()
            agreed: Optional[str] = None
            for member in members:
                status = await member.replication_status()
                primaries = [e.name for e in status.members if e.state == MemberState.PRIMARY]
                opinions[member.identity] = primaries
                # Member sees no primary, or two.
                if len(primaries) != 1:
                    return None
                if agreed is None:
                    agreed = primaries[0]
                elif agreed != primaries[0]:
                    return None
            return agreed

        return await await_condition(
            agree,
            "Awaiting nodes to agree on primary",
            self.resolve_timeout(timeout),
            self.interval,
            context=lambda: {"primaries_seen": dict(opinions)},
        )

    async def await_secondary_nodes(self, members: Sequence[MemberHandle],
                                    timeout: Optional[float] = None) -> ReplicaSetView:
        """Wait for a leader and for every other reachable member to be secondary or arbiter."""
        async def ready():
            view = await self.refresh_view(members)
            if view.current_leader is None:
                return None
            for member in view.secondaries:
                if view.role_of(member) not in (MemberRole.SECONDARY, MemberRole.ARBITER):
                    return None
            return view

        return await await_condition(ready, "Awaiting secondaries",
                                     self.resolve_timeout(timeout), self.interval)

    async def get_secondaries(self, members: Sequence[MemberHandle],
                              timeout: Optional[float] = None) -> List[MemberHandle]:
        leader = await self.await_leader(members, timeout)
        return [member for member in members if member is not leader]

    async def wait_for_state(self, members: Sequence[MemberHandle], member: MemberHandle,
                             states: Collection[MemberState],
                             timeout: Optional[float] = None) -> None:
        await self._wait_for_indicator(members, member, "state", states, timeout)

    async def wait_for_state_all(self, members: Sequence[MemberHandle],
                                 targets: Sequence[MemberHandle],
                                 states: Collection[MemberState],
                                 timeout: Optional[float] = None) -> None:
        for target in targets:
            await self.wait_for_state(members, target, states, timeout)

    async def wait_for_health(self, members: Sequence[MemberHandle], member: MemberHandle,
                              health: Health, timeout: Optional[float] = None) -> None:
        """Health DOWN can only be observed while a leader or a secondary is reachable."""
        await self._wait_for_indicator(members, member, "health", (health,), timeout)

    async def wait_for_health_all(self, members: Sequence[MemberHandle],
                                  targets: Sequence[MemberHandle], health: Health,
                                  timeout: Optional[float] = None) -> None:
        for target in targets:
            await self.wait_for_health(members, target, health, timeout)

    async def _wait_for_indicator(self, members: Sequence[MemberHandle], member: MemberHandle,
                                  indicator: str, wanted: Collection,
                                  timeout: Optional[float]) -> None:
        console.print(f"[blue]Waiting for {indicator} of {member} to reach "
                      f"{[getattr(w, 'name', w) for w in wanted]}[/blue]")
        observed: Dict[str, object] = {}

        async def reached():
            view = await self.refresh_view(members)
            source = view.current_leader
            if source is None and view.secondaries:
                source = view.secondaries[0]
            if source is None:
                return False

            status = await source.replication_status()
            entry = status.entry_for(member.identity)
            if entry is None:
                return False
            observed[member.identity] = getattr(entry, indicator)
            return observed[member.identity] in wanted

        await await_condition(
            reached,
            f"waiting for state indicator {indicator} on {member}",
            self.resolve_timeout(timeout),
            self.interval,
            context=lambda: dict(observed),
        )
