"""Read operation times and role information from a single member."""

from typing import Optional

from .member import MemberHandle, MemberState, OpTimeKind
from .optime import OpTime


class MemberObserver:
    """Status queries against one member, reduced to the values waits need."""

    def __init__(self, member: MemberHandle):
        self.member = member

    def __repr__(self) -> str:
        return f"MemberObserver({self.member.identity})"

    async def is_arbiter(self) -> bool:
        if self.member.arbiter:
            return True
        status = await self.member.replication_status()
        return status.my_state == MemberState.ARBITER

    async def last_applied(self) -> Optional[OpTime]:
        """Last applied optime, or None for an arbiter."""
        return (await self.member.replication_status()).applied

    async def last_durable(self) -> Optional[OpTime]:
        """Last durable optime, or the last applied one when running without journaling."""
        status = await self.member.replication_status()
        if status.durable is not None:
            return status.durable
        return status.applied

    async def majority_committed(self) -> OpTime:
        """Optime of the member's majority committed snapshot.

        A null optime means read concern majority is off or nothing has been
        committed yet.
        """
        committed = (await self.member.replication_status()).majority_committed
        return committed if committed is not None else OpTime.null()

    async def op_time(self, kind: OpTimeKind) -> Optional[OpTime]:
        if kind == OpTimeKind.LAST_DURABLE:
            return await self.last_durable()
        return await self.last_applied()
