"""
Replication convergence tests.

Test scenarios:
- Secondaries catching up to the leader's optime
- A held-back secondary makes the wait time out and is reported
- Secondaries racing ahead of a stale target
- Reconfiguration while waiting (config version moves)
- Leader change while waiting
- Arbiters are never waited on
- Majority commit waits
"""

import pytest

from replset_harness import (
    CommandFailed,
    ConvergenceTimeout,
    LeadershipTracker,
    MemberState,
    OpTime,
    OpTimeKind,
    ReplicationConvergenceChecker,
    Timestamp,
)
from conftest import TEST_INTERVAL, later, make_replica_set


def checker(timeout: float = 1.0) -> ReplicationConvergenceChecker:
    return ReplicationConvergenceChecker(LeadershipTracker(timeout=timeout, interval=TEST_INTERVAL))


class TestAwaitReplication:

    @pytest.mark.asyncio
    async def test_blocks_until_lagging_secondary_catches_up(self, replica_set):
        leader, secondary1, secondary2 = replica_set
        leader.set_op_time(5, 100, 2)
        secondary1.set_op_time(5, 100, 2)
        secondary2.set_op_time(5, 100, 1)
        later(0.1, secondary2.set_op_time, 5, 100, 2)

        synced_at = await checker().await_replication(replica_set)

        assert synced_at == OpTime(Timestamp(100, 2), 5)
        assert secondary2.applied == synced_at

    @pytest.mark.asyncio
    async def test_all_synced_returns_immediately(self, replica_set):
        synced_at = await checker(timeout=0.05).await_replication(replica_set)
        assert synced_at == OpTime(Timestamp(100, 1), 1)

    @pytest.mark.asyncio
    async def test_held_back_secondary_times_out_and_is_reported(self, replica_set):
        leader, secondary1, secondary2 = replica_set
        leader.set_op_time(5, 100, 2)
        secondary1.set_op_time(5, 100, 2)
        secondary2.set_op_time(5, 90, 0)

        with pytest.raises(ConvergenceTimeout) as excinfo:
            await checker(timeout=0.2).await_replication(replica_set)

        lagging = excinfo.value.context["lagging"]
        assert list(lagging) == [secondary2.identity]
        assert secondary2.identity in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_secondary_ahead_refreshes_target(self, replica_set):
        leader, secondary1, secondary2 = replica_set
        leader.set_op_time(5, 100, 2)
        secondary1.set_op_time(5, 100, 2)
        secondary2.set_op_time(5, 100, 1)

        def leader_write():
            # secondary1 applies it right away, so it is ahead of the target
            leader.set_op_time(5, 100, 3)
            secondary1.set_op_time(5, 100, 3)

        later(0.03, leader_write)
        later(0.08, secondary2.set_op_time, 5, 100, 3)

        synced_at = await checker().await_replication(replica_set)

        assert synced_at == OpTime(Timestamp(100, 3), 5)

    @pytest.mark.asyncio
    async def test_newer_config_version_re_resolves_target(self, replica_set):
        leader, secondary1, secondary2 = replica_set
        secondary1.config_version = 2

        def reconfigured():
            leader.config_version = 2
            secondary2.config_version = 2

        later(0.05, reconfigured)

        synced_at = await checker().await_replication(replica_set)
        assert synced_at == leader.applied

    @pytest.mark.asyncio
    async def test_older_config_version_keeps_waiting(self, replica_set):
        replica_set[0].config_version = 3
        replica_set[1].config_version = 3
        replica_set[2].config_version = 2

        with pytest.raises(ConvergenceTimeout) as excinfo:
            await checker(timeout=0.1).await_replication(replica_set)
        assert "config version 2" in excinfo.value.context["lagging"][replica_set[2].identity]

    @pytest.mark.asyncio
    async def test_arbiters_are_skipped(self):
        members = make_replica_set(3, arbiters=1)

        synced_at = await checker(timeout=0.1).await_replication(members)

        assert synced_at == members[0].applied

    @pytest.mark.asyncio
    async def test_leader_change_mid_wait(self, replica_set):
        old_leader, secondary1, secondary2 = replica_set
        old_leader.set_op_time(1, 100, 5)
        secondary2.set_op_time(1, 100, 4)

        def failover():
            old_leader.reachable = False
            secondary1.state = MemberState.PRIMARY
            secondary1.set_op_time(2, 101, 1)

        def catch_up():
            # The old leader rejoins as a secondary
            old_leader.state = MemberState.SECONDARY
            old_leader.reachable = True
            old_leader.set_op_time(2, 101, 1)
            secondary2.set_op_time(2, 101, 1)

        later(0.05, failover)
        later(0.15, catch_up)

        synced_at = await checker().await_replication(replica_set)

        assert synced_at == OpTime(Timestamp(101, 1), 2)

    @pytest.mark.asyncio
    async def test_secondary_unreachable_when_target_is_read(self, replica_set):
        leader, secondary1, secondary2 = replica_set
        leader.set_op_time(5, 100, 2)
        secondary1.set_op_time(5, 100, 2)
        secondary2.set_op_time(5, 90, 0)
        secondary2.reachable = False

        with pytest.raises(ConvergenceTimeout) as excinfo:
            await checker(timeout=0.2).await_replication(replica_set)
        assert secondary2.identity in excinfo.value.context["lagging"]

    @pytest.mark.asyncio
    async def test_unreachable_secondary_is_waited_for(self, replica_set):
        leader, secondary1, secondary2 = replica_set
        leader.set_op_time(5, 100, 2)
        secondary1.set_op_time(5, 100, 2)
        secondary2.set_op_time(5, 90, 0)
        secondary2.reachable = False

        def back_and_caught_up():
            secondary2.reachable = True
            secondary2.set_op_time(5, 100, 2)

        later(0.05, back_and_caught_up)

        synced_at = await checker().await_replication(replica_set)

        assert synced_at == OpTime(Timestamp(100, 2), 5)
        assert secondary2.applied == synced_at

    @pytest.mark.asyncio
    async def test_configured_arbiter_is_never_queried(self):
        members = make_replica_set(3, arbiters=1)
        members[2].arbiter = True
        members[2].reachable = False

        assert await checker(timeout=0.1).await_replication(members) == members[0].applied
        assert await checker(timeout=0.1).await_last_op_committed(members) == members[0].applied

    @pytest.mark.asyncio
    async def test_zero_timeout_is_not_the_default(self, replica_set):
        replica_set[2].set_op_time(1, 90, 0)

        with pytest.raises(ConvergenceTimeout):
            await checker(timeout=600).await_replication(replica_set, timeout=0)

    @pytest.mark.asyncio
    async def test_last_durable(self, replica_set):
        leader, secondary1, secondary2 = replica_set
        leader.set_op_time(3, 100, 7)
        secondary1.set_op_time(3, 100, 7)
        secondary2.set_op_time(3, 100, 7)
        secondary2.durable = OpTime(Timestamp(100, 6), 3)
        later(0.05, setattr, secondary2, "durable", OpTime(Timestamp(100, 7), 3))

        synced_at = await checker().await_replication(replica_set, OpTimeKind.LAST_DURABLE)

        assert synced_at == leader.applied

    @pytest.mark.asyncio
    async def test_hard_failure_propagates(self, replica_set):
        replica_set[2].hard_failure = CommandFailed("REPLSTATUS", {"ok": 0}, "node2")

        with pytest.raises(CommandFailed):
            await checker().await_replication(replica_set)


class TestAwaitLastOpCommitted:

    @pytest.mark.asyncio
    async def test_waits_for_majority_snapshot(self, replica_set):
        leader, secondary1, secondary2 = replica_set
        target = leader.set_op_time(4, 200, 1)
        secondary2.majority_committed = OpTime(Timestamp(199, 9), 4)

        def committed():
            for member in replica_set:
                member.majority_committed = target

        later(0.05, committed)

        assert await checker().await_last_op_committed(replica_set) == target

    @pytest.mark.asyncio
    async def test_null_snapshot_is_not_committed(self, replica_set):
        replica_set[1].majority_committed = None

        with pytest.raises(ConvergenceTimeout) as excinfo:
            await checker(timeout=0.1).await_last_op_committed(replica_set)
        assert replica_set[1].identity in excinfo.value.context["lagging"]

    @pytest.mark.asyncio
    async def test_later_term_counts_as_committed(self, replica_set):
        leader = replica_set[0]
        leader.set_op_time(4, 200, 1)
        for member in replica_set:
            # Higher term wins even with an older timestamp
            member.majority_committed = OpTime(Timestamp(150, 0), 5)

        assert await checker(timeout=0.1).await_last_op_committed(replica_set) == leader.applied

    @pytest.mark.asyncio
    async def test_arbiter_is_skipped(self):
        members = make_replica_set(3, arbiters=1)
        assert await checker(timeout=0.1).await_last_op_committed(members) == members[0].applied
