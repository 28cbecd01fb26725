"""
Replica set convergence and consistency checks for integration tests.

Typical use, after driving the cluster through a scenario:

    rst = ReplicaSetTest(members, config)
    await rst.get_primary()
    await rst.await_replication()
    await rst.check_replicated_data_hashes()
    await rst.ensure_oplogs_match()
"""

from .config import HarnessConfig, MemberConfig, load_config
from .consistency import ConsistencyVerifier, DivergenceReport, ExclusiveHold, diff_documents
from .errors import (
    CommandFailed,
    ConfigError,
    ConfigurationStale,
    ConsistencyMismatch,
    ConvergenceTimeout,
    HarnessError,
    OplogDivergence,
    TransientObservationError,
)
from .leadership import LeadershipTracker, ReplicaSetView
from .member import (
    DatabaseDigest,
    Health,
    MemberHandle,
    MemberRole,
    MemberState,
    MemberStatusEntry,
    NamespaceDigest,
    NamespaceStats,
    OpTimeKind,
    ReplicationStatus,
    RoleStatus,
)
from .observer import MemberObserver
from .oplog import OplogAlignmentChecker, dump_oplog
from .optime import OpTime, Timestamp, compare_op_times, is_earlier
from .poller import await_condition
from .replication import ReplicationConvergenceChecker
from .replset import ReplicaSetTest
from .transport import TcpMember, tcp_cmd

__version__ = "0.1.0"
