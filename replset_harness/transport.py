"""
MemberHandle over a line-oriented TCP admin protocol.

Each query opens a connection, sends one CRLF-terminated command and reads one
JSON reply line. Replies carry "ok": 1 on success; "ok": 0 with an "errmsg"
on failure.

Commands:
    ROLESTATUS                 -> ismaster, secondary, arbiterOnly, configVersion
    REPLSTATUS                 -> myState, members[], optimes{}
    LISTDBS                    -> databases[]
    DBHASH <db>                -> md5, collections{name: hash}, capped[]
    COLLINFO <db>              -> collections[{name, ...}]
    COLLSTATS <db> <ns>        -> capped, nindexes, ns
    FIND <db> <ns> <asc|desc>  -> documents[]
    OPLOG [<secs> <inc>]       -> entries[]
    FSYNCLOCK / FSYNCUNLOCK    -> ok
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional, Set

from .errors import CommandFailed, TransientObservationError
from .member import (
    DatabaseDigest,
    Health,
    MemberHandle,
    MemberState,
    MemberStatusEntry,
    NamespaceDigest,
    NamespaceStats,
    ReplicationStatus,
    RoleStatus,
)
from .optime import OpTime, Timestamp

# Replies can hold whole collections.
MAX_REPLY_BYTES = 1 << 24


async def tcp_cmd(host: str, port: int, line: str, timeout: Optional[float] = None) -> str:
    """Execute a single command over TCP and return the reply line.

    Args:
        host: Member hostname or IP address
        port: Member admin port
        line: Command to send (without CRLF - will be added automatically)
        timeout: Seconds to wait for the connection and the reply

    Returns:
        Reply as a string (stripped of whitespace)
    """
    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(host, port, limit=MAX_REPLY_BYTES), timeout
    )

    try:
        # Send command with CRLF terminator
        writer.write((line + "\r\n").encode())
        await writer.drain()

        data = await asyncio.wait_for(reader.readline(), timeout)
        return data.decode(errors="ignore").strip()
    finally:
        writer.close()
        await writer.wait_closed()


def _op_time(optimes: Dict[str, Any], key: str) -> Optional[OpTime]:
    value = optimes.get(key)
    return OpTime.from_document(value) if value is not None else None


class TcpMember(MemberHandle):
    """Replica set member reached through the TCP admin protocol."""

    def __init__(self, host: str, port: int, command_timeout: float = 5.0,
                 arbiter: bool = False):
        self.host = host
        self.port = port
        self.command_timeout = command_timeout
        self.arbiter = arbiter

    @property
    def identity(self) -> str:
        return f"{self.host}:{self.port}"

    def __repr__(self) -> str:
        return f"TcpMember({self.identity})"

    async def command(self, line: str) -> Dict[str, Any]:
        """Send a command and return the decoded reply.

        Connection problems and unreadable replies are transient; an error
        reply from the member is not.
        """
        try:
            raw = await tcp_cmd(self.host, self.port, line, self.command_timeout)
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError) as e:
            raise TransientObservationError(
                f"could not run {line!r}: {e!r}", member=self.identity
            ) from e

        try:
            reply = json.loads(raw)
        except ValueError as e:
            raise TransientObservationError(
                f"unreadable reply to {line!r}: {raw[:200]!r}", member=self.identity
            ) from e

        if not isinstance(reply, dict) or not reply.get("ok"):
            raise CommandFailed(line, reply, member=self.identity)
        return reply

    async def role_status(self) -> RoleStatus:
        reply = await self.command("ROLESTATUS")
        return RoleStatus(
            is_leader=bool(reply.get("ismaster", False)),
            is_secondary=bool(reply.get("secondary", False)),
            is_arbiter=bool(reply.get("arbiterOnly", False)),
            config_version=int(reply.get("configVersion", 0)),
        )

    async def replication_status(self) -> ReplicationStatus:
        reply = await self.command("REPLSTATUS")
        optimes = reply.get("optimes", {})
        members = tuple(
            MemberStatusEntry(
                name=m["name"],
                state=MemberState(m["state"]),
                health=Health(int(m.get("health", 1))),
                is_self=bool(m.get("self", False)),
            )
            for m in reply.get("members", ())
        )
        return ReplicationStatus(
            my_state=MemberState(reply["myState"]),
            members=members,
            applied=_op_time(optimes, "appliedOpTime"),
            durable=_op_time(optimes, "durableOpTime"),
            majority_committed=_op_time(optimes, "readConcernMajorityOpTime"),
        )

    async def list_databases(self) -> Set[str]:
        reply = await self.command("LISTDBS")
        return set(reply.get("databases", ()))

    async def database_digest(self, database: str) -> DatabaseDigest:
        reply = await self.command(f"DBHASH {database}")
        capped = set(reply.get("capped", ()))
        namespaces = {
            name: NamespaceDigest(name, content_hash, name in capped)
            for name, content_hash in reply.get("collections", {}).items()
        }
        return DatabaseDigest(database, namespaces, reply.get("md5"))

    async def namespace_metadata(self, database: str) -> Dict[str, Any]:
        reply = await self.command(f"COLLINFO {database}")
        return {info["name"]: info for info in reply.get("collections", ())}

    async def namespace_stats(self, database: str, namespace: str) -> NamespaceStats:
        reply = await self.command(f"COLLSTATS {database} {namespace}")
        return NamespaceStats(
            capped=bool(reply.get("capped", False)),
            index_count=int(reply.get("nindexes", 0)),
            canonical_name=str(reply.get("ns", f"{database}.{namespace}")),
        )

    async def read_documents(self, database: str, namespace: str,
                             descending: bool = False) -> AsyncIterator[Dict[str, Any]]:
        order = "desc" if descending else "asc"
        reply = await self.command(f"FIND {database} {namespace} {order}")
        for doc in reply.get("documents", ()):
            yield doc

    async def read_oplog(self, start: Optional[Timestamp] = None) -> AsyncIterator[Dict[str, Any]]:
        line = "OPLOG" if start is None else f"OPLOG {start.seconds} {start.increment}"
        reply = await self.command(line)
        for entry in reply.get("entries", ()):
            yield {**entry, "ts": Timestamp.from_document(entry["ts"])}

    async def acquire_exclusive_hold(self) -> None:
        await self.command("FSYNCLOCK")

    async def release_exclusive_hold(self) -> None:
        await self.command("FSYNCUNLOCK")
