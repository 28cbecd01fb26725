"""
Operation times: how far a member has progressed through the shared oplog.

An OpTime pairs an election term with a (seconds, increment) timestamp.
Terms win when both sides have one; otherwise the timestamps decide.
"""

from dataclasses import dataclass
from typing import Any, Mapping, NamedTuple, Union

UNSET_TERM = -1


class Timestamp(NamedTuple):
    seconds: int
    increment: int

    def __str__(self) -> str:
        return f"Timestamp({self.seconds}, {self.increment})"

    @classmethod
    def from_document(cls, value: Any) -> "Timestamp":
        """Parse {"t": secs, "i": inc}, [secs, inc] or an existing Timestamp."""
        if isinstance(value, Timestamp):
            return value
        if isinstance(value, Mapping):
            return cls(int(value["t"]), int(value["i"]))
        seconds, increment = value
        return cls(int(seconds), int(increment))

    def to_document(self) -> dict:
        return {"t": self.seconds, "i": self.increment}


@dataclass(frozen=True)
class OpTime:
    ts: Timestamp
    term: int = UNSET_TERM

    def __str__(self) -> str:
        return f"{{ts: {self.ts}, t: {self.term}}}"

    def is_null(self) -> bool:
        return self.ts == (0, 0) and self.term in (0, UNSET_TERM)

    @classmethod
    def null(cls) -> "OpTime":
        return cls(Timestamp(0, 0), 0)

    @classmethod
    def from_document(cls, doc: Any) -> "OpTime":
        """Parse an optime as reported in a replication status reply.

        Accepts {"ts": <timestamp>, "t": <term>}, or a bare timestamp in any
        form Timestamp.from_document understands (the term is then unset).
        """
        if isinstance(doc, OpTime):
            return doc
        if isinstance(doc, Mapping) and "ts" in doc:
            term = doc.get("t")
            return cls(Timestamp.from_document(doc["ts"]),
                       UNSET_TERM if term is None else int(term))
        return cls(Timestamp.from_document(doc))

    def to_document(self) -> dict:
        return {"ts": self.ts.to_document(), "t": self.term}


Comparable = Union[OpTime, Timestamp]


def as_op_time(value: Comparable) -> OpTime:
    if isinstance(value, OpTime):
        return value
    return OpTime(Timestamp(*value))


def compare_op_times(a: Comparable, b: Comparable) -> int:
    """Return -1, 0 or 1 as a is earlier than, level with, or later than b."""
    a = as_op_time(a)
    b = as_op_time(b)
    if a == b:
        return 0

    # A term of -1 never decides the order on its own.
    if a.term != UNSET_TERM and b.term != UNSET_TERM and a.term != b.term:
        return -1 if a.term < b.term else 1

    if a.ts == b.ts:
        return 0
    return -1 if a.ts < b.ts else 1


def is_earlier(a: Comparable, b: Comparable) -> bool:
    return compare_op_times(a, b) < 0
