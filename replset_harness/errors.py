"""
Error taxonomy for the replica-set harness.

Only two families matter to callers:
- TransientObservationError: one query against one member failed. Polling
  loops absorb it and try again on the next round.
- Everything else derived from HarnessError: a wait ran out of time or the
  members disagree about their data. These propagate unchanged to the test.
"""

from typing import Any, Dict, List, Optional, Sequence


class HarnessError(Exception):
    """Base class for every error raised by replset_harness."""


class TransientObservationError(HarnessError):
    """A single query against a member failed and may succeed if retried."""

    def __init__(self, message: str, member: Optional[str] = None):
        super().__init__(message)
        self.member = member


class ConfigurationStale(TransientObservationError):
    """The replication target was computed against an outdated set config."""


class CommandFailed(HarnessError):
    """A member answered a query with an error reply."""

    def __init__(self, command: str, reply: Any, member: Optional[str] = None):
        super().__init__(f"command {command!r} failed on {member}: {reply}")
        self.command = command
        self.reply = reply
        self.member = member


class ConfigError(HarnessError):
    """The harness configuration is invalid."""


class ConvergenceTimeout(HarnessError):
    """A polling wait did not observe its condition before the deadline."""

    def __init__(self, description: str, elapsed: float,
                 last_error: Optional[BaseException] = None,
                 context: Optional[Dict[str, Any]] = None):
        self.description = description
        self.elapsed = elapsed
        self.last_error = last_error
        self.context = context or {}

        message = f"Condition '{description}' not met within {elapsed:.2f}s"
        if self.context:
            message += f". Last observed: {self.context}"
        if last_error is not None:
            message += f". Last error: {last_error}"
        super().__init__(message)


class ConsistencyMismatch(HarnessError):
    """Replica set members hold different data."""

    def __init__(self, problems: Sequence[str], reports: Sequence[Any] = ()):
        self.problems: List[str] = list(problems)
        self.reports = list(reports)
        summary = "; ".join(self.problems) or "data mismatch"
        super().__init__(f"dbhash mismatch between primary and secondary: {summary}")


class OplogDivergence(HarnessError):
    """The members' oplogs are not the same sequence of entries."""

    def __init__(self, members: Sequence[str], detail: str):
        self.members = list(members)
        self.detail = detail
        super().__init__(f"oplog divergence on {', '.join(self.members)}: {detail}")
