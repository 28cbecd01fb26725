"""
Harness configuration loaded from a TOML file.

Example:

    name = "rs0"
    default_timeout = 600
    poll_interval = 0.25
    excluded_databases = ["config"]

    [[members]]
    host = "127.0.0.1"
    port = 27017

    [[members]]
    host = "127.0.0.1"
    port = 27019
    arbiter = true

Defaults are filled in once, when the file is loaded.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Tuple, Union

import toml

from .errors import ConfigError
from .poller import DEFAULT_INTERVAL, DEFAULT_TIMEOUT

DEFAULT_HOST = "127.0.0.1"
DEFAULT_COMMAND_TIMEOUT = 5.0
DEFAULT_OPLOG_DUMP_LIMIT = 100


@dataclass(frozen=True)
class MemberConfig:
    host: str
    port: int
    arbiter: bool = False

    @property
    def identity(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemberConfig":
        if "port" not in data:
            raise ConfigError(f"member is missing a port: {data}")
        try:
            port = int(data["port"])
        except (TypeError, ValueError):
            raise ConfigError(f"invalid member port: {data['port']!r}")
        if not 0 < port < 65536:
            raise ConfigError(f"member port out of range: {port}")
        return cls(
            host=str(data.get("host", DEFAULT_HOST)),
            port=port,
            arbiter=bool(data.get("arbiter", False)),
        )


@dataclass(frozen=True)
class HarnessConfig:
    name: str = "testReplSet"
    default_timeout: float = DEFAULT_TIMEOUT
    poll_interval: float = DEFAULT_INTERVAL
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    oplog_dump_limit: int = DEFAULT_OPLOG_DUMP_LIMIT
    excluded_databases: Tuple[str, ...] = ()
    members: Tuple[MemberConfig, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HarnessConfig":
        try:
            config = cls(
                name=str(data.get("name", cls.name)),
                default_timeout=float(data.get("default_timeout", DEFAULT_TIMEOUT)),
                poll_interval=float(data.get("poll_interval", DEFAULT_INTERVAL)),
                command_timeout=float(data.get("command_timeout", DEFAULT_COMMAND_TIMEOUT)),
                oplog_dump_limit=int(data.get("oplog_dump_limit", DEFAULT_OPLOG_DUMP_LIMIT)),
                excluded_databases=tuple(data.get("excluded_databases", ())),
                members=tuple(MemberConfig.from_dict(m) for m in data.get("members", ())),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid harness configuration: {e}") from e

        if config.default_timeout <= 0 or config.poll_interval <= 0:
            raise ConfigError("default_timeout and poll_interval must be positive")
        if config.poll_interval > config.default_timeout:
            raise ConfigError("poll_interval must not exceed default_timeout")
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "default_timeout": self.default_timeout,
            "poll_interval": self.poll_interval,
            "command_timeout": self.command_timeout,
            "oplog_dump_limit": self.oplog_dump_limit,
            "excluded_databases": list(self.excluded_databases),
            "members": [
                {"host": m.host, "port": m.port, "arbiter": m.arbiter} for m in self.members
            ],
        }


def load_config(path: Union[str, Path]) -> HarnessConfig:
    """Load a HarnessConfig from a TOML file."""
    try:
        with open(path) as f:
            data = toml.load(f)
    except toml.TomlDecodeError as e:
        raise ConfigError(f"could not parse {path}: {e}") from e
    return HarnessConfig.from_dict(data)


def dump_config(config: HarnessConfig, path: Union[str, Path]) -> Path:
    """Write a HarnessConfig as TOML and return the path written."""
    path = Path(path)
    with open(path, 'w') as f:
        toml.dump(config.to_dict(), f)
    return path
