"""Configuration and RPC message types for the shard controller."""

from __future__ import annotations

from dataclasses import dataclass, field

NSHARDS = 10
"""Number of shards the key space is divided into."""

OK = "OK"


def _unassigned_shards() -> list[int]:
    return [0] * NSHARDS


@dataclass
class Config:
    """An assignment of shards to replica groups.

    ``shards[i]`` is the gid that owns shard ``i``; gid 0 is the invalid group.
    ``groups`` maps each gid to the names of its servers.
    """

    num: int = 0
    shards: list[int] = field(default_factory=_unassigned_shards)
    groups: dict[int, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if len(self.shards) != NSHARDS:
            raise ValueError(
                f"a configuration assigns exactly {NSHARDS} shards, got {len(self.shards)}"
            )

    def copy(self) -> Config:
        """Return a deep copy that shares no lists or dicts with this one."""
        return Config(
            num=self.num,
            shards=list(self.shards),
            groups={gid: list(servers) for gid, servers in self.groups.items()},
        )


@dataclass
class JoinArgs:
    servers: dict[int, list[str]] = field(default_factory=dict)
    client_id: int = 0
    seq_num: int = 0


@dataclass
class JoinReply:
    wrong_leader: bool = False
    err: str = ""


@dataclass
class LeaveArgs:
    gids: list[int] = field(default_factory=list)
    client_id: int = 0
    seq_num: int = 0


@dataclass
class LeaveReply:
    wrong_leader: bool = False
    err: str = ""


@dataclass
class MoveArgs:
    shard: int = 0
    gid: int = 0
    client_id: int = 0
    seq_num: int = 0


@dataclass
class MoveReply:
    wrong_leader: bool = False
    err: str = ""


@dataclass
class QueryArgs:
    num: int = -1
    client_id: int = 0
    seq_num: int = 0


@dataclass
class QueryReply:
    wrong_leader: bool = False
    err: str = ""
    config: Config = field(default_factory=Config)