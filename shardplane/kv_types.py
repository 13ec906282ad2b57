"""RPC message types for the sharded key/value service."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from shardplane.ctrler_types import Config


class Err(str, enum.Enum):
    """Error codes carried in replies; members compare equal to their strings."""

    OK = "OK"
    NO_KEY = "ErrNoKey"
    WRONG_GROUP = "ErrWrongGroup"
    WRONG_LEADER = "ErrWrongLeader"
    OUT_DATED = "ErrOutDated"
    TIMEOUT = "ErrTimeout"
    WRONG_OPERATION = "ErrWrongOperation"


class OpType(str, enum.Enum):
    """Client operation kinds."""

    GET = "Get"
    PUT = "Put"
    APPEND = "Append"


@dataclass
class CommandArgs:
    key: str = ""
    value: str = ""
    op: OpType = OpType.GET
    client_id: int = 0
    command_id: int = 0


@dataclass
class CommandReply:
    err: str = ""
    value: str = ""


@dataclass
class OperationContext:
    """The last command applied for one client and the reply it produced."""

    max_applied_command_id: int = 0
    last_reply: CommandReply | None = None


@dataclass
class ShardOperationArgs:
    config_num: int = 0
    shard_ids: list[int] = field(default_factory=list)


@dataclass
class ShardOperationReply:
    err: str = ""
    config_num: int = 0
    shards: dict[int, dict[str, str]] = field(default_factory=dict)
    last_operations: dict[int, OperationContext] = field(default_factory=dict)


@dataclass
class GetArgs:
    key: str = ""
    client_id: int = 0
    seq_num: int = 0


@dataclass
class GetReply:
    err: str = ""
    value: str = ""


@dataclass
class PutAppendArgs:
    key: str = ""
    value: str = ""
    op: str = OpType.PUT.value
    client_id: int = 0
    seq_num: int = 0


@dataclass
class PutAppendReply:
    err: str = ""


@dataclass
class GetShardArgs:
    config_num: int = 0
    shard: int = 0
    request_history: list[int] = field(default_factory=list)


@dataclass
class GetShardReply:
    err: str = ""
    shard_data: dict[str, str] = field(default_factory=dict)
    client_seq: dict[int, int] = field(default_factory=dict)
    config_num: int = 0
    current_owner: int = 0
    config_history: list[int] = field(default_factory=list)
    data_sizes: dict[str, int] = field(default_factory=dict)


@dataclass
class CleanShardArgs:
    config_num: int = 0
    shard: int = 0


@dataclass
class CleanShardReply:
    err: str = ""


@dataclass
class NotifyConfigArgs:
    config_num: int = 0
    config: Config = field(default_factory=Config)


@dataclass
class NotifyConfigReply:
    err: str = ""