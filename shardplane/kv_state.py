"""Replicated state machine of one shard key/value group."""

from __future__ import annotations

import enum
import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from shardplane.ctrler_types import NSHARDS, Config
from shardplane.kv_client import key2shard
from shardplane.kv_types import Err


class ShardState(enum.IntEnum):
    """Serving state of one shard inside a group."""

    NORMAL = 0
    MIGRATING = 1
    WAITING = 2


class OpKind(str, enum.Enum):
    """Kinds of commands replicated through a group's log."""

    GET = "Get"
    PUT = "Put"
    APPEND = "Append"
    CONFIG = "Config"
    TRANSFER = "Transfer"
    CLEANUP = "Cleanup"
    INSTALL_SHARDS = "InstallShards"


_CLIENT_OPS = frozenset({OpKind.GET, OpKind.PUT, OpKind.APPEND})


@dataclass
class Op:
    """A command replicated through the log."""

    type: OpKind | str
    key: str = ""
    value: str = ""
    client_id: int = 0
    seq_num: int = 0
    config: Config = field(default_factory=Config)
    shard: int = 0
    config_num: int = 0
    shard_data: dict[int, dict[str, str]] = field(default_factory=dict)
    client_seq: dict[int, int] = field(default_factory=dict)
    shards: list[int] = field(default_factory=list)


@dataclass
class OpResult:
    """Outcome of applying one command."""

    client_id: int = 0
    seq_num: int = 0
    value: str = ""
    err: Err = Err.OK


@dataclass
class SnapshotState:
    """Everything a group persists in a snapshot."""

    data: dict[int, dict[str, str]] = field(default_factory=dict)
    client_seq: dict[int, int] = field(default_factory=dict)
    config: Config = field(default_factory=Config)
    prev_config: Config = field(default_factory=Config)
    waiting_shards: set[int] = field(default_factory=set)
    out_shards: dict[int, dict[int, dict[str, str]]] = field(default_factory=dict)
    last_include_index: int = 0
    initial_clients: set[int] = field(default_factory=set)
    shard_states: dict[int, ShardState] = field(default_factory=dict)
    last_config_time_unix: int = 0
    replay_complete: bool = False


def count_total_keys(shards: Mapping[int, Mapping[str, str]]) -> int:
    """Return the number of keys held across all shards."""
    return sum(len(data) for data in shards.values())


def _copy_shards(shards: Mapping[int, Mapping[str, str]]) -> dict[int, dict[str, str]]:
    return {shard: dict(data) for shard, data in shards.items()}


def _config_to_dict(config: Config) -> dict[str, Any]:
    return {
        "num": config.num,
        "shards": list(config.shards),
        "groups": [[gid, list(servers)] for gid, servers in config.groups.items()],
    }


def _config_from_dict(raw: Mapping[str, Any]) -> Config:
    return Config(
        num=int(raw["num"]),
        shards=[int(g) for g in raw["shards"]],
        groups={int(gid): [str(s) for s in servers] for gid, servers in raw["groups"]},
    )


def _shards_to_list(shards: Mapping[int, Mapping[str, str]]) -> list[Any]:
    return [[shard, dict(data)] for shard, data in shards.items()]


def _shards_from_list(raw: list[Any]) -> dict[int, dict[str, str]]:
    return {
        int(shard): {str(k): str(v) for k, v in data.items()} for shard, data in raw
    }


def encode_snapshot(state: SnapshotState) -> bytes:
    """Serialise a snapshot state to bytes."""
    payload = {
        "data": _shards_to_list(state.data),
        "client_seq": [[cid, seq] for cid, seq in state.client_seq.items()],
        "config": _config_to_dict(state.config),
        "prev_config": _config_to_dict(state.prev_config),
        "waiting_shards": sorted(state.waiting_shards),
        "out_shards": [
            [num, _shards_to_list(shards)] for num, shards in state.out_shards.items()
        ],
        "last_include_index": state.last_include_index,
        "initial_clients": sorted(state.initial_clients),
        "shard_states": [[shard, int(s)] for shard, s in state.shard_states.items()],
        "last_config_time_unix": state.last_config_time_unix,
        "replay_complete": state.replay_complete,
    }
    return json.dumps(payload).encode("utf-8")


def decode_snapshot(data: bytes) -> SnapshotState:
    """Inverse of :func:`encode_snapshot`; raises ValueError on malformed data."""
    try:
        payload = json.loads(data.decode("utf-8"))
        return SnapshotState(
            data=_shards_from_list(payload["data"]),
            client_seq={int(cid): int(seq) for cid, seq in payload["client_seq"]},
            config=_config_from_dict(payload["config"]),
            prev_config=_config_from_dict(payload["prev_config"]),
            waiting_shards={int(s) for s in payload["waiting_shards"]},
            out_shards={
                int(num): _shards_from_list(shards)
                for num, shards in payload["out_shards"]
            },
            last_include_index=int(payload["last_include_index"]),
            initial_clients={int(c) for c in payload["initial_clients"]},
            shard_states={
                int(shard): ShardState(int(s)) for shard, s in payload["shard_states"]
            },
            last_config_time_unix=int(payload["last_config_time_unix"]),
            replay_complete=bool(payload["replay_complete"]),
        )
    except (UnicodeDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ValueError(f"malformed shard snapshot: {exc}") from exc


class ShardStore:
    """Deterministic key/value state of one group, organised by shard.

    ``query(num)`` fetches controller configuration ``num``; it is used to fill
    in intermediate configurations when a configuration change skips ahead.
    """

    def __init__(self, gid: int, query: Callable[[int], Config]) -> None:
        self.gid = gid
        self.query = query
        self.config = Config()
        self.prev_config = Config()
        self.client_seq: dict[int, int] = {}
        self.data: dict[int, dict[str, str]] = {}
        self.waiting_shards: set[int] = set()
        self.out_shards: dict[int, dict[int, dict[str, str]]] = {}
        self.shard_states: dict[int, ShardState] = {
            shard: ShardState.NORMAL for shard in range(NSHARDS)
        }
        self.replay_complete = True
        self.initial_clients: set[int] = set()
        self.last_include_index = 0
        self.last_config_time = time.time()

    def apply(self, op: Op) -> OpResult:
        """Apply one replicated command, filtering duplicate client requests."""
        result = OpResult(client_id=op.client_id, seq_num=op.seq_num)
        try:
            kind = OpKind(op.type)
        except ValueError:
            result.err = Err.WRONG_LEADER
            return result

        is_client_op = kind in _CLIENT_OPS and op.client_id != 0
        if is_client_op and self.is_duplicate(op.client_id, op.seq_num):
            result.err = Err.OK
            if kind is OpKind.GET:
                shard = key2shard(op.key)
                if not self.is_shard_available(shard):
                    result.err = Err.WRONG_GROUP
                elif op.key in self.data.get(shard, {}):
                    result.value = self.data[shard][op.key]
                else:
                    result.err = Err.NO_KEY
            return result

        handlers: dict[OpKind, Callable[[Op], OpResult]] = {
            OpKind.GET: self.apply_get,
            OpKind.PUT: self.apply_put,
            OpKind.APPEND: self.apply_append,
            OpKind.CONFIG: self.apply_config,
            OpKind.TRANSFER: self.apply_transfer,
            OpKind.CLEANUP: self.apply_cleanup,
            OpKind.INSTALL_SHARDS: self.apply_install_shards,
        }
        result = handlers[kind](op)
        if (
            is_client_op
            and kind in (OpKind.PUT, OpKind.APPEND)
            and result.err is Err.OK
        ):
            self.client_seq[op.client_id] = op.seq_num
        return result

    def _writable_shard(self, op: Op) -> tuple[OpResult, int | None]:
        result = OpResult(client_id=op.client_id, seq_num=op.seq_num)
        shard = key2shard(op.key)
        if not self.is_shard_available(shard):
            result.err = Err.WRONG_GROUP
            return result, None
        self.data.setdefault(shard, {})
        return result, shard

    def apply_get(self, op: Op) -> OpResult:
        result, shard = self._writable_shard(op)
        if shard is None:
            return result
        if op.key in self.data[shard]:
            result.value = self.data[shard][op.key]
            result.err = Err.OK
        else:
            result.err = Err.NO_KEY
        return result

    def apply_put(self, op: Op) -> OpResult:
        result, shard = self._writable_shard(op)
        if shard is None:
            return result
        if self.is_duplicate(op.client_id, op.seq_num) and self.replay_complete:
            result.err = Err.OK
            return result
        self.data[shard][op.key] = op.value
        self.client_seq[op.client_id] = op.seq_num
        result.err = Err.OK
        return result

    def apply_append(self, op: Op) -> OpResult:
        result, shard = self._writable_shard(op)
        if shard is None:
            return result
        if self.is_duplicate(op.client_id, op.seq_num) and self.replay_complete:
            result.err = Err.OK
            return result
        self.data[shard][op.key] = self.data[shard].get(op.key, "") + op.value
        self.client_seq[op.client_id] = op.seq_num
        result.err = Err.OK
        return result

    def apply_config(self, op: Op) -> OpResult:
        """Move to a newer configuration, parking outgoing shards and awaiting incoming ones."""
        result = OpResult(client_id=op.client_id, seq_num=op.seq_num, err=Err.OK)
        new = op.config
        if new.num <= self.config.num:
            return result

        if new.num > self.config.num + 1:
            for num in range(self.config.num + 1, new.num):
                mid = self.apply_config(Op(type=OpKind.CONFIG, config=self.query(num)))
                if mid.err is not Err.OK:
                    result.err = mid.err
                    return result

        if self.waiting_shards:
            result.err = Err.WRONG_LEADER
            return result

        old = self.config
        self.prev_config = old

        for shard in range(NSHARDS):
            if old.shards[shard] == self.gid and new.shards[shard] != self.gid:
                self.shard_states[shard] = ShardState.MIGRATING
                outgoing = self.out_shards.setdefault(new.num, {})
                outgoing[shard] = dict(self.data.pop(shard, {}))

        for shard in range(NSHARDS):
            if new.shards[shard] != self.gid:
                continue
            if old.num > 0 and old.shards[shard] == self.gid:
                self.shard_states[shard] = ShardState.NORMAL
            elif old.num == 0 or old.shards[shard] == 0:
                self.data.setdefault(shard, {})
                self.shard_states[shard] = ShardState.NORMAL
            else:
                self.waiting_shards.add(shard)
                self.shard_states[shard] = ShardState.WAITING

        self.config = new.copy()
        self.last_config_time = time.time()
        return result

    def apply_transfer(self, op: Op) -> OpResult:
        """Merge one received shard into the store."""
        result = OpResult(client_id=op.client_id, seq_num=op.seq_num, err=Err.OK)
        if op.config_num != self.config.num:
            result.err = Err.WRONG_GROUP
            return result
        target = self.data.setdefault(op.shard, {})
        target.update(op.shard_data.get(op.shard, {}))
        for cid, seq in op.client_seq.items():
            if seq > self.client_seq.get(cid, seq - 1):
                self.client_seq[cid] = seq
        self.waiting_shards.discard(op.shard)
        return result

    def apply_cleanup(self, op: Op) -> OpResult:
        """Drop a parked outgoing shard once the receiver has it."""
        result = OpResult(client_id=op.client_id, seq_num=op.seq_num, err=Err.OK)
        outgoing = self.out_shards.get(op.config_num)
        if outgoing is None:
            return result
        outgoing.pop(op.shard, None)
        if not outgoing:
            del self.out_shards[op.config_num]
        if self.shard_states.get(op.shard) is ShardState.MIGRATING:
            self.shard_states[op.shard] = ShardState.NORMAL
        return result

    def apply_install_shards(self, op: Op) -> OpResult:
        """Install every awaited shard carried by the command at once."""
        result = OpResult(client_id=op.client_id, seq_num=op.seq_num, err=Err.OK)
        if op.config_num != self.config.num:
            result.err = Err.WRONG_GROUP
            return result

        new_data = {
            shard: dict(op.shard_data.get(shard, {}))
            for shard in op.shards
            if shard in self.waiting_shards
        }
        new_seq = {
            cid: seq
            for cid, seq in op.client_seq.items()
            if cid not in self.client_seq or seq > self.client_seq[cid]
        }

        for shard, data in new_data.items():
            self.data[shard] = data
            self.waiting_shards.discard(shard)
            self.shard_states[shard] = ShardState.NORMAL
        self.client_seq.update(new_seq)
        return result

    def is_shard_available(self, shard: int) -> bool:
        """True if this group owns the shard and can serve it right now."""
        if self.config.shards[shard] != self.gid:
            return False
        if self.shard_states.get(shard) in (ShardState.MIGRATING, ShardState.WAITING):
            return False
        return shard not in self.waiting_shards

    def is_duplicate(self, client_id: int, seq_num: int) -> bool:
        last = self.client_seq.get(client_id)
        return last is not None and seq_num <= last

    def snapshot_state(self) -> SnapshotState:
        """Return a detached copy of everything that belongs in a snapshot."""
        return SnapshotState(
            data=_copy_shards(self.data),
            client_seq=dict(self.client_seq),
            config=self.config.copy(),
            prev_config=self.prev_config.copy(),
            waiting_shards=set(self.waiting_shards),
            out_shards={num: _copy_shards(s) for num, s in self.out_shards.items()},
            last_include_index=self.last_include_index,
            initial_clients=set(self.initial_clients),
            shard_states=dict(self.shard_states),
            last_config_time_unix=int(self.last_config_time),
            replay_complete=self.replay_complete,
        )

    def restore(self, state: SnapshotState) -> None:
        """Replace the store's contents with a snapshot state.

        Missing shard states are rebuilt from the waiting, held and outgoing shards.
        """
        self.data = _copy_shards(state.data)
        self.client_seq = dict(state.client_seq)
        self.config = state.config.copy()
        self.prev_config = state.prev_config.copy()
        self.waiting_shards = set(state.waiting_shards)
        self.out_shards = {num: _copy_shards(s) for num, s in state.out_shards.items()}
        self.last_include_index = state.last_include_index
        self.initial_clients = set(state.initial_clients)
        self.last_config_time = float(state.last_config_time_unix)
        self.replay_complete = state.replay_complete

        if state.shard_states:
            self.shard_states = {s: ShardState(v) for s, v in state.shard_states.items()}
            return
        outgoing = {shard for shards in self.out_shards.values() for shard in shards}
        states: dict[int, ShardState] = {}
        for shard in range(NSHARDS):
            if shard in self.waiting_shards:
                states[shard] = ShardState.WAITING
            elif shard in self.data:
                states[shard] = ShardState.NORMAL
            elif shard in outgoing:
                states[shard] = ShardState.MIGRATING
            else:
                states[shard] = ShardState.NORMAL
        self.shard_states = states