"""Replicated shard controller: state machine, rebalancing and RPC handlers."""

from __future__ import annotations

import enum
import json
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from shardplane.ctrler_types import (
    NSHARDS,
    OK,
    Config,
    JoinArgs,
    JoinReply,
    LeaveArgs,
    LeaveReply,
    MoveArgs,
    MoveReply,
    QueryArgs,
    QueryReply,
)

_TIMEOUT = "timeout"
_WAIT_ATTEMPTS = 10


class OpType(str, enum.Enum):
    JOIN = "Join"
    LEAVE = "Leave"
    MOVE = "Move"
    QUERY = "Query"


@dataclass
class Op:
    """A command replicated through the log."""

    type: OpType
    client_id: int = 0
    seq_num: int = 0
    servers: dict[int, list[str]] = field(default_factory=dict)
    gids: list[int] = field(default_factory=list)
    shard: int = 0
    gid: int = 0
    num: int = 0


@dataclass
class ApplyMsg:
    """A committed log entry or an installed snapshot delivered by the log."""

    command_valid: bool = False
    command: Any = None
    command_index: int = 0
    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_index: int = 0


class _Raft(Protocol):
    def start(self, command: Any) -> tuple[int, int, bool]: ...

    def snapshot(self, index: int, data: bytes) -> None: ...

    def kill(self) -> None: ...


def rebalance(shards: list[int], groups: Mapping[int, Any]) -> list[int]:
    """Spread shards evenly over ``groups`` while moving as few as possible.

    Groups are ranked by gid; the lowest gids take the extra shards when the
    count does not divide evenly.
    """
    if not groups:
        return [0] * NSHARDS

    gids = sorted(groups)
    per_group, extra = divmod(NSHARDS, len(gids))

    owned: dict[int, list[int]] = {}
    for shard, gid in enumerate(shards):
        owned.setdefault(gid, []).append(shard)

    orphans = owned.pop(0, [])
    for gid in [g for g in owned if g not in groups]:
        orphans.extend(owned.pop(gid))

    target = {gid: per_group + (1 if rank < extra else 0) for rank, gid in enumerate(gids)}

    for gid in gids:
        held = sorted(owned.get(gid, []))
        orphans.extend(held[target[gid]:])
        owned[gid] = held[: target[gid]]

    orphans.sort()
    for gid in gids:
        need = target[gid] - len(owned[gid])
        if need > 0:
            owned[gid].extend(orphans[:need])
            del orphans[:need]

    assignment = [0] * NSHARDS
    for gid, held in owned.items():
        for shard in held:
            assignment[shard] = gid
    return assignment


def _config_to_dict(config: Config) -> dict[str, Any]:
    return {
        "num": config.num,
        "shards": list(config.shards),
        "groups": [[gid, list(servers)] for gid, servers in config.groups.items()],
    }


def _config_from_dict(raw: dict[str, Any]) -> Config:
    return Config(
        num=int(raw["num"]),
        shards=[int(g) for g in raw["shards"]],
        groups={int(gid): [str(s) for s in servers] for gid, servers in raw["groups"]},
    )


def encode_snapshot(configs: list[Config], client_seq: Mapping[int, int]) -> bytes:
    """Serialise the configuration history and client sequence table."""
    payload = {
        "configs": [_config_to_dict(c) for c in configs],
        "client_seq": [[cid, seq] for cid, seq in client_seq.items()],
    }
    return json.dumps(payload).encode("utf-8")


def decode_snapshot(data: bytes) -> tuple[list[Config], dict[int, int]]:
    """Inverse of :func:`encode_snapshot`; raises ValueError on malformed data."""
    try:
        payload = json.loads(data.decode("utf-8"))
        configs = [_config_from_dict(raw) for raw in payload["configs"]]
        client_seq = {int(cid): int(seq) for cid, seq in payload["client_seq"]}
    except (UnicodeDecodeError, KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"malformed controller snapshot: {exc}") from exc
    return configs, client_seq


class ControllerState:
    """The deterministic state machine behind the controller."""

    def __init__(self) -> None:
        self.configs: list[Config] = [Config()]
        self.client_seq: dict[int, int] = {}

    def latest(self) -> Config:
        """Return a copy of the newest configuration."""
        return self.configs[-1].copy()

    def config(self, num: int) -> Config:
        """Return configuration ``num``; -1 or a number past the end means the latest."""
        if num < -1:
            raise IndexError(f"no configuration numbered {num}")
        if num == -1 or num >= len(self.configs):
            return self.latest()
        result = self.configs[num].copy()
        result.num = num
        return result

    def apply(self, op: Op) -> bool:
        """Apply one operation; return True if it produced a new configuration."""
        last_seq = self.client_seq.get(op.client_id)
        if last_seq is not None and last_seq >= op.seq_num:
            return False
        self.client_seq[op.client_id] = op.seq_num

        if op.type is OpType.JOIN:
            self._join(op.servers)
        elif op.type is OpType.LEAVE:
            self._leave(op.gids)
        elif op.type is OpType.MOVE:
            self._move(op.shard, op.gid)
        else:
            return False
        return True

    def _next_config(self) -> Config:
        last = self.configs[-1]
        return Config(
            num=len(self.configs),
            shards=list(last.shards),
            groups={gid: list(servers) for gid, servers in last.groups.items()},
        )

    def _join(self, servers: Mapping[int, list[str]]) -> None:
        config = self._next_config()
        for gid, names in servers.items():
            config.groups[gid] = list(names)
        config.shards = rebalance(config.shards, config.groups)
        self.configs.append(config)

    def _leave(self, gids: Iterable[int]) -> None:
        config = self._next_config()
        for gid in set(gids):
            config.groups.pop(gid, None)
        config.shards = rebalance(config.shards, config.groups)
        self.configs.append(config)

    def _move(self, shard: int, gid: int) -> None:
        config = self._next_config()
        config.shards[shard] = gid
        self.configs.append(config)

    def snapshot(self) -> bytes:
        return encode_snapshot(self.configs, self.client_seq)

    def restore(self, data: bytes) -> None:
        """Load a snapshot; empty or unreadable data leaves the state as it is."""
        if not data:
            return
        try:
            configs, client_seq = decode_snapshot(data)
        except ValueError:
            return
        self.configs = configs
        self.client_seq = client_seq


class ShardCtrler:
    """One controller replica: RPC handlers on top of a replicated log."""

    def __init__(
        self,
        me: int,
        raft: _Raft,
        snapshot: bytes = b"",
        wait_interval: float = 0.1,
    ) -> None:
        self.me = me
        self.raft = raft
        self.wait_interval = wait_interval
        self.state = ControllerState()
        self.last_applied = 0
        self._lock = threading.Lock()
        self._dead = threading.Event()
        if snapshot:
            self.state.restore(snapshot)

    def _wait_applied(self, index: int) -> bool:
        for _ in range(_WAIT_ATTEMPTS):
            with self._lock:
                if self.last_applied >= index:
                    return True
            time.sleep(self.wait_interval)
        return False

    def _submit_write(self, op: Op) -> tuple[bool, str]:
        index, _, is_leader = self.raft.start(op)
        if not is_leader:
            return True, ""
        for _ in range(_WAIT_ATTEMPTS):
            with self._lock:
                if self.last_applied >= index:
                    last_seq = self.state.client_seq.get(op.client_id)
                    done = last_seq is not None and last_seq >= op.seq_num
                    return False, OK if done else _TIMEOUT
            time.sleep(self.wait_interval)
        return False, _TIMEOUT

    def join(self, args: JoinArgs) -> JoinReply:
        wrong, err = self._submit_write(
            Op(OpType.JOIN, args.client_id, args.seq_num, servers=args.servers)
        )
        return JoinReply(wrong_leader=wrong, err=err)

    def leave(self, args: LeaveArgs) -> LeaveReply:
        wrong, err = self._submit_write(
            Op(OpType.LEAVE, args.client_id, args.seq_num, gids=args.gids)
        )
        return LeaveReply(wrong_leader=wrong, err=err)

    def move(self, args: MoveArgs) -> MoveReply:
        wrong, err = self._submit_write(
            Op(OpType.MOVE, args.client_id, args.seq_num, shard=args.shard, gid=args.gid)
        )
        return MoveReply(wrong_leader=wrong, err=err)

    def query(self, args: QueryArgs) -> QueryReply:
        index, _, is_leader = self.raft.start(
            Op(OpType.QUERY, args.client_id, args.seq_num, num=args.num)
        )
        if not is_leader:
            return QueryReply(wrong_leader=True)
        for _ in range(_WAIT_ATTEMPTS):
            with self._lock:
                if self.last_applied >= index:
                    return QueryReply(err=OK, config=self.state.config(args.num))
            time.sleep(self.wait_interval)
        return QueryReply(err=_TIMEOUT)

    def apply(self, msg: ApplyMsg) -> None:
        """Apply one message delivered by the log."""
        with self._lock:
            if msg.command_valid:
                if msg.command_index <= self.last_applied:
                    return
                self.last_applied = msg.command_index
                if self.state.apply(msg.command):
                    self.raft.snapshot(self.last_applied, self.state.snapshot())
            elif msg.snapshot_valid:
                self.state.restore(msg.snapshot)
                self.last_applied = msg.snapshot_index

    def run_apply_loop(self, messages: Iterable[ApplyMsg]) -> None:
        """Apply messages until the source is exhausted or the replica is killed."""
        for msg in messages:
            if self._dead.is_set():
                break
            self.apply(msg)

    def kill(self) -> None:
        self._dead.set()
        self.raft.kill()