"""One replica of a shard key/value group: RPC handlers and log application."""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

from shardplane.ctrler_server import ApplyMsg
from shardplane.ctrler_types import NSHARDS, Config
from shardplane.kv_client import key2shard
from shardplane.kv_state import (
    Op,
    OpKind,
    OpResult,
    ShardState,
    ShardStore,
    decode_snapshot,
    encode_snapshot,
)
from shardplane.kv_types import (
    CleanShardArgs,
    CleanShardReply,
    Err,
    GetArgs,
    GetReply,
    GetShardArgs,
    GetShardReply,
    NotifyConfigArgs,
    NotifyConfigReply,
    PutAppendArgs,
    PutAppendReply,
)


class _Raft(Protocol):
    def start(self, command: Any) -> tuple[int, int, bool]: ...

    def get_state(self) -> tuple[int, bool]: ...

    def snapshot(self, index: int, data: bytes) -> None: ...

    def kill(self) -> None: ...


class _Persister(Protocol):
    def read_snapshot(self) -> bytes: ...

    def raft_state_size(self) -> int: ...


class _CtrlerClerk(Protocol):
    def query(self, num: int) -> Config: ...


class _Endpoint(Protocol):
    def call(self, method: str, args: Any) -> Any: ...


class ShardKV:
    """A key/value replica serving the shards its group owns.

    After construction, ``needs_log_replay`` tells whether the log must be
    replayed from ``replay_start_index`` before the replica is fully ready;
    ``replay_done`` is set once replay has finished.
    """

    reply_timeout = 0.5
    clean_timeout = 0.3
    replay_wait = 0.1
    notify_interval = 0.1

    def __init__(
        self,
        me: int,
        gid: int,
        raft: _Raft,
        persister: _Persister,
        maxraftstate: int,
        ctrler_clerk: _CtrlerClerk,
        make_end: Callable[[str], _Endpoint],
    ) -> None:
        self.me = me
        self.gid = gid
        self.raft = raft
        self.persister = persister
        self.maxraftstate = maxraftstate
        self.mck = ctrler_clerk
        self.make_end = make_end
        self.store = ShardStore(gid, ctrler_clerk.query)
        self.lock = threading.Lock()
        self.last_applied = 0
        self.replay_done = threading.Event()
        self.needs_log_replay = False
        self.replay_start_index = 0
        self._dead = threading.Event()
        self._notify: dict[int, queue.Queue[OpResult]] = {}
        self._load_persisted()

    def _load_persisted(self) -> None:
        snapshot = self.persister.read_snapshot()
        if snapshot:
            try:
                state = decode_snapshot(snapshot)
            except ValueError:
                state = None
            if state is not None:
                self.store.restore(state)
                self.last_applied = state.last_include_index
                self.store.replay_complete = False
                self.needs_log_replay = True
                self.replay_start_index = state.last_include_index + 1
                return
        if self.persister.raft_state_size() > 0:
            self.store.replay_complete = False
            self.needs_log_replay = True
            self.replay_start_index = 1
            return
        self.store.replay_complete = True
        self.replay_done.set()

    def _is_leader(self) -> bool:
        _, is_leader = self.raft.get_state()
        return is_leader

    def _await(self, index: int, timeout: float) -> OpResult | None:
        with self.lock:
            channel = self._notify.setdefault(index, queue.Queue(maxsize=1))
        try:
            return channel.get(timeout=timeout)
        except queue.Empty:
            return None
        finally:
            with self.lock:
                self._notify.pop(index, None)

    def _precheck(self, shard: int, client_id: int) -> Err | None:
        """Return an error if the request cannot be served here; caller holds the lock."""
        if not self._is_leader():
            return Err.WRONG_LEADER
        if not self.store.is_shard_available(shard):
            return Err.WRONG_GROUP
        return None

    def get(self, args: GetArgs) -> GetReply:
        """Serve a Get request through the log."""
        shard = key2shard(args.key)
        with self.lock:
            err = self._precheck(shard, args.client_id)
            if err is not None:
                return GetReply(err=err)
            self.store.data.setdefault(shard, {})
            if (
                not self.store.replay_complete
                and args.client_id not in self.store.initial_clients
            ):
                return GetReply(err=Err.WRONG_LEADER)
            if self.store.is_duplicate(args.client_id, args.seq_num):
                shard_data = self.store.data[shard]
                if args.key in shard_data:
                    return GetReply(err=Err.OK, value=shard_data[args.key])
                return GetReply(err=Err.NO_KEY)

        op = Op(
            type=OpKind.GET,
            key=args.key,
            client_id=args.client_id,
            seq_num=args.seq_num,
        )
        index, _, is_leader = self.raft.start(op)
        if not is_leader:
            return GetReply(err=Err.WRONG_LEADER)
        result = self._await(index, self.reply_timeout)
        if (
            result is None
            or result.client_id != args.client_id
            or result.seq_num != args.seq_num
        ):
            return GetReply(err=Err.WRONG_LEADER)
        return GetReply(err=result.err, value=result.value)

    def put_append(self, args: PutAppendArgs) -> PutAppendReply:
        """Serve a Put or Append request through the log."""
        shard = key2shard(args.key)
        with self.lock:
            err = self._precheck(shard, args.client_id)
            if err is not None:
                return PutAppendReply(err=err)
            if (
                not self.store.replay_complete
                and args.client_id not in self.store.initial_clients
            ):
                return PutAppendReply(err=Err.WRONG_LEADER)
            if self.store.is_duplicate(args.client_id, args.seq_num):
                return PutAppendReply(err=Err.OK)

        op = Op(
            type=args.op,
            key=args.key,
            value=args.value,
            client_id=args.client_id,
            seq_num=args.seq_num,
        )
        index, _, is_leader = self.raft.start(op)
        if not is_leader:
            return PutAppendReply(err=Err.WRONG_LEADER)
        result = self._await(index, self.reply_timeout)
        if (
            result is None
            or result.client_id != args.client_id
            or result.seq_num != args.seq_num
        ):
            return PutAppendReply(err=Err.WRONG_LEADER)
        return PutAppendReply(err=result.err)

    def _shard_reply(self, data: Mapping[str, str]) -> GetShardReply:
        return GetShardReply(
            err=Err.OK,
            shard_data=dict(data),
            client_seq=dict(self.store.client_seq),
        )

    def get_shard(self, args: GetShardArgs) -> GetShardReply:
        """Hand a shard's data to another group that is pulling it."""
        if not self._is_leader():
            return GetShardReply(err=Err.WRONG_LEADER)
        if not self.store.replay_complete and not self.replay_done.wait(self.replay_wait):
            return GetShardReply(err=Err.WRONG_LEADER)

        with self.lock:
            store = self.store
            for num in (args.config_num, args.config_num - 1):
                parked = store.out_shards.get(num, {})
                if args.shard in parked:
                    return self._shard_reply(parked[args.shard])

            if args.config_num < store.config.num and args.shard in store.data:
                return self._shard_reply(store.data[args.shard])

            if (
                args.config_num > store.config.num
                and store.config.shards[args.shard] == self.gid
                and args.shard in store.data
            ):
                shard_copy = dict(store.data[args.shard])
                store.shard_states[args.shard] = ShardState.MIGRATING
                store.out_shards.setdefault(args.config_num, {})[args.shard] = shard_copy
                return self._shard_reply(shard_copy)

            return GetShardReply(err=Err.WRONG_GROUP)

    def clean_shard(self, args: CleanShardArgs) -> CleanShardReply:
        """Replicate the removal of a parked outgoing shard."""
        if not self._is_leader():
            return CleanShardReply(err=Err.WRONG_LEADER)
        op = Op(type=OpKind.CLEANUP, config_num=args.config_num, shard=args.shard)
        index, _, is_leader = self.raft.start(op)
        if not is_leader:
            return CleanShardReply(err=Err.WRONG_LEADER)
        result = self._await(index, self.clean_timeout)
        if result is None:
            return CleanShardReply(err=Err.WRONG_LEADER)
        return CleanShardReply(err=result.err)

    def _catch_up(self, target: int) -> None:
        with self.lock:
            first = self.store.config.num + 1
        for num in range(first, target + 1):
            config = self.mck.query(num)
            if config.num == num:
                self.raft.start(Op(type=OpKind.CONFIG, config=config))
                time.sleep(self.notify_interval)

    def notify_config_update(self, args: NotifyConfigArgs) -> NotifyConfigReply:
        """React to another group announcing a newer configuration."""
        if not self._is_leader():
            return NotifyConfigReply(err=Err.WRONG_LEADER)
        with self.lock:
            current = self.store.config.num
        if args.config_num <= current:
            return NotifyConfigReply(err=Err.OK)
        if args.config_num > current + 1:
            worker = threading.Thread(
                target=self._catch_up, args=(args.config_num,), daemon=True
            )
            worker.start()
            return NotifyConfigReply(err=Err.OK)
        _, _, is_leader = self.raft.start(Op(type=OpKind.CONFIG, config=args.config))
        if not is_leader:
            return NotifyConfigReply(err=Err.WRONG_LEADER)
        return NotifyConfigReply(err=Err.OK)

    def _finish_replay(self) -> None:
        store = self.store
        for shard in range(NSHARDS):
            if store.config.shards[shard] == self.gid:
                store.data.setdefault(shard, {})
        store.replay_complete = True
        self.replay_done.set()

    def _maybe_snapshot(self, index: int) -> None:
        if self.maxraftstate == -1:
            return
        if self.persister.raft_state_size() < self.maxraftstate:
            return
        data = encode_snapshot(self.store.snapshot_state())
        self.raft.snapshot(index, data)
        self.store.last_include_index = index

    def apply(self, msg: ApplyMsg) -> None:
        """Apply one message delivered by the log."""
        with self.lock:
            if msg.command_valid:
                self._apply_command(msg)
            elif msg.snapshot_valid:
                self._install_snapshot(msg)

    def _apply_command(self, msg: ApplyMsg) -> None:
        store = self.store
        index = msg.command_index
        op: Op = msg.command
        if not store.replay_complete and op.client_id != 0:
            store.initial_clients.add(op.client_id)
        if index <= self.last_applied:
            return

        result = store.apply(op)
        self.last_applied = index

        if not store.replay_complete and index > store.last_include_index:
            self._finish_replay()

        if self._is_leader():
            channel = self._notify.get(index)
            if channel is not None:
                try:
                    channel.put_nowait(result)
                except queue.Full:
                    pass

        self._maybe_snapshot(index)

    def _install_snapshot(self, msg: ApplyMsg) -> None:
        if self.last_applied >= msg.snapshot_index or not msg.snapshot:
            return
        try:
            state = decode_snapshot(msg.snapshot)
        except ValueError:
            return
        self.store.restore(state)
        self.last_applied = state.last_include_index
        if self.store.replay_complete:
            self.replay_done.set()

    def run_apply_loop(self, messages: Iterable[ApplyMsg]) -> None:
        """Apply messages until the source is exhausted or the replica is killed."""
        for msg in messages:
            if self.killed():
                break
            self.apply(msg)

    def kill(self) -> None:
        self._dead.set()
        self.raft.kill()

    def killed(self) -> bool:
        return self._dead.is_set()