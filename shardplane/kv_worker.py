"""Background work of a shard key/value replica: reconfiguration and shard pulling."""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from shardplane.ctrler_server import ApplyMsg
from shardplane.ctrler_types import Config
from shardplane.kv_server import ShardKV
from shardplane.kv_state import Op, OpKind
from shardplane.kv_types import Err, GetShardArgs, GetShardReply, NotifyConfigArgs

_REPLAY_DELAY = 1.0
_REPLAY_JITTER_MS = 50


class _Raft(Protocol):
    def start(self, command: Any) -> tuple[int, int, bool]: ...

    def get_state(self) -> tuple[int, bool]: ...

    def snapshot(self, index: int, data: bytes) -> None: ...

    def kill(self) -> None: ...

    def apply_messages(self) -> Iterable[ApplyMsg]: ...

    def request_log_replay(self, start: int, end: int) -> None: ...


class _Persister(Protocol):
    def read_snapshot(self) -> bytes: ...

    def raft_state_size(self) -> int: ...


class _CtrlerClerk(Protocol):
    def query(self, num: int) -> Config: ...


class _Endpoint(Protocol):
    def call(self, method: str, args: Any) -> Any: ...


class BackgroundWorkers:
    """The periodic tasks a leader replica runs besides serving requests."""

    idle_interval = 0.1
    pull_interval = 0.2
    config_interval = 0.1
    apply_grace = 0.05
    replay_wait = 0.1
    validate_idle = 1.0
    validate_interval = 5.0
    waiting_stuck_after = 20.0
    config_stuck_after = 30.0
    max_lookback = 3

    def __init__(self, kv: ShardKV) -> None:
        self.kv = kv

    def _is_leader(self) -> bool:
        _, is_leader = self.kv.raft.get_state()
        return is_leader

    def _replay_ready(self, timeout: float) -> bool:
        return self.kv.store.replay_complete or self.kv.replay_done.wait(timeout)

    def find_potential_owners(self, shard: int, config_num: int) -> dict[int, list[str]]:
        """Return the groups that may still hold ``shard``, mapped to their servers."""
        kv = self.kv
        with kv.lock:
            current_num = kv.store.config.num
            prev = kv.store.prev_config.copy()

        owners: dict[int, list[str]] = {}
        if config_num <= current_num and prev.num > 0:
            prev_owner = prev.shards[shard]
            if prev_owner != 0 and prev_owner in prev.groups:
                owners[prev_owner] = list(prev.groups[prev_owner])

        checked = {prev.num} if prev.num > 0 else set()
        num = config_num
        for _ in range(self.max_lookback):
            if num <= 0:
                break
            if num not in checked:
                config = kv.mck.query(num)
                if config.num == num:
                    checked.add(num)
                    owner = config.shards[shard]
                    if (
                        owner not in (0, kv.gid)
                        and owner in config.groups
                        and owner not in owners
                    ):
                        owners[owner] = list(config.groups[owner])
            num -= 1
        return owners

    def _fetch(
        self, shard: int, config_num: int, owners: dict[int, list[str]]
    ) -> GetShardReply | None:
        for servers in owners.values():
            for name in servers:
                args = GetShardArgs(config_num=config_num, shard=shard)
                reply = self.kv.make_end(name).call("ShardKV.GetShard", args)
                if reply is not None and reply.err == Err.OK:
                    return reply
        return None

    def pull_shards_once(self) -> list[int]:
        """Fetch awaited shards from their previous owners and replicate their installation.

        Returns the shards submitted for installation.
        """
        kv = self.kv
        if not self._is_leader() or not self._replay_ready(self.replay_wait):
            return []
        with kv.lock:
            waiting = sorted(kv.store.waiting_shards)
            config_num = kv.store.config.num
        if not waiting:
            return []

        owners = {shard: self.find_potential_owners(shard, config_num) for shard in waiting}
        fetched: dict[int, dict[str, str]] = {}
        merged_seq: dict[int, int] = {}
        for shard in waiting:
            reply = self._fetch(shard, config_num, owners[shard])
            if reply is None:
                continue
            fetched[shard] = dict(reply.shard_data)
            for cid, seq in reply.client_seq.items():
                if cid not in merged_seq or seq > merged_seq[cid]:
                    merged_seq[cid] = seq

        if not fetched:
            return []
        with kv.lock:
            to_install = [s for s in fetched if s in kv.store.waiting_shards]
        if not to_install:
            return []
        kv.raft.start(
            Op(
                type=OpKind.INSTALL_SHARDS,
                shards=to_install,
                shard_data=fetched,
                client_seq=merged_seq,
                config_num=config_num,
            )
        )
        return to_install

    def configuration_step(self) -> Config | None:
        """Submit the next configuration if no migration is pending; return it if submitted."""
        kv = self.kv
        if not self._is_leader() or not self._replay_ready(self.replay_wait):
            return None
        with kv.lock:
            pending = kv.store.waiting_shards or any(kv.store.out_shards.values())
            current_num = kv.store.config.num
        if pending:
            return None

        next_config = kv.mck.query(current_num + 1)
        if next_config.num != current_num + 1:
            return None
        _, _, is_leader = kv.raft.start(Op(type=OpKind.CONFIG, config=next_config))
        if not is_leader:
            return None

        time.sleep(self.apply_grace)
        if self._is_leader():
            with kv.lock:
                applied = kv.store.config.num == next_config.num
                current = kv.store.config.copy()
            if applied:
                self.broadcast_config(current)
        return next_config

    def validate_config_once(self) -> Config | None:
        """Submit the latest configuration if the replica looks stuck; return it if submitted."""
        kv = self.kv
        if not self._is_leader() or not self._replay_ready(self.validate_idle):
            return None
        with kv.lock:
            current_num = kv.store.config.num
            waiting = len(kv.store.waiting_shards)
            config_time = kv.store.last_config_time

        now = time.time()
        stuck_waiting = waiting > 0 and config_time + self.waiting_stuck_after < now
        config_stuck = config_time + self.config_stuck_after < now
        if not (stuck_waiting or config_stuck):
            return None

        latest = kv.mck.query(-1)
        if latest.num <= current_num:
            return None
        kv.raft.start(Op(type=OpKind.CONFIG, config=latest))
        return latest

    def broadcast_config(self, config: Config) -> list[threading.Thread]:
        """Tell every other group about ``config``; one acknowledgement per group suffices."""
        threads = []
        for gid, servers in config.groups.items():
            if gid == self.kv.gid:
                continue
            thread = threading.Thread(
                target=self._notify_group, args=(config, list(servers)), daemon=True
            )
            thread.start()
            threads.append(thread)
        return threads

    def _notify_group(self, config: Config, servers: list[str]) -> None:
        for name in servers:
            args = NotifyConfigArgs(config_num=config.num, config=config)
            reply = self.kv.make_end(name).call("ShardKV.NotifyConfigUpdate", args)
            if reply is not None and reply.err == Err.OK:
                return

    def _pull_loop(self) -> None:
        while not self.kv.killed():
            if not self._is_leader():
                time.sleep(self.idle_interval)
                continue
            self.pull_shards_once()
            time.sleep(self.pull_interval)

    def _config_loop(self) -> None:
        while not self.kv.killed():
            if not self._is_leader():
                time.sleep(self.idle_interval)
                continue
            self.configuration_step()
            time.sleep(self.config_interval)

    def _validate_loop(self) -> None:
        while not self.kv.killed():
            if not self._is_leader():
                time.sleep(self.validate_idle)
                continue
            self.validate_config_once()
            time.sleep(self.validate_interval)

    def start(self) -> list[threading.Thread]:
        """Start the background loops as daemon threads; they stop once the replica is killed."""
        threads = [
            threading.Thread(target=loop, daemon=True)
            for loop in (self._config_loop, self._pull_loop, self._validate_loop)
        ]
        for thread in threads:
            thread.start()
        return threads


def start_server(
    me: int,
    gid: int,
    raft: _Raft,
    persister: _Persister,
    maxraftstate: int,
    ctrler_clerk: _CtrlerClerk,
    make_end: Callable[[str], _Endpoint],
) -> BackgroundWorkers:
    """Create a replica, start applying ``raft.apply_messages()`` and the background loops.

    Returns the running workers; the replica itself is their ``kv`` attribute.
    """
    kv = ShardKV(me, gid, raft, persister, maxraftstate, ctrler_clerk, make_end)
    workers = BackgroundWorkers(kv)

    applier = threading.Thread(
        target=kv.run_apply_loop, args=(raft.apply_messages(),), daemon=True
    )
    applier.start()
    workers.start()

    if kv.needs_log_replay:
        start_index = kv.replay_start_index

        def _request_replay() -> None:
            time.sleep(_REPLAY_DELAY + random.randrange(_REPLAY_JITTER_MS) / 1000)
            raft.request_log_replay(start_index, -1)

        threading.Thread(target=_request_replay, daemon=True).start()
    return workers