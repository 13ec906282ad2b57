import queue
import threading
import time

import pytest

from shardplane.ctrler_server import ApplyMsg
from shardplane.ctrler_types import Config
from shardplane.kv_server import ShardKV
from shardplane.kv_state import Op, OpKind
from shardplane.kv_types import Err, GetShardReply, NotifyConfigReply
from shardplane.kv_worker import BackgroundWorkers, start_server

C0 = Config()
C1 = Config(num=1, shards=[100] * 10, groups={100: ["s100"]})
C2 = Config(
    num=2, shards=[101] * 5 + [100] * 5, groups={100: ["s100"], 101: ["s101"]}
)


class FakeRaft:
    def __init__(self, leader=True):
        self.leader = leader
        self.started = []
        self.on_start = None
        self.replay_requests = []
        self.messages = queue.Queue()

    def start(self, command):
        if not self.leader:
            return 0, 0, False
        self.started.append(command)
        index = len(self.started)
        if self.on_start is not None:
            self.on_start(command, index)
        return index, 1, True

    def get_state(self):
        return 1, self.leader

    def snapshot(self, index, data):
        pass

    def kill(self):
        self.messages.put(None)

    def request_log_replay(self, start, end):
        self.replay_requests.append((start, end))

    def apply_messages(self):
        while True:
            msg = self.messages.get()
            if msg is None:
                return
            yield msg


class FakePersister:
    def __init__(self, size=0):
        self.size = size

    def read_snapshot(self):
        return b""

    def raft_state_size(self):
        return self.size


class FakeCtrler:
    def __init__(self, configs):
        self.configs = configs

    def query(self, num):
        if num == -1 or num >= len(self.configs):
            return self.configs[-1].copy()
        return self.configs[num].copy()


class FuncEnd:
    def __init__(self, fn):
        self.fn = fn

    def call(self, method, args):
        return self.fn(method, args)


def make_workers(gid, configs, leader=True, ends=None):
    raft = FakeRaft(leader)
    ends = ends or {}
    kv = ShardKV(0, gid, raft, FakePersister(), -1, FakeCtrler(configs), lambda n: ends[n])
    workers = BackgroundWorkers(kv)
    workers.apply_grace = 0
    return workers, raft


def apply_configs(workers, *configs):
    for cfg in configs:
        workers.kv.store.apply(Op(type=OpKind.CONFIG, config=cfg))


def test_find_potential_owners_uses_previous_config():
    workers, _ = make_workers(101, [C0, C1, C2])
    apply_configs(workers, C1, C2)
    assert workers.find_potential_owners(0, 2) == {100: ["s100"]}


def test_find_potential_owners_looks_back_through_history():
    workers, _ = make_workers(102, [C0, C1, C2])
    owners = workers.find_potential_owners(0, 2)
    assert owners == {101: ["s101"], 100: ["s100"]}


def test_pull_shards_installs_fetched_data():
    calls = []

    def serve(method, args):
        calls.append(method)
        return GetShardReply(
            err=Err.OK, shard_data={f"key{args.shard}": "val"}, client_seq={7: 3}
        )

    workers, raft = make_workers(101, [C0, C1, C2], ends={"s100": FuncEnd(serve)})
    apply_configs(workers, C1, C2)
    assert workers.kv.store.waiting_shards == {0, 1, 2, 3, 4}

    installed = workers.pull_shards_once()
    assert installed == [0, 1, 2, 3, 4]
    assert set(calls) == {"ShardKV.GetShard"}
    op = raft.started[-1]
    assert op.type is OpKind.INSTALL_SHARDS
    assert op.config_num == 2
    assert op.client_seq == {7: 3}

    workers.kv.store.apply(op)
    assert workers.kv.store.waiting_shards == set()
    assert workers.kv.store.data[3] == {"key3": "val"}
    assert workers.kv.store.client_seq[7] == 3


def test_pull_shards_submits_nothing_when_owner_unreachable():
    workers, raft = make_workers(
        101, [C0, C1, C2], ends={"s100": FuncEnd(lambda m, a: None)}
    )
    apply_configs(workers, C1, C2)
    assert workers.pull_shards_once() == []
    assert raft.started == []


def test_pull_shards_idle_when_not_leader():
    workers, raft = make_workers(101, [C0, C1, C2], leader=False)
    apply_configs(workers, C1, C2)
    assert workers.pull_shards_once() == []
    assert raft.started == []


def test_configuration_step_applies_and_broadcasts():
    config1 = Config(num=1, shards=[100] * 10, groups={100: ["s100"], 101: ["s101"]})
    notified = threading.Event()
    received = []

    def on_notify(method, args):
        received.append((method, args.config_num))
        notified.set()
        return NotifyConfigReply(err=Err.OK)

    workers, raft = make_workers(100, [C0, config1], ends={"s101": FuncEnd(on_notify)})
    kv = workers.kv
    raft.on_start = lambda op, index: kv.apply(
        ApplyMsg(command_valid=True, command=op, command_index=index)
    )

    submitted = workers.configuration_step()
    assert submitted.num == 1
    assert kv.store.config.num == 1
    assert notified.wait(2)
    assert received == [("ShardKV.NotifyConfigUpdate", 1)]


def test_configuration_step_waits_for_pending_migration():
    workers, raft = make_workers(101, [C0, C1, C2, C2])
    apply_configs(workers, C1, C2)
    assert workers.configuration_step() is None
    assert raft.started == []


def test_configuration_step_without_newer_config():
    workers, raft = make_workers(100, [C0])
    assert workers.configuration_step() is None
    assert raft.started == []


def test_validate_submits_latest_when_stale():
    workers, raft = make_workers(100, [C0, C1])
    workers.kv.store.last_config_time = time.time() - 31
    latest = workers.validate_config_once()
    assert latest.num == 1
    assert raft.started[0].type is OpKind.CONFIG
    assert raft.started[0].config.num == 1


def test_validate_does_nothing_when_recent():
    workers, raft = make_workers(100, [C0, C1])
    workers.kv.store.last_config_time = time.time()
    assert workers.validate_config_once() is None
    assert raft.started == []


@pytest.mark.parametrize(
    "first_err, expected_calls",
    [(Err.OK, ["a"]), (Err.WRONG_LEADER, ["a", "b"])],
)
def test_broadcast_stops_after_first_acknowledgement(first_err, expected_calls):
    calls = []

    def end(name, err):
        def fn(method, args):
            calls.append(name)
            return NotifyConfigReply(err=err)

        return FuncEnd(fn)

    ends = {"own": end("own", Err.OK), "a": end("a", first_err), "b": end("b", Err.OK)}
    workers, _ = make_workers(100, [C0], ends=ends)
    config = Config(num=3, shards=[100] * 10, groups={100: ["own"], 101: ["a", "b"]})
    threads = workers.broadcast_config(config)
    for thread in threads:
        thread.join(2)
    assert len(threads) == 1
    assert calls == expected_calls


def _wait_for(predicate, timeout):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_start_server_applies_log_messages():
    raft = FakeRaft(leader=False)
    workers = start_server(0, 100, raft, FakePersister(), -1, FakeCtrler([C0, C1]), lambda n: None)
    raft.messages.put(
        ApplyMsg(command_valid=True, command=Op(type=OpKind.CONFIG, config=C1), command_index=1)
    )
    assert _wait_for(lambda: workers.kv.store.config.num == 1, 2)
    workers.kv.kill()
    assert workers.kv.killed()


def test_start_server_requests_replay_when_state_exists():
    raft = FakeRaft(leader=False)
    workers = start_server(0, 100, raft, FakePersister(size=10), -1, FakeCtrler([C0]), lambda n: None)
    assert workers.kv.needs_log_replay
    assert _wait_for(lambda: raft.replay_requests == [(1, -1)], 3)
    workers.kv.kill()