import pytest

from shardplane.ctrler_client import Clerk, new_client_id
from shardplane.ctrler_types import (
    NSHARDS,
    Config,
    JoinReply,
    LeaveReply,
    MoveReply,
    QueryReply,
)


class ScriptedEnd:
    """Endpoint that answers from a list of replies and records each call."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def call(self, method, args):
        self.calls.append((method, args))
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


def test_new_client_id_is_in_range():
    ids = {new_client_id() for _ in range(20)}
    assert all(0 <= cid < (1 << 62) for cid in ids)
    assert len(ids) > 1


def test_clerk_requires_servers():
    with pytest.raises(ValueError):
        Clerk([])


def test_query_skips_lost_and_wrong_leader_and_remembers_leader():
    config = Config(num=4, shards=[1] * NSHARDS, groups={1: ["x"]})
    lost = ScriptedEnd([None])
    follower = ScriptedEnd([QueryReply(wrong_leader=True)])
    leader = ScriptedEnd([QueryReply(config=config)])
    ck = Clerk([lost, follower, leader], retry_interval=0)

    assert ck.query(-1) == config
    assert ck.leader == 2
    assert len(lost.calls) == 1 and len(follower.calls) == 1

    ck.query(-1)
    assert len(lost.calls) == 1
    assert len(leader.calls) == 2


def test_retries_after_a_full_round_fails():
    end = ScriptedEnd([None, None, JoinReply()])
    ck = Clerk([end], retry_interval=0)
    ck.join({1: ["x", "y", "z"]})
    assert len(end.calls) == 3
    assert all(args.seq_num == 0 for _, args in end.calls)


def test_methods_use_controller_rpc_names_and_increasing_sequence():
    replies = {
        "ShardCtrler.Join": JoinReply(),
        "ShardCtrler.Leave": LeaveReply(),
        "ShardCtrler.Move": MoveReply(),
        "ShardCtrler.Query": QueryReply(),
    }
    calls = []

    class End:
        def call(self, method, args):
            calls.append((method, args))
            return replies[method]

    ck = Clerk([End()], retry_interval=0)
    ck.join({1: ["x", "y", "z"]})
    ck.leave([1])
    ck.move(3, 2)
    ck.query(0)

    assert [m for m, _ in calls] == [
        "ShardCtrler.Join",
        "ShardCtrler.Leave",
        "ShardCtrler.Move",
        "ShardCtrler.Query",
    ]
    assert [a.seq_num for _, a in calls] == [0, 1, 2, 3]
    assert {a.client_id for _, a in calls} == {ck.client_id}
    assert calls[0][1].servers == {1: ["x", "y", "z"]}
    assert calls[1][1].gids == [1]
    assert (calls[2][1].shard, calls[2][1].gid) == (3, 2)
    assert calls[3][1].num == 0