import pytest

from shardplane.ctrler_types import NSHARDS, Config
from shardplane.kv_types import (
    CleanShardReply,
    CommandArgs,
    CommandReply,
    Err,
    GetArgs,
    GetReply,
    GetShardArgs,
    GetShardReply,
    NotifyConfigArgs,
    OperationContext,
    OpType,
    PutAppendArgs,
    ShardOperationReply,
)


@pytest.mark.parametrize(
    "member, text",
    [
        (Err.OK, "OK"),
        (Err.NO_KEY, "ErrNoKey"),
        (Err.WRONG_GROUP, "ErrWrongGroup"),
        (Err.WRONG_LEADER, "ErrWrongLeader"),
        (Err.OUT_DATED, "ErrOutDated"),
        (Err.TIMEOUT, "ErrTimeout"),
        (Err.WRONG_OPERATION, "ErrWrongOperation"),
    ],
)
def test_err_round_trips_through_its_string(member, text):
    assert member == text
    assert Err(text) is member


def test_unknown_err_string_is_rejected():
    with pytest.raises(ValueError):
        Err("NotAnError")


def test_op_type_lookup_by_value():
    assert OpType("Append") is OpType.APPEND
    assert OpType("Get") == "Get"
    with pytest.raises(ValueError):
        OpType("Delete")


def test_reply_with_err_compares_to_plain_string():
    reply = GetReply(err=Err.NO_KEY)
    assert reply.err == "ErrNoKey"
    assert reply.value == ""


def test_mutable_defaults_are_not_shared():
    first = GetShardReply()
    second = GetShardReply()
    first.shard_data["k"] = "v"
    first.client_seq[1] = 2
    assert second.shard_data == {}
    assert second.client_seq == {}

    a = GetShardArgs()
    a.request_history.append(3)
    assert GetShardArgs().request_history == []


def test_put_append_defaults_to_put():
    args = PutAppendArgs(key="k", value="v")
    assert args.op == "Put"
    assert args.seq_num == 0


def test_notify_config_args_default_config_has_no_owners():
    args = NotifyConfigArgs()
    assert args.config.shards == [0] * NSHARDS
    assert args.config.groups == {}
    other = NotifyConfigArgs()
    args.config.shards[0] = 5
    assert other.config.shards[0] == 0


def test_operation_context_holds_last_reply():
    reply = CommandReply(err=Err.OK, value="x")
    ctx = OperationContext(max_applied_command_id=7, last_reply=reply)
    reply_holder = ShardOperationReply(last_operations={1: ctx})
    assert reply_holder.last_operations[1].last_reply.value == "x"
    assert OperationContext().last_reply is None


def test_command_args_and_simple_replies():
    args = CommandArgs(key="k", op=OpType.APPEND, client_id=4, command_id=9)
    assert args.op == "Append"
    assert args.command_id == 9
    assert CleanShardReply(err=Err.OK).err == "OK"
    assert GetArgs(key="z").key == "z"


def test_notify_config_carries_given_config():
    config = Config(num=3, shards=[101] * NSHARDS, groups={101: ["s"]})
    args = NotifyConfigArgs(config_num=3, config=config)
    assert args.config.groups == {101: ["s"]}
    assert args.config_num == args.config.num