# shardplane

A sharded key/value service in two parts:

* a **shard controller** that keeps a numbered history of configurations,
  each assigning the ten shards (`ctrler_types.NSHARDS`) to replica groups,
  and rebalances shards with minimal movement when groups join or leave;
* a **sharded key/value store** whose replica groups follow the controller's
  configurations, serve `Get`, `Put` and `Append` for the shards they own,
  and pull shard data from one another when ownership changes.

Both parts run on top of a replicated log and RPC ends that you supply.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Shard controller

`shardplane.ctrler_server` holds the state machine:

```python
from shardplane.ctrler_server import ControllerState, Op, OpType

state = ControllerState()
state.apply(Op(type=OpType.JOIN, client_id=1, seq_num=0,
               servers={1: ["x", "y", "z"]}))
state.apply(Op(type=OpType.JOIN, client_id=1, seq_num=1,
               servers={2: ["a", "b", "c"]}))
print(state.latest().shards)   # [1, 1, 1, 1, 1, 2, 2, 2, 2, 2]
print(state.config(1).num)     # 1: earlier configurations stay queryable
```

`ControllerState.apply` ignores an operation whose `seq_num` is not newer
than the last one seen from the same `client_id`, and returns `True` when a
join, leave or move produced a new configuration. `config(-1)` or a number
past the end returns the latest configuration.

`rebalance(shards, groups)` is the assignment rule on its own: groups are
taken in ascending gid order, the first `NSHARDS % len(groups)` of them get
one extra shard, surplus shards are released highest-first, and orphaned
shards (on gid 0 or on a group that left) are handed out lowest-first. With
no groups left, every shard goes to gid 0.

`encode_snapshot` / `decode_snapshot` turn the configuration history and
client sequence table into JSON bytes and back.

`ShardCtrler` wraps the state machine behind the RPC handlers `join`,
`leave`, `move` and `query`. Each handler submits an `Op` to the log and
polls up to ten times for it to be applied, replying `wrong_leader=True`
when the log says this replica is not the leader and `err="timeout"` when
the wait runs out. `apply(msg)` applies one `ApplyMsg`; after every new
configuration the replica hands a snapshot to the log.

`ctrler_client.Clerk(servers)` calls those handlers across the controller
replicas, starting from the last known leader and retrying forever:

```python
from shardplane.ctrler_client import Clerk

clerk = Clerk(endpoints)          # each endpoint has call(method, args)
clerk.join({1: ["x", "y", "z"]})
config = clerk.query(-1)
```

## Key/value groups

* `kv_client.key2shard(key)` maps a key to its shard: the first byte of the
  key modulo `NSHARDS`, with the empty key on shard 0.
* `kv_client.Clerk(ctrlers, make_end)` asks the controller for the latest
  configuration and sends `get`, `put` and `append` to the servers of the
  owning group, refreshing the configuration after `ErrWrongGroup` or when
  no server answered. `get` returns `""` for an absent key.
* `kv_state.ShardStore` is the replicated state machine of one group:
  client operations with duplicate detection, configuration changes that
  park outgoing shards in `out_shards` and mark incoming ones as waiting,
  shard installation and cleanup, and `snapshot_state` / `restore`.
  `kv_state.encode_snapshot` / `decode_snapshot` serialise a
  `SnapshotState` as JSON bytes.
* `kv_server.ShardKV` serves the RPCs of one replica (`get`, `put_append`,
  `get_shard`, `clean_shard`, `notify_config_update`) and applies messages
  from the log with `apply` or `run_apply_loop`. When `maxraftstate` is not
  -1 and the log's persisted state reaches that size, it snapshots.
* `kv_worker.start_server(me, gid, raft, persister, maxraftstate,
  ctrler_clerk, make_end)` builds a `ShardKV`, applies
  `raft.apply_messages()` in a thread and starts the `BackgroundWorkers`
  loops: polling the controller for the next configuration, pulling awaited
  shards from their previous owners, and resubmitting the latest
  configuration when the replica looks stuck. It returns the workers; the
  replica is their `kv` attribute.

## What you supply

The package contains no consensus log, no network transport and no
storage of its own, and has no command-line tool. You provide:

* a **log** object with `start(command) -> (index, term, is_leader)`,
  `get_state() -> (term, is_leader)`, `snapshot(index, data)` and `kill()`;
  for `start_server` also `apply_messages()`, yielding `ApplyMsg` objects,
  and `request_log_replay(start, end)`; the controller replica needs only
  `start`, `snapshot` and `kill`;
* a **persister** with `read_snapshot()` and `raft_state_size()`;
* **RPC ends**: objects with `call(method, args)` returning the reply, or
  `None` when the call was lost, and a `make_end(name)` function that turns
  a server name from a configuration into such an end.