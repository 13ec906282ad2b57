"""Client for the sharded key/value service."""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from typing import Any, Protocol

from shardplane import ctrler_client
from shardplane.ctrler_client import new_client_id
from shardplane.ctrler_types import NSHARDS
from shardplane.kv_types import Err, GetArgs, OpType, PutAppendArgs


class _Endpoint(Protocol):
    def call(self, method: str, args: Any) -> Any:
        """Send an RPC; return the reply, or None if it was lost."""


def key2shard(key: str) -> int:
    """Return the shard a key belongs to: its first byte modulo the shard count."""
    encoded = key.encode("utf-8")
    first = encoded[0] if encoded else 0
    return first % NSHARDS


class Clerk:
    """Routes requests to the group owning each key, refreshing the configuration as needed."""

    def __init__(
        self,
        ctrlers: Sequence[_Endpoint],
        make_end: Callable[[str], _Endpoint],
        retry_interval: float = 0.1,
    ) -> None:
        self.sm = ctrler_client.Clerk(ctrlers, retry_interval)
        self.make_end = make_end
        self.retry_interval = retry_interval
        self.client_id = new_client_id()
        self.seq_num = 0
        self.config = self.sm.query(-1)

    def _next_seq(self) -> int:
        seq = self.seq_num
        self.seq_num += 1
        return seq

    def _send(self, key: str, method: str, args: Any, accepted: tuple[str, ...]) -> Any:
        shard = key2shard(key)
        while True:
            gid = self.config.shards[shard]
            for name in self.config.groups.get(gid, []):
                reply = self.make_end(name).call(method, args)
                if reply is None:
                    continue
                if reply.err in accepted:
                    return reply
                if reply.err == Err.WRONG_GROUP:
                    break
            time.sleep(self.retry_interval)
            self.config = self.sm.query(-1)

    def get(self, key: str) -> str:
        """Fetch the value for ``key``; an absent key yields ''. Retries forever."""
        args = GetArgs(key=key, client_id=self.client_id, seq_num=self._next_seq())
        reply = self._send(key, "ShardKV.Get", args, (Err.OK.value, Err.NO_KEY.value))
        return reply.value

    def put_append(self, key: str, value: str, op: OpType | str) -> None:
        """Send a Put or Append and retry until a group accepts it."""
        op_name = op.value if isinstance(op, OpType) else op
        args = PutAppendArgs(
            key=key,
            value=value,
            op=op_name,
            client_id=self.client_id,
            seq_num=self._next_seq(),
        )
        self._send(key, "ShardKV.PutAppend", args, (Err.OK.value,))

    def put(self, key: str, value: str) -> None:
        self.put_append(key, value, OpType.PUT)

    def append(self, key: str, value: str) -> None:
        self.put_append(key, value, OpType.APPEND)