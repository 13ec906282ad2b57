"""Client for the replicated shard controller service."""

from __future__ import annotations

import secrets
import time
from collections.abc import Sequence
from typing import Any, Protocol

from shardplane.ctrler_types import (
    Config,
    JoinArgs,
    LeaveArgs,
    MoveArgs,
    QueryArgs,
)


class _Endpoint(Protocol):
    def call(self, method: str, args: Any) -> Any:
        """Send an RPC; return the reply, or None if it was lost."""


def new_client_id() -> int:
    """Return a random client identifier in [0, 2**62)."""
    return secrets.randbelow(1 << 62)


class Clerk:
    """Talks to the controller replicas, retrying until a leader answers."""

    def __init__(self, servers: Sequence[_Endpoint], retry_interval: float = 0.1) -> None:
        if not servers:
            raise ValueError("a clerk needs at least one controller server")
        self.servers = list(servers)
        self.retry_interval = retry_interval
        self.client_id = new_client_id()
        self.seq_num = 0
        self.leader = 0

    def _next_seq(self) -> int:
        seq = self.seq_num
        self.seq_num += 1
        return seq

    def _call(self, method: str, args: Any) -> Any:
        count = len(self.servers)
        while True:
            for offset in range(count):
                index = (self.leader + offset) % count
                reply = self.servers[index].call(method, args)
                if reply is not None and not reply.wrong_leader:
                    self.leader = index
                    return reply
            time.sleep(self.retry_interval)

    def query(self, num: int) -> Config:
        """Fetch configuration ``num``, or the latest one if ``num`` is -1."""
        args = QueryArgs(num=num, client_id=self.client_id, seq_num=self._next_seq())
        return self._call("ShardCtrler.Query", args).config

    def join(self, servers: dict[int, list[str]]) -> None:
        """Add replica groups given as a gid -> server names mapping."""
        args = JoinArgs(servers=servers, client_id=self.client_id, seq_num=self._next_seq())
        self._call("ShardCtrler.Join", args)

    def leave(self, gids: list[int]) -> None:
        """Remove the given replica groups."""
        args = LeaveArgs(gids=gids, client_id=self.client_id, seq_num=self._next_seq())
        self._call("ShardCtrler.Leave", args)

    def move(self, shard: int, gid: int) -> None:
        """Hand one shard to the given group."""
        args = MoveArgs(
            shard=shard, gid=gid, client_id=self.client_id, seq_num=self._next_seq()
        )
        self._call("ShardCtrler.Move", args)