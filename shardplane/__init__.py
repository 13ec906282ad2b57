"""Sharded key/value service with a replicated shard controller, over a log and RPC ends supplied by the caller."""

__version__ = "0.1.0"