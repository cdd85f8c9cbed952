"""
Per-account transaction nonce allocation.

A node's "pending" transaction count can lag a broadcast this process just
made, so two writes sent back to back from the same account could both read
the same nonce. NonceCoordinator serializes allocation per account and
remembers the next nonce it handed out; an allocation takes the larger of the
node's pending count and that local high-water mark.

A failed broadcast forgets the local mark, so the next allocation trusts the
node again. The lock covers allocation and broadcast only, never a whole
open/close flow.

Usage:
    async with session.nonces.allocate(address, lambda: w3.eth.get_transaction_count(address, "pending")) as nonce:
        ...build, sign and send with ``nonce``...
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict


class NonceCoordinator:
    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._next: Dict[str, int] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def allocate(self, account: str, pending_count: Callable[[], Awaitable[int]]) -> AsyncIterator[int]:
        """
        Hold the account lock and yield the nonce to broadcast with.

        The nonce is committed when the block exits cleanly; an exception
        inside the block forgets the local mark and propagates.
        """
        key = account.lower()
        async with self._lock_for(key):
            nonce = max(await pending_count(), self._next.get(key, 0))
            try:
                yield nonce
            except BaseException:
                self._next.pop(key, None)
                raise
            self._next[key] = nonce + 1
