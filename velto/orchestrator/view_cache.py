"""
ViewCache: read-through cache for orchestrator views with explicit staleness.

Every entry carries a TTL; nothing is cached indefinitely. After a confirmed
transaction the caller invalidates the affected keys once a short grace delay
has passed, so the indexer has time to catch up.

Key layout:
    markets                      market list
    market:<slug>                one market view
    positions:<user>:<slug|*>    open positions for a user
    balance:<user>:<slug>        internal/wallet balances for a user
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from velto.core.json_utils import dumps

log = logging.getLogger("velto")


@dataclass
class _Entry:
    value: Any
    expires_at: float


class ViewCache:
    def __init__(self, default_ttl_sec: float = 3.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, _Entry] = {}
        self._default_ttl = default_ttl_sec
        self._clock = clock

    @staticmethod
    def market_key(slug: str) -> str:
        return f"market:{slug}"

    @staticmethod
    def positions_key(user: str, slug: Optional[str] = None) -> str:
        return f"positions:{user.lower()}:{slug or '*'}"

    @staticmethod
    def balance_key(user: str, slug: str) -> str:
        return f"balance:{user.lower()}:{slug}"

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry.value

    def put(self, key: str, value: Any, ttl_sec: Optional[float] = None) -> None:
        ttl = self._default_ttl if ttl_sec is None else ttl_sec
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl)

    def invalidate(self, prefix: str = "") -> int:
        """Drop every key starting with ``prefix``; empty prefix clears all."""
        keys = [k for k in self._entries if k.startswith(prefix)]
        for k in keys:
            del self._entries[k]
        return len(keys)

    def invalidate_for_trade(self, user: str, slug: str) -> int:
        dropped = self.invalidate(f"positions:{user.lower()}:")
        dropped += self.invalidate(f"balance:{user.lower()}:")
        dropped += self.invalidate(self.market_key(slug))
        return dropped

    async def invalidate_after_confirm(
        self,
        user: str,
        slug: str,
        grace_sec: float = 1.0,
        before_invalidate: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> int:
        """
        Wait ``grace_sec``, run ``before_invalidate`` (e.g. an index sync nudge), then invalidate.

        A failing hook is logged; the keys are invalidated regardless.
        """
        if grace_sec > 0:
            await asyncio.sleep(grace_sec)
        if before_invalidate is not None:
            try:
                await before_invalidate()
            except Exception as exc:
                log.warning(dumps({"event": "pre_invalidate_hook_failed", "market": slug, "error": str(exc)}))
        return self.invalidate_for_trade(user, slug)

    def __len__(self) -> int:
        return len(self._entries)
