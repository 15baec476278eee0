"""Serializes ledger read-modify-write cycles.

Each lane is an ``asyncio.Lock``; waiters are woken in arrival order, so
operations in one lane start FIFO and never overlap. Lanes are keyed by
account id unless the queue runs in global mode, in which case every
operation shares a single lane.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

GLOBAL_LANE = "__global__"


@dataclass
class _Lane:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class MutationQueue:
    def __init__(self, *, per_key: bool = True) -> None:
        self._per_key = per_key
        # Locks belong to the loop they were created on.
        self._lanes: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, _Lane]]" = (
            weakref.WeakKeyDictionary()
        )

    @property
    def per_key(self) -> bool:
        return self._per_key

    def _lanes_for_loop(self) -> dict[str, _Lane]:
        loop = asyncio.get_running_loop()
        lanes = self._lanes.get(loop)
        if lanes is None:
            lanes = {}
            self._lanes[loop] = lanes
        return lanes

    def _lane_key(self, key: str | None) -> str:
        if not self._per_key or key is None:
            return GLOBAL_LANE
        return key

    async def enqueue(self, operation: Callable[[], Awaitable[T]], *, key: str | None = None) -> T:
        lanes = self._lanes_for_loop()
        lane_key = self._lane_key(key)
        lane = lanes.get(lane_key)
        if lane is None:
            lane = _Lane()
            lanes[lane_key] = lane
        lane.users += 1
        try:
            async with lane.lock:
                return await operation()
        finally:
            lane.users -= 1
            if lane.users == 0 and lanes.get(lane_key) is lane:
                lanes.pop(lane_key, None)

    def pending(self, key: str | None = None) -> int:
        try:
            lanes = self._lanes_for_loop()
        except RuntimeError:
            return 0
        lane = lanes.get(self._lane_key(key))
        return lane.users if lane else 0


def build_queue(mode: str) -> MutationQueue:
    normalized = (mode or "").strip().lower()
    if normalized not in {"per_account", "global"}:
        logger.warning("ledger.queue_mode_unknown mode=%s fallback=per_account", mode)
        normalized = "per_account"
    return MutationQueue(per_key=(normalized == "per_account"))
