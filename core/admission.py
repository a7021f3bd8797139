"""
Per-group admission control for video generation requests.

Each provider group allows at most `max_concurrent` requests in flight and
requires `cooldown_ms` between two request starts. Waiters re-check both
conditions at a fixed interval; whoever observes a free slot first proceeds.
There is no queue, so admission is not FIFO across waiters.

The check and the reservation happen without an intervening await, so on a
single event loop the limits hold exactly even though waiters interleave.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from core.catalog import GroupPolicy, ModelGroup

logger = logging.getLogger(__name__)


@dataclass
class GroupCounters:
    """Mutable runtime counters for one group."""
    active: int = 0
    last_start: float = 0.0  # monotonic seconds, 0 = never
    total_admitted: int = 0


class GroupAdmission:
    """
    Busy-poll admission gate shared by every orchestrator call in the process.

    Usage:
        admission = GroupAdmission(poll_interval_ms=100)

        async with admission.admitted(group, policy):
            await create_and_poll()
    """

    def __init__(
        self,
        poll_interval_ms: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.poll_interval = poll_interval_ms / 1000
        self._clock = clock
        self._counters: dict[ModelGroup, GroupCounters] = {}

    def _get(self, group: ModelGroup) -> GroupCounters:
        if group not in self._counters:
            self._counters[group] = GroupCounters()
        return self._counters[group]

    def _can_admit(self, group: ModelGroup, policy: GroupPolicy) -> bool:
        counters = self._get(group)
        if counters.active >= policy.max_concurrent:
            return False
        if counters.last_start == 0.0:
            return True
        elapsed_ms = (self._clock() - counters.last_start) * 1000
        return elapsed_ms >= policy.cooldown_ms

    async def await_admission(self, group: ModelGroup, policy: GroupPolicy) -> None:
        """
        Wait until `group` has a free slot and its cooldown has elapsed, then reserve it.

        The caller owns the reservation and must call `release(group)`.
        """
        waited = 0
        while not self._can_admit(group, policy):
            waited += 1
            await asyncio.sleep(self.poll_interval)

        counters = self._get(group)
        counters.active += 1
        counters.last_start = self._clock()
        counters.total_admitted += 1

        if waited:
            logger.debug(
                f"Admitted {group.value} after {waited} checks "
                f"(active {counters.active}/{policy.max_concurrent})"
            )

    def release(self, group: ModelGroup) -> None:
        counters = self._get(group)
        if counters.active <= 0:
            logger.warning(f"Admission release for {group.value} without a matching admit")
            return
        counters.active -= 1

    @asynccontextmanager
    async def admitted(self, group: ModelGroup, policy: GroupPolicy) -> AsyncIterator[None]:
        """Hold one admission slot for the duration of the block."""
        await self.await_admission(group, policy)
        try:
            yield
        finally:
            self.release(group)

    def active_requests(self, group: ModelGroup) -> int:
        return self._get(group).active

    def last_request_time(self, group: ModelGroup) -> float:
        """Monotonic time of the last admission for `group` (0.0 if none)."""
        return self._get(group).last_start

    def get_status(self) -> dict[str, dict]:
        """Get current counters as a dictionary."""
        return {
            group.value: {
                "active": counters.active,
                "last_start": counters.last_start,
                "total_admitted": counters.total_admitted,
            }
            for group, counters in self._counters.items()
        }
