"""
Resource accounting for workflow admission.

The monitor combines a measured baseline from a pluggable probe with the
budgets reserved by batches that are currently running. A batch is admitted
only when baseline plus reservations plus its own request stays within the
configured limits.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Protocol

import psutil

from ..config import ResourceLimits
from ..errors import ResourceBudgetError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceUsage:
    memory_mb: float = 0.0
    cpu_percent: float = 0.0
    connections: int = 0

    def __add__(self, other: "ResourceUsage") -> "ResourceUsage":
        return ResourceUsage(
            self.memory_mb + other.memory_mb,
            self.cpu_percent + other.cpu_percent,
            self.connections + other.connections,
        )

    def __sub__(self, other: "ResourceUsage") -> "ResourceUsage":
        return ResourceUsage(
            self.memory_mb - other.memory_mb,
            self.cpu_percent - other.cpu_percent,
            self.connections - other.connections,
        )

    def fits_within(self, limits: ResourceLimits) -> bool:
        return (
            self.memory_mb <= limits.memory_mb
            and self.cpu_percent <= limits.cpu_percent
            and self.connections <= limits.connections
        )

    @classmethod
    def from_limits(cls, limits: ResourceLimits) -> "ResourceUsage":
        return cls(limits.memory_mb, limits.cpu_percent, limits.connections)


class ResourceProbe(Protocol):
    def sample(self) -> ResourceUsage: ...


class StaticResourceProbe:
    """Reports a fixed baseline; useful for tests and for hosts without psutil access."""

    def __init__(self, usage: ResourceUsage | None = None):
        self.usage = usage or ResourceUsage()

    def sample(self) -> ResourceUsage:
        return self.usage


class PsutilResourceProbe:
    """Measures this process's memory and system-wide CPU with psutil.

    Connections are not measured; the monitor accounts for them through
    reservations only.
    """

    def __init__(self):
        self._process = psutil.Process()
        # Prime the CPU counter so the first real sample is meaningful.
        psutil.cpu_percent(interval=None)

    def sample(self) -> ResourceUsage:
        memory_mb = self._process.memory_info().rss / (1024 * 1024)
        return ResourceUsage(memory_mb=memory_mb, cpu_percent=psutil.cpu_percent(interval=None))


class ResourceMonitor:
    """Blocks batch admission until the resource budget allows it."""

    def __init__(
        self,
        limits: ResourceLimits | None = None,
        probe: ResourceProbe | None = None,
        poll_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.limits = limits or ResourceLimits()
        self.probe = probe or StaticResourceProbe()
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._reserved = ResourceUsage()
        self._lock = asyncio.Lock()
        self.wait_count = 0

    @property
    def reserved(self) -> ResourceUsage:
        return self._reserved

    def current_usage(self) -> ResourceUsage:
        return self.probe.sample() + self._reserved

    async def try_reserve(self, request: ResourceUsage) -> bool:
        """Reserve ``request`` if it fits right now."""
        async with self._lock:
            if not (self.probe.sample() + self._reserved + request).fits_within(self.limits):
                return False
            self._reserved = self._reserved + request
            return True

    async def reserve(self, request: ResourceUsage) -> ResourceUsage:
        """Reserve ``request``, polling until the budget allows it.

        Raises:
            ResourceBudgetError: if the request exceeds the limits on its own
        """
        if not request.fits_within(self.limits):
            raise ResourceBudgetError(
                f"Resource request {request} can never fit within limits {self.limits}"
            )

        while not await self.try_reserve(request):
            self.wait_count += 1
            logger.debug("Resource budget exhausted, waiting %.1fs", self.poll_interval)
            await self._sleep(self.poll_interval)
        return request

    async def release(self, request: ResourceUsage) -> None:
        async with self._lock:
            self._reserved = self._reserved - request

    @asynccontextmanager
    async def acquire(self, request: ResourceUsage) -> AsyncIterator[ResourceUsage]:
        await self.reserve(request)
        try:
            yield request
        finally:
            await self.release(request)
