"""
The fixed pool of concurrency slots.

A slot is a permit bounding the number of copies in flight at once. The
dispatcher acquires a slot before launching a worker and the worker releases
it exactly once when it finishes, whatever the outcome.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class ConcurrencySlots(asyncio.Semaphore):
    """
    An `asyncio.Semaphore` that keeps count of the permits it has handed out.
    """

    def __init__(self, limit: int) -> None:
        """
        Initialize the slot pool.

        Args:
            limit (int): The number of slots, i.e. the concurrency limit.
        """
        if limit < 1:
            raise ValueError(f"Slot pool size must be at least 1, got {limit}.")
        super().__init__(limit)
        self._limit: int = limit
        self._in_flight: int = 0
        self._peak_in_flight: int = 0

    @property
    def limit(self) -> int:
        """
        Get the concurrency limit.

        Returns:
            int: The size of the slot pool.
        """
        return self._limit

    @property
    def in_flight(self) -> int:
        """The number of acquired, unreleased slots."""
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        """The highest number of slots held at once so far."""
        return self._peak_in_flight

    async def acquire(self) -> bool:
        """
        Blocks until a slot is free, then takes it.

        Returns:
            bool: Always True, as `asyncio.Semaphore.acquire` does.
        """
        await super().acquire()
        self._in_flight += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        return True

    def release(self) -> None:
        """
        Returns a slot to the pool.

        Raises:
            ValueError: If no slot is currently held.
        """
        if self._in_flight == 0:
            raise ValueError("ConcurrencySlots released more times than acquired.")
        self._in_flight -= 1
        super().release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Holds one slot for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()
