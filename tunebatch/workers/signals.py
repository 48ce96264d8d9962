import asyncio
from typing import Optional


class RunSignals:
    """Cooperative control flags shared by the workers of one job run.

    Workers only look at these at safe points (before claiming an item);
    nothing here interrupts an item that is already being processed.
    """

    def __init__(self):
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._cancelled = asyncio.Event()
        self._stopped = asyncio.Event()
        self._lease_lost = asyncio.Event()

    def pause(self):
        if not self.should_stop:
            self._resumed.clear()

    def resume(self):
        self._resumed.set()

    def cancel(self):
        self._cancelled.set()
        # Wake anything parked in wait_until_resumed
        self._resumed.set()

    def stop(self):
        self._stopped.set()
        self._resumed.set()

    def lose_lease(self):
        """Another runner owns the job now; this run must not touch it further"""
        self._lease_lost.set()
        self._resumed.set()

    @property
    def is_paused(self) -> bool:
        return not self._resumed.is_set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    @property
    def is_lease_lost(self) -> bool:
        return self._lease_lost.is_set()

    @property
    def should_stop(self) -> bool:
        return self._cancelled.is_set() or self._stopped.is_set() or self._lease_lost.is_set()

    async def wait_until_resumed(self, timeout: Optional[float] = None) -> bool:
        """Block while paused. Returns False if `timeout` ran out first."""
        if timeout is None:
            await self._resumed.wait()
            return True
        try:
            await asyncio.wait_for(self._resumed.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False
