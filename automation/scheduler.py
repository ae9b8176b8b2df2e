"""
Shared patrol-loop lifecycle for the automation tasks.

Each scheduler is a PatrolLoop subclass implementing run_cycle(); the loop
handles the initial delay, the interval sleep, early wake-ups, cooperative
stop and per-cycle error containment.
"""

import asyncio
from typing import List, Optional

from game_state import GameState, InventoryItem, Land
from network.protocol import (
    ConnectionLostError,
    NotReadyError,
    process_all_lands,
    process_bag_reply,
)
from utils.constants import ITEM_SERVICE, PLANT_SERVICE
from utils.logger import log, log_warn


class PatrolLoop:
    """
    Base class for the periodic automation tasks.

    Cycles are skipped while the session is not READY. A ConnectionLostError
    ends the loop (the orchestrator builds a new session); any other error in
    a cycle is logged and the loop carries on.
    """

    name = "patrol"

    def __init__(self, session, game_state: GameState, interval: float, initial_delay: float = 0):
        self.session = session
        self.game_state = game_state
        self.interval = interval
        self.initial_delay = initial_delay
        self.cycles = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_requested = False
        self._wake_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def start(self):
        """Start the loop as a task on the running event loop."""
        if self.is_running:
            return
        self._stop_requested = False
        self._wake_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())

    async def stop(self, timeout: Optional[float] = None):
        """
        Ask the loop to stop at the next cycle boundary and wait for it.

        Args:
            timeout: Seconds to wait for the current cycle to finish before
                cancelling the task (None waits indefinitely)
        """
        self.request_stop()
        task = self._task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            log_warn(self.name, f"did not stop within {timeout}s, cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def request_stop(self):
        """Flag the loop to end at the next cycle boundary without waiting."""
        self._stop_requested = True
        if self._wake_event:
            self._wake_event.set()

    def wake(self):
        """Cut the current sleep short so the next cycle runs now."""
        if self._wake_event:
            self._wake_event.set()

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        self._wake_event.clear()

    async def _run(self):
        try:
            if self.initial_delay > 0:
                await self._sleep(self.initial_delay)

            while not self._stop_requested:
                if self.session.is_ready:
                    try:
                        await self.run_cycle()
                        self.cycles += 1
                    except ConnectionLostError as e:
                        log_warn(self.name, f"connection lost, loop ending: {e}")
                        break
                    except NotReadyError:
                        pass
                    except Exception as e:
                        log_warn(self.name, f"cycle failed: {e}")

                if self._stop_requested:
                    break
                await self._sleep(self.interval)
        except asyncio.CancelledError:
            # Task cancelled by stop() after its timeout
            pass
        log(self.name, "loop stopped")

    async def run_cycle(self):
        raise NotImplementedError


async def refresh_lands(session, game_state: GameState) -> List[Land]:
    """Fetch our own lands and replace them in the World Model."""
    reply = await session.call(PLANT_SERVICE, "AllLands", {})
    return process_all_lands(reply, game_state)


async def refresh_bag(session, game_state: GameState) -> List[InventoryItem]:
    reply = await session.call(ITEM_SERVICE, "Bag", {})
    return process_bag_reply(reply, game_state)
