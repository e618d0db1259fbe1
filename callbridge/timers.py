"""
Named asyncio task registry for per-call timers.

Every watchdog, keep-alive, grace timer and background loop belonging to a call is
registered in a TimerGroup so that one ``cancel_all()`` releases all of them.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from callbridge.config.constants import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

Callback = Callable[[], Union[None, Awaitable[None]]]


async def _invoke(callback: Callback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class TimerGroup:
    """
    Owns a set of named asyncio tasks.

    Scheduling a task under a name that is already in use cancels the previous
    task first. ``cancel_all`` never cancels the task it is called from, so a
    timer callback may safely tear down its own group.
    """

    def __init__(self, owner: str = ""):
        self.owner = owner
        self._tasks: Dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def active(self) -> List[str]:
        """Names of tasks that have not finished yet."""
        return [name for name, task in self._tasks.items() if not task.done()]

    def is_active(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def spawn(self, name: str, coro: Awaitable[Any]) -> Optional[asyncio.Task]:
        """Run a coroutine as a tracked task."""
        if self._closed:
            logger.debug(f"[{self.owner}] Timer group closed, not starting {name}")
            if inspect.iscoroutine(coro):
                coro.close()
            return None
        self.cancel(name)
        task = asyncio.create_task(self._guard(name, coro), name=f"{self.owner}:{name}")
        if inspect.iscoroutine(coro):
            # A task cancelled before its first step never awaits the coroutine
            task.add_done_callback(lambda _: coro.close())
        self._tasks[name] = task
        return task

    def call_later(self, name: str, delay: float, callback: Callback) -> Optional[asyncio.Task]:
        """Run ``callback`` once after ``delay`` seconds."""
        async def _later():
            await asyncio.sleep(delay)
            await _invoke(callback)

        return self.spawn(name, _later())

    def every(self, name: str, interval: float, callback: Callback) -> Optional[asyncio.Task]:
        """Run ``callback`` every ``interval`` seconds until cancelled."""
        async def _loop():
            while not self._closed:
                await asyncio.sleep(interval)
                if self._closed:
                    break
                await _invoke(callback)

        return self.spawn(name, _loop())

    def cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def cancel_all(self, spare: Iterable[asyncio.Task] = ()) -> None:
        """Cancel and await every task except the caller's own and any in ``spare``."""
        self._closed = True
        skip = {asyncio.current_task(), *spare}
        pending = []
        for name, task in list(self._tasks.items()):
            if task in skip or task.done():
                continue
            task.cancel()
            pending.append(task)
        self._tasks.clear()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.debug(f"[{self.owner}] Cancelled {len(pending)} timer(s)")

    async def _guard(self, name: str, coro: Awaitable[Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.owner}] Timer {name} failed: {e}", exc_info=True)
        finally:
            if self._tasks.get(name) is asyncio.current_task():
                self._tasks.pop(name, None)
