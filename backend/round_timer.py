import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class RoundTimer:
    """One-shot, cancellable delayed callback. At most one task is armed at a time."""

    def __init__(self, name: str = ""):
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, delay: float, callback: Callable[[], Awaitable[None]]):
        """Cancel any pending task and schedule callback after delay seconds.

        Raises RuntimeError, leaving any pending task armed, when called outside
        a running event loop.
        """
        loop = asyncio.get_running_loop()
        self.cancel()
        self._task = loop.create_task(self._run(delay, callback))

    def cancel(self):
        if self._task:
            self._task.cancel()
            self._task = None

    async def _run(self, delay: float, callback: Callable[[], Awaitable[None]]):
        try:
            await asyncio.sleep(delay)
            await callback()
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Round timer callback failed (%s)", self.name)
        finally:
            if self._task is asyncio.current_task():
                self._task = None
