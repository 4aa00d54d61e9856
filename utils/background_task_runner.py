"""
BackgroundTaskRunner - environment-aware async coordination

- Production: fire-and-forget work runs as a background task (asyncio.create_task)
- Tests: the same work is awaited inline so assertions see its effects and no
  task outlives the test's event loop
- Blocking database work is offloaded with asyncio.to_thread in both modes
"""

import asyncio
import os
import sys
import logging
from typing import Coroutine, Any, Callable, Optional, Set

logger = logging.getLogger(__name__)


def _is_test_environment() -> bool:
    return bool(
        os.environ.get("PYTEST_CURRENT_TEST") or
        any("pytest" in arg for arg in sys.argv)
    )


class BackgroundTaskRunner:
    """Dispatches out-of-band work (completion workers, notifications)"""

    def __init__(self, is_test: Optional[bool] = None):
        self.is_test = _is_test_environment() if is_test is None else is_test
        self._active_tasks: Set[asyncio.Task] = set()
        logger.debug(f"BackgroundTaskRunner initialized (test_mode={self.is_test})")

    async def run(self, coro: Coroutine[Any, Any, Any]) -> Any:
        """Schedule `coro`; returns the Task in production, the result in tests"""
        if self.is_test:
            return await coro

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, awaiting synchronously")
            return await coro

        task = loop.create_task(coro)
        self._active_tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._active_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"❌ BACKGROUND_TASK_FAILED: {type(exc).__name__}: {exc}", exc_info=exc)

    async def run_io(self, fn: Callable, *args, **kwargs) -> Any:
        """Run blocking `fn` in the default thread pool"""
        return await asyncio.to_thread(fn, *args, **kwargs)

    @property
    def active_count(self) -> int:
        return len(self._active_tasks)

    async def cleanup(self) -> None:
        """Cancel pending background tasks (shutdown / test teardown)"""
        if not self._active_tasks:
            return

        logger.info(f"BackgroundTaskRunner: Cleaning up {len(self._active_tasks)} active tasks")
        for task in self._active_tasks.copy():
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._active_tasks, return_exceptions=True)
        self._active_tasks.clear()


# Global singleton instance for consistent behavior
_global_runner = BackgroundTaskRunner()


async def run_background_task(coro: Coroutine[Any, Any, Any]) -> Any:
    return await _global_runner.run(coro)


async def run_io_task(fn: Callable, *args, **kwargs) -> Any:
    return await _global_runner.run_io(fn, *args, **kwargs)


async def cleanup_background_tasks() -> None:
    await _global_runner.cleanup()


__all__ = ['BackgroundTaskRunner', 'run_background_task', 'run_io_task', 'cleanup_background_tasks']
