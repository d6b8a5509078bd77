import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List


logger = logging.getLogger(__name__)


async def wait_for_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to ``timeout`` seconds; True as soon as the stop event is set."""
    if stop_event.is_set():
        return True
    if timeout <= 0:
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout)
    except asyncio.TimeoutError:
        return False
    return True


async def run_tasks_with_cleanup(
    primary: Awaitable[None],
    background: Iterable[asyncio.Task] = (),
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Await ``primary``; then cancel the background tasks and run ``cleanup``."""
    task_list: List[asyncio.Task] = list(background)
    try:
        await primary
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            results = await asyncio.gather(*task_list, return_exceptions=True)
            for task, result in zip(task_list, results):
                if isinstance(result, Exception):
                    logger.error("Background task %s failed: %s", task.get_name(), result)
        if cleanup is not None:
            await cleanup()
