import asyncio
from typing import Iterable, Awaitable, Optional, Callable, List


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Await service tasks; when any ends or the caller is cancelled, cancel the rest and run ``cleanup``."""
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            done, _ = await asyncio.wait(task_list, return_when=asyncio.FIRST_COMPLETED)
            for t in done:
                if not t.cancelled() and t.exception() is not None:
                    raise t.exception()
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()
