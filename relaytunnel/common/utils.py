from typing import Any, Union

import logging
import asyncio
import contextlib
import functools
import sys

LOGGING_FORMATTER = '%(asctime)s %(name)s - %(levelname)s - %(message)s'


def get_logger(name, level=logging.INFO):
    """
    Return a logger which prints to stdout. Calling it again with the same name only updates the level
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        return logger
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(LOGGING_FORMATTER)
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger


async def run_blocking_func_in_executor(func, *args, **kwargs):
    """
    Run a blocking function in a different executor so that it won't stop
    the event loop
    """
    return await asyncio.get_running_loop().run_in_executor(None, functools.partial(func, *args, **kwargs))


def task_in_list_until_done(task: Union[asyncio.Task, asyncio.Future], list_of_tasks: list):
    """
    Add a task to a list and a callback which removes it from the list once it's done
    """
    def remove_task(*args):
        with contextlib.suppress(ValueError):
            list_of_tasks.remove(task)
    list_of_tasks.append(task)
    task.add_done_callback(remove_task)


def format_address(host, port) -> str:
    """
    Return host:port, wrapping IPv6 literals with brackets
    """
    if ':' in host and not host.startswith('['):
        return f'[{host}]:{port}'
    return f'{host}:{port}'


class EventItem(asyncio.Event):
    def __init__(self):
        """
        Works just like asyncio.Event with the following enhancements:
        - Stores an item when setting the event and retrieve it when it's available with self.wait
        - set_once stores the item only if no item was set before, so the first setter wins
        """
        super().__init__()
        self._obj: Any = None

    def set(self, obj: Any = None):
        self._obj = obj
        return super().set()

    def set_once(self, obj: Any = None) -> bool:
        """
        Set the event only if it wasn't already set. Return whether this call was the one that set it
        """
        if self.is_set():
            return False
        self.set(obj)
        return True

    def clear(self):
        self._obj = None
        return super().clear()

    async def wait(self) -> Any:
        await super().wait()
        return self._obj
