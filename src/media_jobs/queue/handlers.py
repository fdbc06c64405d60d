"""Registry of the callables that do the work inside each job.

Handler modules plug in at bootstrap. A module listed in
``MEDIA_JOBS_HANDLERS`` or published under the ``media_jobs.handlers``
entry-point group exposes ``register_handlers(registry)``.
"""

import asyncio
import importlib
import inspect
from importlib.metadata import entry_points
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger

from media_jobs.exceptions import UnknownJobHandlerError

from .models import JobItem, JobName, JobStatus

HANDLER_ENTRY_POINT_GROUP = "media_jobs.handlers"
REGISTER_FUNCTION = "register_handlers"

JobHandler = Callable[[Optional[Dict[str, Any]]], Any]


class JobHandlerRegistry:
    """Maps job names to handlers.

    A handler receives the job's ``data`` dict. It may be sync (run in a
    worker thread) or async (awaited on the loop). Returning ``None`` means
    success; returning a ``JobStatus`` reports that status; raising fails
    the job.

    Example:
        handlers = JobHandlerRegistry()

        @handlers.register(JobName.TAG_CLEANUP)
        def cleanup_tags(data):
            ...
    """

    def __init__(self):
        self._handlers: Dict[JobName, JobHandler] = {}

    def add(self, name: JobName, handler: JobHandler) -> None:
        name = JobName(name)
        if name in self._handlers:
            logger.warning(f"Replacing handler for {name.value}")
        self._handlers[name] = handler

    def register(self, name: JobName) -> Callable[[JobHandler], JobHandler]:
        def decorator(handler: JobHandler) -> JobHandler:
            self.add(name, handler)
            return handler

        return decorator

    def has(self, name: JobName) -> bool:
        return JobName(name) in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def load_modules(self, module_names: Sequence[str]) -> List[str]:
        """Import each module and call its ``register_handlers(registry)``.

        Raises:
            ImportError: if a module cannot be imported
            AttributeError: if a module has no ``register_handlers``
        """
        loaded = []
        for module_name in module_names:
            module = importlib.import_module(module_name)
            register = getattr(module, REGISTER_FUNCTION, None)
            if register is None:
                raise AttributeError(f"Handler module {module_name} has no {REGISTER_FUNCTION}()")
            register(self)
            loaded.append(module_name)
            logger.info(f"Loaded job handlers from {module_name}")
        return loaded

    def load_entry_points(self, group: str = HANDLER_ENTRY_POINT_GROUP) -> List[str]:
        """Call every ``register_handlers`` published under an entry-point group.

        A plugin that fails to load is logged and skipped.
        """
        loaded = []
        for ep in entry_points(group=group):
            try:
                register = ep.load()
                register(self)
            except Exception as e:
                logger.warning(f"Failed to load job handlers from entry point '{ep.name}': {e}")
                continue
            loaded.append(ep.name)
            logger.info(f"Loaded job handlers from entry point {ep.name}")
        return loaded

    async def run(self, item: JobItem) -> JobStatus:
        handler = self._handlers.get(item.name)
        if handler is None:
            raise UnknownJobHandlerError(item.name.value)

        if inspect.iscoroutinefunction(handler):
            result = await handler(item.data)
        else:
            result = await asyncio.to_thread(handler, item.data)
            if inspect.isawaitable(result):
                result = await result

        if result is None:
            return JobStatus.SUCCESS
        return JobStatus(result)
