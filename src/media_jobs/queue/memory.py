"""In-memory lock and cron backends.

Used by tests and single-process setups. Several ``InMemoryLock`` instances
sharing one ``LockTable`` behave like several processes sharing a database.
"""

import inspect
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from .backends import CronBackend, CronCallback, LockBackend


class LockTable:
    """Lock name → holder id, guarded by a mutex."""

    def __init__(self):
        self._mutex = threading.Lock()
        self._holders: Dict[str, str] = {}

    def try_acquire(self, name: str, holder: str) -> bool:
        with self._mutex:
            current = self._holders.get(name)
            if current is not None and current != holder:
                return False
            self._holders[name] = holder
            return True

    def release(self, name: str, holder: str) -> None:
        with self._mutex:
            if self._holders.get(name) == holder:
                del self._holders[name]

    def holder_of(self, name: str) -> Optional[str]:
        with self._mutex:
            return self._holders.get(name)


class InMemoryLock(LockBackend):
    def __init__(self, table: Optional[LockTable] = None, holder: Optional[str] = None):
        self.table = table if table is not None else LockTable()
        self.holder = holder or uuid.uuid4().hex

    def try_acquire(self, name: str) -> bool:
        return self.table.try_acquire(name, self.holder)

    def release(self, name: str) -> None:
        self.table.release(name, self.holder)


@dataclass
class CronEntry:
    name: str
    expression: str
    on_tick: CronCallback
    running: bool


class InMemoryCron(CronBackend):
    """Records cron registrations; ``tick(name)`` fires a callback by hand."""

    def __init__(self):
        self._mutex = threading.Lock()
        self.jobs: Dict[str, CronEntry] = {}
        self.history: List[str] = []

    def create(self, name: str, expression: str, on_tick: CronCallback, start: bool = True) -> None:
        with self._mutex:
            self.jobs[name] = CronEntry(name, expression, on_tick, start)
            self.history.append(f"create {name} {expression}")

    def update(self, name: str, expression: str, start: bool = True) -> None:
        with self._mutex:
            entry = self.jobs.get(name)
            if entry is None:
                raise KeyError(f"No cron job named {name}")
            entry.expression = expression
            entry.running = start
            self.history.append(f"update {name} {expression}")

    def delete(self, name: str) -> None:
        with self._mutex:
            self.jobs.pop(name, None)
            self.history.append(f"delete {name}")

    async def tick(self, name: str) -> None:
        with self._mutex:
            entry = self.jobs[name]
        result = entry.on_tick()
        if inspect.isawaitable(result):
            await result

    def expression_of(self, name: str) -> Optional[str]:
        entry = self.jobs.get(name)
        return entry.expression if entry else None
