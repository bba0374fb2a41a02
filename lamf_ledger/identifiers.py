"""
Identifier allocation

The lending core never invents IDs itself; it asks an allocator. Sequential
allocators keep a monotonic counter (optionally persisted) and format it for
display, e.g. ``LN2401000042`` for the 42nd loan allocated in January 2024.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Callable, Optional

from .errors import ConcurrentModification
from .storage import StorageInterface


class IdAllocator(ABC):
    """Source of unique entity identifiers"""

    @abstractmethod
    def next(self) -> str:
        """Allocate the next identifier"""
        pass


class UuidIdAllocator(IdAllocator):
    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def next(self) -> str:
        return f"{self.prefix}{uuid.uuid4()}"


def _today() -> date:
    return datetime.now(timezone.utc).date()


class SequentialIdAllocator(IdAllocator):
    """
    Monotonic counter formatted as ``prefix + period + zero-padded number``

    The counter never resets and never reuses a value, so two allocations
    can't collide even across periods. With a storage backend the counter
    lives in the ``id_sequences`` table keyed by prefix: every allocation
    re-reads it and advances it with a versioned save, so allocators sharing
    one store never hand out the same number.
    """

    TABLE = "id_sequences"
    MAX_ATTEMPTS = 5

    def __init__(
        self,
        prefix: str,
        width: int = 6,
        period_format: Optional[str] = None,
        clock: Callable[[], date] = _today,
        storage: Optional[StorageInterface] = None
    ):
        self.prefix = prefix
        self.width = width
        self.period_format = period_format
        self.clock = clock
        self.storage = storage
        self._lock = threading.Lock()
        self._counter = 0
        if storage is not None:
            record = storage.load(self.TABLE, prefix)
            if record:
                self._counter = record['counter']

    @property
    def counter(self) -> int:
        return self._counter

    def next(self) -> str:
        with self._lock:
            if self.storage is None:
                self._counter += 1
            else:
                self._reserve()
            number = self._counter

        period = self.clock().strftime(self.period_format) if self.period_format else ""
        return f"{self.prefix}{period}{number:0{self.width}d}"

    def _reserve(self) -> None:
        for _ in range(self.MAX_ATTEMPTS):
            try:
                with self.storage.atomic():
                    record = self.storage.load(self.TABLE, self.prefix) or {}
                    version = record.get('version', 0)
                    counter = max(record.get('counter', 0), self._counter) + 1
                    self.storage.compare_and_save(self.TABLE, self.prefix, {
                        'id': self.prefix,
                        'counter': counter,
                        'version': version + 1,
                    }, version)
            except ConcurrentModification:
                continue
            self._counter = counter
            return
        raise ConcurrentModification(f"Could not reserve the next {self.prefix} identifier")


def loan_id_allocator(storage: Optional[StorageInterface] = None,
                      clock: Callable[[], date] = _today) -> SequentialIdAllocator:
    return SequentialIdAllocator("LN", 6, "%y%m", clock=clock, storage=storage)


def application_id_allocator(storage: Optional[StorageInterface] = None,
                             clock: Callable[[], date] = _today) -> SequentialIdAllocator:
    return SequentialIdAllocator("LA", 6, "%y%m", clock=clock, storage=storage)


def collateral_id_allocator(storage: Optional[StorageInterface] = None) -> SequentialIdAllocator:
    return SequentialIdAllocator("COL", 8, storage=storage)
