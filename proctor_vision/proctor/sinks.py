"""
Output Sinks - Destinations for emitted flags and per-frame log records

Persistence and export live downstream; these sinks are the in-process
hand-off points.
"""

import logging
from collections import deque
from typing import Callable, Deque, Generic, List, TypeVar

from .types import FlagEvent, LogRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InMemorySink(Generic[T]):
    """Bounded in-memory buffer (oldest entries are dropped first)"""
    
    def __init__(self, max_entries: int = 10000):
        self._entries: Deque[T] = deque(maxlen=max_entries)
    
    def write(self, entry: T):
        self._entries.append(entry)
    
    @property
    def entries(self) -> List[T]:
        return list(self._entries)
    
    def drain(self) -> List[T]:
        """Return and remove all buffered entries"""
        entries = list(self._entries)
        self._entries.clear()
        return entries
    
    def __len__(self) -> int:
        return len(self._entries)


class InMemoryFlagSink(InMemorySink[FlagEvent]):
    """Flag stream kept in memory"""


class InMemoryLogSink(InMemorySink[LogRecord]):
    """Per-frame log records kept in memory"""


class CallbackSink(Generic[T]):
    """Forwards every entry to a callable; callback errors are logged, not raised"""
    
    def __init__(self, callback: Callable[[T], None]):
        self.callback = callback
    
    def write(self, entry: T):
        try:
            self.callback(entry)
        except Exception as e:
            logger.error(f"Sink callback failed: {e}")
