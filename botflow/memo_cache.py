# botflow/memo_cache.py

import threading
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class MemoCache(Generic[T]):
    """
    Process-local, load-once value.

    - get() runs the loader the first time and keeps the value.
    - Two racing loaders may both run; the first one to store wins and
      every caller sees that value afterwards.
    - offer() stores a value produced elsewhere (e.g. by an async call),
      under the same first-writer-wins rule.
    - invalidate() drops the value so the next get() loads again.
    """

    def __init__(self, loader: Optional[Callable[[], T]] = None, name: str = "") -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._value: Optional[T] = None
        self._loaded = False
        self.name = name

    def get(self) -> T:
        with self._lock:
            if self._loaded:
                return self._value  # type: ignore[return-value]

        if self._loader is None:
            raise LookupError(f"MemoCache {self.name or '(unnamed)'} has no value and no loader")
        return self.offer(self._loader())

    def offer(self, value: T) -> T:
        with self._lock:
            if not self._loaded:
                self._value = value
                self._loaded = True
            return self._value  # type: ignore[return-value]

    def invalidate(self) -> None:
        with self._lock:
            self._value = None
            self._loaded = False

    def is_loaded(self) -> bool:
        with self._lock:
            return self._loaded
