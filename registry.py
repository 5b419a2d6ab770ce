from __future__ import annotations

import threading
from typing import Callable, List, Optional, Sequence, Tuple

from protocol import (
    MAX_FUNCTIONS,
    MAX_NAME_LENGTH,
    InvalidParamError,
    RegistryFullError,
    to_wire_text,
)

RPCHandler = Callable[[Sequence[str]], str]


def truncate_name(name: str, limit: int = MAX_NAME_LENGTH) -> str:
    raw = to_wire_text(name)
    if len(raw) <= limit:
        return name
    # Drop any multi-byte character split by the cut.
    return raw[:limit].decode("utf-8", "ignore")


class FunctionRegistry:
    """
    Fixed-capacity table of named handlers.

    Entries are kept in registration order. Duplicate names are accepted;
    lookup returns the earliest one.
    """

    def __init__(self, capacity: int = MAX_FUNCTIONS) -> None:
        self._capacity = capacity
        self._entries: List[Tuple[str, RPCHandler]] = []
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def register(self, name: str, func: RPCHandler) -> None:
        if not name:
            raise InvalidParamError("Function name is required")
        if func is None or not callable(func):
            raise InvalidParamError(f"Handler for {name!r} must be callable")

        entry_name = truncate_name(name)
        with self._lock:
            if len(self._entries) >= self._capacity:
                raise RegistryFullError(
                    f"Cannot register {name!r}: registry holds {self._capacity} functions"
                )
            self._entries.append((entry_name, func))

    def lookup(self, name: Optional[str]) -> Optional[RPCHandler]:
        if name is None:
            return None
        with self._lock:
            entries = list(self._entries)
        for entry_name, func in entries:
            if entry_name == name:
                return func
        return None

    def names(self) -> List[str]:
        with self._lock:
            return [entry_name for entry_name, _ in self._entries]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.lookup(name) is not None
