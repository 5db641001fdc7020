"""Thread-safe primitives for state shared with the web front end."""

import threading
from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass
class LockedValue(Generic[T]):
    """Thread-safe value container.

    The portal reads manager state from request handlers while
    transitions write it.

    Usage:
        state = LockedValue(ProvisioningState.IDLE)
        state.set(ProvisioningState.CHECKING)
    """

    _value: T
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def get(self) -> T:
        """Get the current value (thread-safe read)."""
        with self._lock:
            return self._value

    def set(self, value: T) -> None:
        """Set the value (thread-safe write)."""
        with self._lock:
            self._value = value
