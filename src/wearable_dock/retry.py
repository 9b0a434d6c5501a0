"""Bounded polling used for every wait inside a device visit."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class PollPolicy:
    interval: float
    timeout: float
    clock: Callable[[], float] = field(default=time.monotonic, compare=False, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    @classmethod
    def from_settings(cls, cfg: dict, **kwargs) -> "PollPolicy":
        return cls(interval=float(cfg["interval"]), timeout=float(cfg["timeout"]), **kwargs)

    def ticks(self) -> Iterator[int]:
        """
        Yield attempt numbers 0, 1, 2 … until the deadline.

        The first attempt is always made. Sleeps happen between attempts
        only, so the caller never waits past the deadline for nothing.
        """
        deadline = self.clock() + self.timeout
        attempt = 0
        while True:
            yield attempt
            attempt += 1
            if self.clock() + self.interval > deadline:
                return
            self.sleep(self.interval)

    def until(self, check: Callable[[], Optional[T]]) -> Optional[T]:
        """Return the first truthy ``check()`` result, or None on timeout."""
        for _ in self.ticks():
            result = check()
            if result:
                return result
        return None
