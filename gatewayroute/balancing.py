"""Load balancing strategies and per-target request statistics."""

from __future__ import annotations

import itertools
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, NamedTuple, Optional


class LoadBalancer(ABC):
    """Chooses one backend target out of a list of candidates."""

    name: str = ""

    @abstractmethod
    def select_target(self, targets: Sequence[str], request: Any = None) -> Optional[str]:
        """Return the chosen target, or None when there is nothing to choose."""

    def stop(self) -> None:
        """Release any resources held by the balancer."""


class RoundRobin(LoadBalancer):
    """Hands out targets in turn."""

    name = "round_robin"

    def __init__(self) -> None:
        self._counter = itertools.count()
        self._lock = threading.Lock()
        self._stopped = False

    def select_target(self, targets: Sequence[str], request: Any = None) -> Optional[str]:
        if not targets:
            return None
        with self._lock:
            position = next(self._counter)
        return targets[position % len(targets)]

    def stop(self) -> None:
        self._stopped = True


class TargetCounts(NamedTuple):
    """Successful and failed request counts for one target."""

    successes: int
    failures: int

    @property
    def total(self) -> int:
        return self.successes + self.failures


class RequestStats:
    """Thread-safe tally of request outcomes per backend target."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, list[int]] = {}

    def update_request_count(self, target: str, success: bool) -> None:
        with self._lock:
            tally = self._counts.setdefault(target, [0, 0])
            tally[0 if success else 1] += 1

    def counts(self, target: str) -> TargetCounts:
        with self._lock:
            successes, failures = self._counts.get(target, [0, 0])
        return TargetCounts(successes, failures)


_GLOBAL_STATS = RequestStats()


def get_request_stats() -> RequestStats:
    """Return the process-wide request statistics."""
    return _GLOBAL_STATS