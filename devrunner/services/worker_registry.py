"""
DevRunner Worker Registry

In-memory set of run ids currently being processed by this process.
Guarantees at most one active loop per run within a single process. It does
not survive a restart and does not coordinate across processes.
"""

import threading
from typing import Optional, Set


class WorkerRegistry:
    """Thread-safe set of active run ids."""

    def __init__(self) -> None:
        self._active: Set[str] = set()
        self._lock = threading.Lock()

    def try_mark_active(self, run_id: str) -> bool:
        """Claim a run. Returns False when another worker already owns it."""
        with self._lock:
            if run_id in self._active:
                return False
            self._active.add(run_id)
            return True

    def unmark_active(self, run_id: str) -> None:
        with self._lock:
            self._active.discard(run_id)

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._active

    def active_runs(self) -> Set[str]:
        with self._lock:
            return set(self._active)


_registry: Optional[WorkerRegistry] = None
_registry_lock = threading.Lock()


def get_worker_registry() -> WorkerRegistry:
    """Get the process-wide registry."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = WorkerRegistry()
    return _registry
