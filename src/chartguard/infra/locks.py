from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from src.chartguard.errors import ConflictError


class PatientLockRegistry:
    """In-process, per-patient mutual exclusion for record merges.

    Locks are created lazily and kept for the lifetime of the registry. This
    only serializes work inside one process; cross-process safety comes from
    the version compare-and-set in the section repository.
    """

    def __init__(self, timeout_seconds: float = 5.0) -> None:
        self._timeout = timeout_seconds
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, patient_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(patient_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[patient_id] = lock
            return lock

    @contextmanager
    def hold(self, patient_id: str, timeout: float | None = None) -> Iterator[None]:
        lock = self._lock_for(patient_id)
        wait = self._timeout if timeout is None else timeout
        if not lock.acquire(timeout=wait):
            raise ConflictError("concurrent merge in progress")
        try:
            yield
        finally:
            lock.release()

    def is_held(self, patient_id: str) -> bool:
        return self._lock_for(patient_id).locked()
