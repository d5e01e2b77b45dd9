from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional, Union

from errors import ConflictError

LOCK_TIMEOUT_SECONDS = float(os.getenv("WARDFLOW_LOCK_TIMEOUT_SECONDS", "0.5"))
LOCK_ATTEMPTS = int(os.getenv("WARDFLOW_LOCK_ATTEMPTS", "3"))
LOCK_BACKOFF_SECONDS = float(os.getenv("WARDFLOW_LOCK_BACKOFF_SECONDS", "0.05"))

# Global acquisition order: every bed before any admission, and so on.
BED = 0
ADMISSION = 1
PATIENT = 2
LAB_ORDER = 3
WARD_NAME = 4

KIND_NAMES = {BED: "bed", ADMISSION: "admission", PATIENT: "patient", LAB_ORDER: "lab order", WARD_NAME: "ward"}

ResourceKey = tuple[int, Union[int, str]]

logger = logging.getLogger("wardflow.locks")


def bed_key(bed_id: int) -> ResourceKey:
    return (BED, bed_id)


def admission_key(admission_id: int) -> ResourceKey:
    return (ADMISSION, admission_id)


def patient_key(patient_id: int) -> ResourceKey:
    return (PATIENT, patient_id)


def lab_order_key(order_id: int) -> ResourceKey:
    return (LAB_ORDER, order_id)


def ward_name_key(name: str) -> ResourceKey:
    return (WARD_NAME, (name or "").strip())


def describe(key: ResourceKey) -> str:
    kind, resource_id = key
    if isinstance(resource_id, str):
        return f"{KIND_NAMES.get(kind, 'resource')} '{resource_id}'"
    return f"{KIND_NAMES.get(kind, 'resource')} #{resource_id}"


class LockManager:
    """Per-resource mutual exclusion with ordered, bounded acquisition."""

    def __init__(
        self,
        timeout: float = LOCK_TIMEOUT_SECONDS,
        attempts: int = LOCK_ATTEMPTS,
        backoff: float = LOCK_BACKOFF_SECONDS,
    ):
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.timeout = timeout
        self.attempts = attempts
        self.backoff = backoff
        self._guard = threading.Lock()
        self._locks: dict[ResourceKey, threading.Lock] = {}

    def _lock_for(self, key: ResourceKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _acquire(self, lock: threading.Lock) -> bool:
        for attempt in range(self.attempts):
            if lock.acquire(timeout=self.timeout):
                return True
            if attempt + 1 < self.attempts:
                time.sleep(self.backoff * (2 ** attempt))
        return False

    @contextmanager
    def hold(self, *keys: Optional[ResourceKey]) -> Iterator[None]:
        ordered = sorted({key for key in keys if key is not None})
        acquired: list[threading.Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                if not self._acquire(lock):
                    logger.warning("Gave up waiting for %s", describe(key))
                    raise ConflictError(f"{describe(key).capitalize()} is busy; retry the request")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
