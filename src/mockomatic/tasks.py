from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .allocation import allocate_session
from .errors import AllocationError

logger = logging.getLogger("mockomatic")


@dataclass
class AllocationRunRecord:
    id: str
    session_id: str
    status: str
    created_at: float
    modified_by: str
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class AllocationRunManager:
    """Runs allocations for independent sessions on a thread pool."""

    def __init__(self, store, max_workers: int = 2) -> None:
        self._store = store
        self._runs: Dict[str, AllocationRunRecord] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    def submit(self, session_id: str, modified_by: str, settings: Optional[Dict[str, Any]] = None) -> AllocationRunRecord:
        run_id = uuid.uuid4().hex
        record = AllocationRunRecord(
            id=run_id,
            session_id=session_id,
            status="pending",
            created_at=time.time(),
            modified_by=modified_by,
            metadata={"settings": dict(settings or {})},
        )
        with self._lock:
            self._runs[run_id] = record
            self._futures[run_id] = self._executor.submit(self._execute, run_id, settings)
        return record

    def list_runs(self) -> Dict[str, AllocationRunRecord]:
        with self._lock:
            return dict(self._runs)

    def get(self, run_id: str) -> Optional[AllocationRunRecord]:
        with self._lock:
            return self._runs.get(run_id)

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[AllocationRunRecord]:
        with self._lock:
            future = self._futures.get(run_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get(run_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _execute(self, run_id: str, settings: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            record = self._runs.get(run_id)
            if not record:
                return
            record.status = "running"
            record.started_at = time.time()
            session_id, modified_by = record.session_id, record.modified_by
        try:
            outcome = allocate_session(self._store, session_id, modified_by, settings)
            with self._lock:
                record.result = outcome.to_dict()
                record.status = "succeeded"
                record.finished_at = time.time()
        except AllocationError as exc:
            with self._lock:
                record.error = exc.to_dict()
                record.status = "failed"
                record.finished_at = time.time()
            logger.warning("allocation.run.failed run_id=%s session=%s error=%s", run_id, session_id, exc)
        except Exception as exc:
            with self._lock:
                record.error = {"error": type(exc).__name__, "message": str(exc)}
                record.status = "failed"
                record.finished_at = time.time()
            logger.exception("allocation.run.crashed run_id=%s session=%s", run_id, session_id)


__all__ = ["AllocationRunManager", "AllocationRunRecord"]
