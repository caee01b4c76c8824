from __future__ import annotations

import json
import logging
import queue
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional
from uuid import uuid4

from src.chartguard.domain.models.audit_event import AuditAction, AuditContext, AuditEvent
from src.chartguard.errors import AuditWriteFailure
from src.chartguard.infra.db.repositories import AuditEventRepository

logger = logging.getLogger("audit")

# Longest string accepted in ``details``. Anything longer is more likely to
# be free text than an enum or identifier.
MAX_DETAIL_STRING = 64

_STOP = object()


def sanitize_details(details: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Keep only small scalar metadata (counts, enums, booleans, short ids).

    Dropped keys are listed under ``dropped_keys`` so a reviewer can tell that
    something was withheld without seeing what it was.
    """

    if not details:
        return {}
    clean: Dict[str, Any] = {}
    dropped = []
    for key, value in details.items():
        if isinstance(value, Enum):
            value = value.value
        if isinstance(value, bool) or isinstance(value, (int, float)):
            clean[str(key)] = value
        elif isinstance(value, str) and len(value) <= MAX_DETAIL_STRING and "\n" not in value:
            clean[str(key)] = value
        else:
            dropped.append(str(key))
    if dropped:
        clean["dropped_keys"] = ",".join(sorted(dropped))[:MAX_DETAIL_STRING]
    return clean


class AuditTrail:
    """Append-only audit recorder with a bounded background writer.

    ``record`` never raises for write problems. Availability is chosen over
    strict audit atomicity: if the queue is full or the repository rejects an
    event, the primary clinical action still completes and the failure is
    surfaced as an :class:`AuditWriteFailure` signal (ERROR log line,
    ``failure_count`` and the optional ``on_failure`` callback) for
    out-of-band investigation.
    """

    def __init__(
        self,
        repository: AuditEventRepository,
        *,
        asynchronous: bool = True,
        queue_size: int = 1000,
        on_failure: Optional[Callable[[AuditWriteFailure], None]] = None,
    ) -> None:
        self._repository = repository
        self._asynchronous = asynchronous
        self._on_failure = on_failure
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=queue_size)
        self._failure_lock = threading.Lock()
        self._failure_count = 0
        self._worker: Optional[threading.Thread] = None
        if asynchronous:
            self._worker = threading.Thread(target=self._drain, name="audit-writer", daemon=True)
            self._worker.start()

    @property
    def failure_count(self) -> int:
        with self._failure_lock:
            return self._failure_count

    def record(
        self,
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str],
        context: AuditContext,
        details: Optional[Mapping[str, Any]] = None,
    ) -> AuditEvent:
        """Build and submit one audit event; return it regardless of write outcome."""

        event = AuditEvent(
            id=uuid4().hex,
            timestamp=datetime.now(timezone.utc),
            actor=context.actor,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            organization_id=context.organization_id,
            patient_id=context.patient_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details=sanitize_details(details),
        )
        logger.info(json.dumps(event.model_dump(mode="json")))

        if not self._asynchronous:
            self._write(event)
            return event

        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._signal_failure(event, "audit queue full")
        return event

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued event has been handled. Returns False on timeout."""

        if not self._asynchronous:
            return True
        done = threading.Event()

        def _wait() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        return done.wait(timeout)

    def close(self, timeout: float = 5.0) -> None:
        if self._worker is None:
            return
        self.flush(timeout)
        self._queue.put(_STOP)
        self._worker.join(timeout)
        self._worker = None

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._write(item)
            finally:
                self._queue.task_done()

    def _write(self, event: AuditEvent) -> None:
        try:
            self._repository.append(event)
        except Exception as exc:
            self._signal_failure(event, f"{type(exc).__name__} while appending audit event")

    def _signal_failure(self, event: AuditEvent, reason: str) -> None:
        with self._failure_lock:
            self._failure_count += 1
        logger.error(
            "[AUDIT_FAIL] action=%s resource=%s id=%s actor=%s reason=%s",
            event.action.value,
            event.resource_type,
            event.resource_id,
            event.actor,
            reason,
        )
        if self._on_failure is None:
            return
        failure = AuditWriteFailure(
            reason,
            action=event.action.value,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            actor=event.actor,
        )
        try:
            self._on_failure(failure)
        except Exception:
            logger.exception("Audit failure callback raised")
