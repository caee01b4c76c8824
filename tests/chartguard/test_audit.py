import logging
import threading

from src.chartguard.domain.models.audit_event import AuditAction, AuditContext
from src.chartguard.domain.models.verification import SourceType
from src.chartguard.infra.db.inmemory import InMemoryAuditEventRepository
from src.chartguard.infra.db.repositories import AuditEventRepository
from src.chartguard.services.audit.service import AuditTrail, sanitize_details

CTX = AuditContext(actor="dr-1", organization_id="org-1", patient_id="pat-1")


class FailingAuditRepository(AuditEventRepository):
    def append(self, event):
        raise OSError("disk full")

    def list_events(self, *, patient_id=None, since=None):
        return []


class BlockingAuditRepository(InMemoryAuditEventRepository):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def append(self, event):
        self.release.wait(5)
        super().append(event)


def test_sync_record_writes_exactly_one_event():
    repo = InMemoryAuditEventRepository()
    trail = AuditTrail(repo, asynchronous=False)

    event = trail.record(AuditAction.READ, "patient_record", "pat-1", CTX, {"entries": 3})

    events = repo.list_events(patient_id="pat-1")
    assert [e.id for e in events] == [event.id]
    assert events[0].details == {"entries": 3}
    assert events[0].actor == "dr-1"


def test_async_worker_drains_queue_on_flush():
    repo = InMemoryAuditEventRepository()
    trail = AuditTrail(repo, asynchronous=True, queue_size=100)
    for _ in range(20):
        trail.record(AuditAction.READ, "alert", None, CTX)
    assert trail.flush(5)
    assert len(repo.list_events()) == 20
    trail.close()


def test_repository_failure_is_signalled_not_raised(caplog):
    failures = []
    trail = AuditTrail(FailingAuditRepository(), asynchronous=False, on_failure=failures.append)

    with caplog.at_level(logging.ERROR, logger="audit"):
        event = trail.record(AuditAction.UPDATE, "alert", "alert-1", CTX)

    assert event.resource_id == "alert-1"
    assert trail.failure_count == 1
    assert len(failures) == 1
    assert failures[0].action == "UPDATE"
    assert failures[0].resource_id == "alert-1"
    assert any("[AUDIT_FAIL] action=UPDATE resource=alert id=alert-1 actor=dr-1" in r.getMessage() for r in caplog.records)


def test_full_queue_is_signalled():
    repo = BlockingAuditRepository()
    failures = []
    trail = AuditTrail(repo, asynchronous=True, queue_size=1, on_failure=failures.append)
    try:
        # One event is picked up by the worker (blocked), one fills the queue,
        # the rest overflow.
        for _ in range(5):
            trail.record(AuditAction.READ, "patient_record", "pat-1", CTX)
        assert trail.failure_count >= 2
        assert len(failures) == trail.failure_count
    finally:
        repo.release.set()
        trail.close()


def test_failure_callback_errors_do_not_propagate():
    def explode(_failure):
        raise RuntimeError("pager down")

    trail = AuditTrail(FailingAuditRepository(), asynchronous=False, on_failure=explode)
    trail.record(AuditAction.READ, "alert", None, CTX)
    assert trail.failure_count == 1


def test_sanitize_details_drops_free_text():
    details = sanitize_details(
        {
            "count": 2,
            "ok": True,
            "source_type": SourceType.EMR_IMPORT,
            "ratio": 0.5,
            "note": "BNP 450 pg/mL\npatient reports chest pain",
            "payload": {"nested": "x"},
            "long": "y" * 200,
        }
    )
    assert details["count"] == 2
    assert details["ok"] is True
    assert details["source_type"] == "EMR_IMPORT"
    assert details["ratio"] == 0.5
    assert "note" not in details
    assert "payload" not in details
    assert "long" not in details
    assert details["dropped_keys"] == "long,note,payload"


def test_audit_log_line_is_json(caplog):
    trail = AuditTrail(InMemoryAuditEventRepository(), asynchronous=False)
    with caplog.at_level(logging.INFO, logger="audit"):
        trail.record(AuditAction.CREATE, "patient", "pat-1", CTX)
    assert any('"action": "CREATE"' in r.getMessage() for r in caplog.records)
