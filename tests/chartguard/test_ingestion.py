import json
import threading

import pytest

from src.chartguard.domain.models.alert import AlertSeverity
from src.chartguard.domain.models.audit_event import AuditAction, AuditContext
from src.chartguard.domain.models.record_section import SectionName
from src.chartguard.domain.models.verification import SourceType, VerificationAction, VerificationStatus
from src.chartguard.errors import (
    AuthorizationError,
    ConflictError,
    ExtractionError,
    ExtractionTimeout,
    NotFoundError,
    ValidationError,
)
from src.chartguard.services.alerts.service import ACCOUNT_LOCKED
from src.chartguard.services.ingestion.service import Channel

LAB_NOTE = "Labs 2026-02-25: BNP 450 pg/mL, Potassium 5.8 mEq/L. History of atrial fibrillation."
OUTSIDER = AuditContext(actor="dr-9", organization_id="org-2")


class CrashingBackend:
    def extract(self, raw_text):
        raise RuntimeError("upstream 500")


class SlowBackend:
    def __init__(self):
        self.release = threading.Event()

    def extract(self, raw_text):
        self.release.wait(5)
        return {"labs": [{"name": "BNP", "value": "450"}]}


def events(context, **filters):
    return context.repositories.audit_events.list_events(**filters)


def record_snapshot(context, patient_id, clinician):
    return {
        name: section.content_key()
        for name, section in context.repositories.sections.get_all(patient_id).items()
    }


@pytest.fixture
def patient(app_context, clinician):
    return app_context.ingestion.enroll_patient(clinician, "pat-1")


def test_clinical_text_is_merged_with_verification_and_alerts(app_context, patient, clinician):
    result = app_context.ingestion.ingest_clinical_text(patient.id, LAB_NOTE, clinician)

    assert set(result.sections_changed) == {SectionName.LABS, SectionName.MEDICAL_HISTORY}
    assert result.added == 3
    assert "2 new lab values captured" in result.summary
    assert len(result.verification_item_ids) == 3
    assert len(result.alert_ids) == 1

    record = app_context.ingestion.get_record(patient.id, clinician)
    assert [e.name for e in record[SectionName.LABS].subsections["labs"]] == ["BNP", "Potassium"]
    assert record[SectionName.LABS].version == 1

    queue = app_context.ingestion.review_queue(patient.id, clinician)
    assert {i.label for i in queue} == {"BNP: 450 pg/mL", "Potassium: 5.8 mEq/L", "atrial fibrillation"}
    assert all(i.source_type is SourceType.EMR_IMPORT and i.confidence == 2 for i in queue)

    (alert,) = app_context.ingestion.list_alerts(patient.id, clinician)
    assert alert.severity is AlertSeverity.HIGH
    assert alert.category == "lab_threshold"


def test_resubmitting_the_same_text_changes_nothing(app_context, patient, clinician):
    app_context.ingestion.ingest_clinical_text(patient.id, LAB_NOTE, clinician)
    before = record_snapshot(app_context, patient.id, clinician)

    again = app_context.ingestion.ingest_clinical_text(patient.id, LAB_NOTE, clinician)

    assert again.sections_changed == []
    assert again.verification_item_ids == []
    assert record_snapshot(app_context, patient.id, clinician) == before
    assert len(app_context.ingestion.review_queue(patient.id, clinician)) == 3


def test_clinician_entered_text_is_not_queued_for_review(app_context, patient, clinician):
    result = app_context.ingestion.ingest_clinical_text(patient.id, LAB_NOTE, clinician, SourceType.CLINICIAN)
    assert result.added == 3
    assert result.verification_item_ids == []
    assert app_context.ingestion.review_queue(patient.id, clinician) == []


@pytest.mark.parametrize("backend_cls, error", [(CrashingBackend, ExtractionError), (SlowBackend, ExtractionTimeout)])
def test_failed_extraction_leaves_record_untouched(context_factory, clinician, backend_cls, error):
    backend = backend_cls()
    context = context_factory({"extraction_timeout_seconds": 0.05}, extraction_backend=backend)
    context.ingestion.enroll_patient(clinician, "pat-1")
    before = record_snapshot(context, "pat-1", clinician)

    try:
        with pytest.raises(error):
            context.ingestion.ingest_clinical_text("pat-1", LAB_NOTE, clinician)
    finally:
        if isinstance(backend, SlowBackend):
            backend.release.set()

    assert record_snapshot(context, "pat-1", clinician) == before
    assert context.ledger.list_pending("pat-1") == []
    failed = [e for e in events(context, patient_id="pat-1") if e.resource_type == "patient_record"]
    assert len(failed) == 1
    assert failed[0].details["outcome"] == "failure"
    assert failed[0].details["error"] == error.code


def test_merge_waits_for_patient_lock_then_conflicts(context_factory, clinician):
    context = context_factory({"merge_lock_timeout_seconds": 0.05})
    context.ingestion.enroll_patient(clinician, "pat-1")

    with context.locks.hold("pat-1"):
        with pytest.raises(ConflictError):
            context.ingestion.ingest_clinical_text("pat-1", LAB_NOTE, clinician)

    assert context.ledger.list_pending("pat-1") == []
    result = context.ingestion.ingest_clinical_text("pat-1", LAB_NOTE, clinician)
    assert result.added == 3


def test_stale_version_commit_writes_nothing(app_context, patient, clinician):
    app_context.ingestion.ingest_clinical_text(patient.id, LAB_NOTE, clinician)
    sections = app_context.repositories.sections
    current = sections.get(patient.id, SectionName.LABS)
    edited = current.model_copy(deep=True)
    edited.subsections["labs"].pop()

    with pytest.raises(ConflictError):
        sections.commit_merge([edited], {SectionName.LABS: current.version - 1})

    assert sections.get(patient.id, SectionName.LABS).content_key() == current.content_key()


def test_scope_checks(app_context, patient, clinician):
    ingestion = app_context.ingestion
    item_id = ingestion.ingest_clinical_text(patient.id, LAB_NOTE, clinician).verification_item_ids[0]
    alert_id = ingestion.list_alerts(patient.id, clinician)[0].id

    with pytest.raises(NotFoundError):
        ingestion.get_record(patient.id, OUTSIDER)
    with pytest.raises(NotFoundError):
        ingestion.ingest_utterance(patient.id, "chest pain", OUTSIDER, Channel.SMS)
    with pytest.raises(AuthorizationError):
        ingestion.review_transition(item_id, VerificationAction.VERIFY, OUTSIDER)
    with pytest.raises(AuthorizationError):
        ingestion.resolve_alert(alert_id, OUTSIDER, "ok")
    with pytest.raises(AuthorizationError):
        ingestion.get_record(patient.id, AuditContext(actor="dr-1"))
    with pytest.raises(NotFoundError):
        ingestion.get_record("nobody", clinician)

    assert app_context.ledger.get(item_id).status is VerificationStatus.UNVERIFIED
    assert app_context.alerts.get(alert_id).resolved is False


def test_enrolling_twice_conflicts(app_context, patient, clinician):
    with pytest.raises(ConflictError):
        app_context.ingestion.enroll_patient(clinician, patient.id)


def test_review_transition_is_terminal(app_context, patient, clinician):
    ingestion = app_context.ingestion
    item_id = ingestion.ingest_clinical_text(patient.id, LAB_NOTE, clinician).verification_item_ids[0]

    disputed = ingestion.review_transition(item_id, VerificationAction.DISPUTE, clinician)
    assert disputed.status is VerificationStatus.DISPUTED
    assert disputed.verified_by == "dr-1"

    with pytest.raises(ConflictError):
        ingestion.review_transition(item_id, VerificationAction.VERIFY, clinician)
    assert app_context.ledger.get(item_id).status is VerificationStatus.DISPUTED


def test_emergency_utterance_raises_alert(app_context, patient, clinician):
    outcome = app_context.ingestion.ingest_utterance(
        patient.id, "I have crushing chest pain and can't breathe", clinician, Channel.SMS
    )

    assert outcome.decision.requires_escalation is True
    assert {"chest pain", "can't breathe"} <= set(outcome.decision.matched_signals)
    alert = app_context.alerts.get(outcome.alert_id)
    assert alert.severity is AlertSeverity.CRITICAL
    assert alert.trigger_source == "patient_sms"
    assert "chest pain" in alert.message


def test_routine_utterance_creates_no_alert(app_context, patient, clinician):
    outcome = app_context.ingestion.ingest_utterance(patient.id, "Weight 81 kg today", clinician, Channel.PORTAL)
    assert outcome.decision.requires_escalation is False
    assert outcome.alert_id is None
    assert app_context.ingestion.list_alerts(patient.id, clinician) == []


def test_empty_utterance_is_rejected(app_context, patient, clinician):
    with pytest.raises(ValidationError):
        app_context.ingestion.ingest_utterance(patient.id, "  ", clinician, Channel.SMS)


def test_escalation_ignores_verification_state(app_context, patient, clinician):
    ingestion = app_context.ingestion
    first = ingestion.ingest_utterance(
        patient.id, "chest pain since this morning", clinician, Channel.SMS, register_self_report=True
    )
    ingestion.review_transition(first.verification_item_id, VerificationAction.DISPUTE, clinician)

    second = ingestion.ingest_utterance(patient.id, "chest pain since this morning", clinician, Channel.SMS)

    assert second.decision.model_dump(exclude={"reason"}) == first.decision.model_dump(exclude={"reason"})
    assert second.alert_id is not None


def test_self_report_is_registered_with_estimated_confidence(app_context, patient, clinician):
    outcome = app_context.ingestion.ingest_utterance(
        patient.id, "I take metoprolol 25 mg twice a day", clinician, Channel.VOICE, register_self_report=True
    )
    item = app_context.ledger.get(outcome.verification_item_id)
    assert item.source_type is SourceType.PATIENT_VOICE
    assert item.confidence == 3
    assert item.resource_type == "self_report"
    (event,) = [e for e in events(app_context, patient_id=patient.id) if e.resource_type == "patient_utterance"]
    assert event.action is AuditAction.VOICE_CALL
    assert event.details["confidence"] == 3


def test_repeated_escalations_lock_the_account(app_context, patient, clinician):
    ingestion = app_context.ingestion
    outcomes = [ingestion.ingest_utterance(patient.id, "chest pain again", clinician, Channel.SMS) for _ in range(4)]

    assert [o.account_locked for o in outcomes] == [False, False, True, True]
    assert app_context.repositories.patients.get(patient.id).agent_enabled is False
    alerts = ingestion.list_alerts(patient.id, clinician)
    assert sum(1 for a in alerts if a.category == ACCOUNT_LOCKED) == 1
    assert sum(1 for a in alerts if a.category == "emergency_escalation") == 4


def test_resolve_alert(app_context, patient, clinician):
    outcome = app_context.ingestion.ingest_utterance(patient.id, "I fainted", clinician, Channel.SMS)
    resolved = app_context.ingestion.resolve_alert(outcome.alert_id, clinician, "Patient seen in clinic")
    assert resolved.resolved_by == "dr-1"
    with pytest.raises(ConflictError):
        app_context.ingestion.resolve_alert(outcome.alert_id, clinician)
    assert app_context.ingestion.list_alerts(patient.id, clinician, include_resolved=False) == []


def test_every_operation_is_audited_once_without_protected_content(app_context, patient, clinician):
    ingestion = app_context.ingestion
    result = ingestion.ingest_clinical_text(patient.id, LAB_NOTE, clinician)
    ingestion.get_record(patient.id, clinician)
    ingestion.review_queue(patient.id, clinician)
    ingestion.review_transition(result.verification_item_ids[0], VerificationAction.VERIFY, clinician)
    utterance = ingestion.ingest_utterance(patient.id, "crushing chest pain", clinician, Channel.SMS)
    ingestion.list_alerts(patient.id, clinician)
    ingestion.resolve_alert(utterance.alert_id, clinician, "sent to ED by ambulance")
    with pytest.raises(NotFoundError):
        ingestion.get_record(patient.id, OUTSIDER)

    recorded = events(app_context, patient_id=patient.id)
    assert [(e.action, e.resource_type) for e in recorded] == [
        (AuditAction.CREATE, "patient"),
        (AuditAction.UPDATE, "patient_record"),
        (AuditAction.READ, "patient_record"),
        (AuditAction.READ, "verification_queue"),
        (AuditAction.UPDATE, "verification_item"),
        (AuditAction.CREATE, "patient_utterance"),
        (AuditAction.READ, "alert"),
        (AuditAction.UPDATE, "alert"),
        (AuditAction.READ, "patient_record"),
    ]
    assert [e.details["outcome"] for e in recorded].count("failure") == 1
    assert recorded[-1].actor == "dr-9"
    assert recorded[-1].details["error"] == "not_found"
    assert all(e.ip_address == "10.0.0.1" for e in recorded[:-1])

    dumped = json.dumps([e.model_dump(mode="json") for e in recorded])
    for protected in ("BNP", "Potassium", "atrial", "crushing", "chest pain", "ambulance"):
        assert protected not in dumped


def test_care_plan_original_is_written_once_and_survives_merges(app_context, patient, clinician):
    original = "Baseline plan:\n  GDMT titration, daily weights.\n"
    created = app_context.ingestion.create_care_plan(patient.id, original, clinician)
    assert created.original == original
    assert created.version == 1

    with pytest.raises(ConflictError):
        app_context.ingestion.create_care_plan(patient.id, "Replacement plan", clinician)

    result = app_context.ingestion.ingest_clinical_text(
        patient.id, "Plan: Increase furosemide to 40 mg daily; Follow up in 2 weeks", clinician
    )
    assert SectionName.CARE_PLAN in result.sections_changed

    care_plan = app_context.ingestion.get_record(patient.id, clinician)[SectionName.CARE_PLAN]
    assert care_plan.original == original
    assert [e.text for e in care_plan.subsections["addenda"]] == [
        "Increase furosemide to 40 mg daily",
        "Follow up in 2 weeks",
    ]

    recorded = [e for e in events(app_context, patient_id=patient.id) if e.resource_type == "care_plan"]
    assert [e.details["outcome"] for e in recorded] == ["success", "failure"]
    assert recorded[1].details["error"] == "conflict"
    assert "GDMT" not in json.dumps([e.model_dump(mode="json") for e in recorded])


def test_care_plan_requires_content_and_scope(app_context, patient, clinician):
    with pytest.raises(ValidationError):
        app_context.ingestion.create_care_plan(patient.id, "   ", clinician)
    with pytest.raises(NotFoundError):
        app_context.ingestion.create_care_plan(patient.id, "Plan", OUTSIDER)
    assert app_context.repositories.sections.get(patient.id, SectionName.CARE_PLAN) is None
