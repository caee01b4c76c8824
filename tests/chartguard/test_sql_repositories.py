from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from src.chartguard.domain.models.alert import Alert, AlertSeverity
from src.chartguard.domain.models.audit_event import AuditAction, AuditContext
from src.chartguard.domain.models.finding import FindingKind
from src.chartguard.domain.models.patient import Patient
from src.chartguard.domain.models.record_section import RecordSection, SectionEntry, SectionName
from src.chartguard.domain.models.verification import SourceType, VerificationItem, VerificationStatus
from src.chartguard.errors import ConflictError, DecryptionError
from src.chartguard.infra.db.bootstrap import build_sql_repositories
from src.chartguard.infra.db.models import RecordSectionORM
from src.chartguard.services.audit.service import AuditTrail
from src.chartguard.services.encryption.envelope import EncryptionEnvelope, StaticKeyProvider
from src.chartguard.services.ingestion.service import Channel

NOW = datetime(2026, 2, 26, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def repos(envelope):
    return build_sql_repositories("sqlite:///:memory:", envelope)


def labs(value="450"):
    return RecordSection(
        patient_id="pat-1",
        name=SectionName.LABS,
        subsections={
            "labs": [
                SectionEntry(
                    kind=FindingKind.LAB,
                    subsection="labs",
                    name="BNP",
                    value=value,
                    unit="pg/mL",
                    date=date(2026, 2, 25),
                    recorded_at=NOW,
                )
            ]
        },
    )


def item(item_id="item-1"):
    return VerificationItem(
        id=item_id,
        patient_id="pat-1",
        resource_type="Labs",
        resource_id="entry-1",
        label="BNP: 450 pg/mL",
        source_type=SourceType.EMR_IMPORT,
        confidence=2,
        created_at=NOW,
    )


def test_patient_round_trip(repos):
    repos.patients.save(Patient(id="pat-1", organization_id="org-1", enrolled_at=NOW))
    repos.patients.save(Patient(id="pat-1", organization_id="org-1", enrolled_at=NOW, agent_enabled=False))
    patient = repos.patients.get("pat-1")
    assert patient.agent_enabled is False
    assert patient.enrolled_at == NOW
    assert repos.patients.get("missing") is None


def test_commit_merge_creates_then_updates_with_version_check(repos):
    (created,) = repos.sections.commit_merge([labs()], {}, [item()])
    assert created.version == 1
    stored = repos.sections.get("pat-1", SectionName.LABS)
    assert stored.subsections["labs"][0].value == "450"
    assert repos.verification_items.get("item-1").label == "BNP: 450 pg/mL"

    (updated,) = repos.sections.commit_merge([labs("470")], {SectionName.LABS: 1})
    assert updated.version == 2
    assert repos.sections.get("pat-1", SectionName.LABS).subsections["labs"][0].value == "470"


def test_stale_commit_writes_nothing(repos):
    repos.sections.commit_merge([labs()], {})
    with pytest.raises(ConflictError):
        repos.sections.commit_merge([labs("999")], {SectionName.LABS: 0}, [item("item-2")])
    with pytest.raises(ConflictError):
        repos.sections.commit_merge([labs("999")], {SectionName.LABS: 5}, [item("item-3")])

    assert repos.sections.get("pat-1", SectionName.LABS).subsections["labs"][0].value == "450"
    assert repos.verification_items.get("item-2") is None
    assert repos.verification_items.get("item-3") is None


def test_section_content_is_encrypted_and_fails_closed(repos, envelope):
    repos.sections.commit_merge([labs()], {})
    session = repos.sections._session_factory()
    try:
        orm = session.scalars(select(RecordSectionORM)).one()
        assert "BNP" not in orm.enc_content
    finally:
        session.close()

    other = build_sql_repositories("sqlite:///:memory:", EncryptionEnvelope(StaticKeyProvider(bytes(32))))
    other.sections.commit_merge([labs()], {})
    other.sections._envelope = envelope
    with pytest.raises(DecryptionError):
        other.sections.get("pat-1", SectionName.LABS)


def test_verification_compare_and_set(repos):
    repos.verification_items.add(item())
    verified = item().model_copy(
        update={"status": VerificationStatus.VERIFIED, "verified_by": "dr-1", "verified_at": NOW}
    )
    assert repos.verification_items.compare_and_set_status(verified, VerificationStatus.UNVERIFIED) is True
    assert repos.verification_items.compare_and_set_status(verified, VerificationStatus.UNVERIFIED) is False

    stored = repos.verification_items.get("item-1")
    assert stored.status is VerificationStatus.VERIFIED
    assert stored.verified_at == NOW
    assert list(repos.verification_items.list_by_patient("pat-1", status=VerificationStatus.UNVERIFIED)) == []


def test_alert_listing_and_resolve_once(repos):
    for minutes, severity in ((90, AlertSeverity.HIGH), (5, AlertSeverity.CRITICAL)):
        repos.alerts.add(
            Alert(
                id=f"alert-{minutes}",
                patient_id="pat-1",
                organization_id="org-1",
                severity=severity,
                category="emergency_escalation",
                message="chest pain",
                trigger_source="patient_sms",
                created_at=NOW - timedelta(minutes=minutes),
            )
        )

    assert [a.id for a in repos.alerts.list_by_patient("pat-1")] == ["alert-5", "alert-90"]
    assert [a.id for a in repos.alerts.list_by_patient("pat-1", since=NOW - timedelta(minutes=30))] == ["alert-5"]

    alert = repos.alerts.get("alert-5")
    resolved = alert.model_copy(update={"resolved": True, "resolved_by": "dr-1", "resolved_at": NOW, "resolution_note": "ok"})
    assert repos.alerts.resolve_if_open(resolved) is True
    assert repos.alerts.resolve_if_open(resolved) is False
    assert repos.alerts.get("alert-5").resolution_note == "ok"
    assert [a.id for a in repos.alerts.list_by_patient("pat-1", include_resolved=False)] == ["alert-90"]


def test_audit_events_are_appended(repos):
    trail = AuditTrail(repos.audit_events, asynchronous=False)
    ctx = AuditContext(actor="dr-1", organization_id="org-1", patient_id="pat-1")
    trail.record(AuditAction.READ, "patient_record", "pat-1", ctx, {"entries": 2})
    trail.record(AuditAction.READ, "patient_record", "pat-2", AuditContext(actor="dr-1", patient_id="pat-2"))

    (event,) = repos.audit_events.list_events(patient_id="pat-1")
    assert event.action is AuditAction.READ
    assert event.details == {"entries": 2}
    assert event.timestamp.tzinfo is not None
    assert trail.failure_count == 0


def test_ingestion_runs_on_sql_repositories(context_factory, envelope, clinician):
    repos = build_sql_repositories("sqlite:///:memory:", envelope)
    context = context_factory(repositories=repos)
    ingestion = context.ingestion
    ingestion.enroll_patient(clinician, "pat-1")

    result = ingestion.ingest_clinical_text("pat-1", "BNP 450 pg/mL on 2026-02-25", clinician)
    assert result.added == 1
    again = ingestion.ingest_clinical_text("pat-1", "BNP 470 pg/mL on 2026-02-25", clinician)
    assert again.replaced == 1

    record = ingestion.get_record("pat-1", clinician)
    assert record[SectionName.LABS].version == 2
    assert [i.label for i in ingestion.review_queue("pat-1", clinician)] == ["BNP: 450 pg/mL", "BNP: 470 pg/mL"]

    for _ in range(3):
        ingestion.ingest_utterance("pat-1", "I passed out", clinician, Channel.SMS)
    assert repos.patients.get("pat-1").agent_enabled is False
    assert len(repos.audit_events.list_events(patient_id="pat-1")) == 8
