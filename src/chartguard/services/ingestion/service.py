from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from src.chartguard.domain.models.alert import Alert, AlertSeverity, max_severity
from src.chartguard.domain.models.audit_event import AuditAction, AuditContext
from src.chartguard.domain.models.escalation import EscalationDecision
from src.chartguard.domain.models.finding import Finding, FindingKind
from src.chartguard.domain.models.patient import Patient, PatientContext
from src.chartguard.domain.models.record_section import RecordSection, SectionName
from src.chartguard.domain.models.verification import SourceType, VerificationAction, VerificationItem
from src.chartguard.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from src.chartguard.infra.db.repositories import PatientRepository, RecordSectionRepository
from src.chartguard.infra.locks import PatientLockRegistry
from src.chartguard.services.alerts.service import AlertLifecycle
from src.chartguard.services.alerts.thresholds import ThresholdTable
from src.chartguard.services.audit.service import AuditTrail
from src.chartguard.services.escalation.service import EscalationDetector
from src.chartguard.services.extraction.service import ExtractionService
from src.chartguard.services.merge.service import MergeEngine
from src.chartguard.services.verification.attribution import estimate_confidence
from src.chartguard.services.verification.service import VerificationLedger

logger = logging.getLogger(__name__)

ESCALATION_CATEGORY = "emergency_escalation"
THRESHOLD_TRIGGER = "threshold_check"


class Channel(str, Enum):
    SMS = "SMS"
    VOICE = "VOICE"
    PORTAL = "PORTAL"

    @property
    def source_type(self) -> SourceType:
        return {
            Channel.SMS: SourceType.PATIENT_SMS,
            Channel.VOICE: SourceType.PATIENT_VOICE,
            Channel.PORTAL: SourceType.PATIENT_PORTAL,
        }[self]


class IngestionResult(BaseModel):
    summary: str
    sections_changed: List[SectionName] = Field(default_factory=list)
    added: int = 0
    replaced: int = 0
    contradicted: int = 0
    verification_item_ids: List[str] = Field(default_factory=list)
    alert_ids: List[str] = Field(default_factory=list)


class UtteranceOutcome(BaseModel):
    decision: EscalationDecision
    alert_id: Optional[str] = None
    account_locked: bool = False
    verification_item_id: Optional[str] = None


@dataclass
class _AuditDraft:
    context: AuditContext
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class IngestionService:
    """Entry point for every patient-scoped operation.

    Each public method emits exactly one audit event, whether it succeeds
    or fails, and enforces organization scoping before touching patient
    data. Escalation is always evaluated before anything reads or writes
    verification state.
    """

    def __init__(
        self,
        *,
        patients: PatientRepository,
        sections: RecordSectionRepository,
        extraction: ExtractionService,
        merge_engine: MergeEngine,
        ledger: VerificationLedger,
        detector: EscalationDetector,
        alerts: AlertLifecycle,
        thresholds: ThresholdTable,
        audit_trail: AuditTrail,
        locks: PatientLockRegistry,
    ) -> None:
        self._patients = patients
        self._sections = sections
        self._extraction = extraction
        self._merge_engine = merge_engine
        self._ledger = ledger
        self._detector = detector
        self._alerts = alerts
        self._thresholds = thresholds
        self._audit_trail = audit_trail
        self._locks = locks

    @contextmanager
    def _audited(
        self,
        action: AuditAction,
        resource_type: str,
        context: AuditContext,
        resource_id: Optional[str] = None,
    ) -> Iterator[_AuditDraft]:
        draft = _AuditDraft(context=context, resource_id=resource_id)
        try:
            yield draft
        except Exception as exc:
            draft.details["outcome"] = "failure"
            draft.details["error"] = getattr(exc, "code", "internal_error")
            self._audit_trail.record(action, resource_type, draft.resource_id, draft.context, draft.details)
            raise
        draft.details["outcome"] = "success"
        self._audit_trail.record(action, resource_type, draft.resource_id, draft.context, draft.details)

    @staticmethod
    def _organization(context: AuditContext) -> str:
        if not context.organization_id:
            raise AuthorizationError("organization is required")
        return context.organization_id

    def _load_patient(self, patient_id: str, context: AuditContext) -> Patient:
        organization_id = self._organization(context)
        patient = self._patients.get(patient_id)
        if patient is None or patient.organization_id != organization_id:
            # Patients of other organizations are indistinguishable from missing ones.
            raise NotFoundError("patient not found")
        return patient

    def _check_reviewer(self, patient_id: str, context: AuditContext) -> None:
        organization_id = self._organization(context)
        patient = self._patients.get(patient_id)
        if patient is None:
            raise NotFoundError("patient not found")
        if patient.organization_id != organization_id:
            raise AuthorizationError("reviewer is not bound to the patient's organization")

    # Patients

    def enroll_patient(self, context: AuditContext, patient_id: Optional[str] = None) -> Patient:
        with self._audited(AuditAction.CREATE, "patient", context, patient_id) as audit:
            organization_id = self._organization(context)
            patient_id = patient_id or uuid4().hex
            audit.resource_id = patient_id
            audit.context = context.for_patient(patient_id)
            if self._patients.get(patient_id) is not None:
                raise ConflictError("patient already enrolled")
            patient = Patient(id=patient_id, organization_id=organization_id, enrolled_at=datetime.now(timezone.utc))
            self._patients.save(patient)
            return patient

    # Care plan

    def create_care_plan(self, patient_id: str, content: str, context: AuditContext) -> RecordSection:
        """Write the CarePlan's original content. It can be set only once; later changes are addenda."""

        with self._audited(AuditAction.CREATE, "care_plan", context.for_patient(patient_id), patient_id) as audit:
            patient = self._load_patient(patient_id, context)
            if not isinstance(content, str) or not content.strip():
                raise ValidationError("care plan content is empty")
            with self._locks.hold(patient.id):
                current = self._sections.get(patient.id, SectionName.CARE_PLAN)
                if current is not None and current.original:
                    raise ConflictError("care plan already created")
                base = current or RecordSection.empty(patient.id, SectionName.CARE_PLAN)
                (stored,) = self._sections.commit_merge(
                    [base.model_copy(update={"original": content})],
                    {SectionName.CARE_PLAN: base.version},
                )
            audit.details["addenda"] = stored.entry_count()
            return stored

    # Clinical text

    def ingest_clinical_text(
        self,
        patient_id: str,
        raw_text: str,
        context: AuditContext,
        source_type: SourceType = SourceType.EMR_IMPORT,
    ) -> IngestionResult:
        """Extract findings from clinical text and merge them into the record.

        All-or-nothing: extraction or validation failures leave sections and
        verification items exactly as they were. Extraction runs without the
        patient lock held; the merge and its writes run under it.
        """

        with self._audited(AuditAction.UPDATE, "patient_record", context.for_patient(patient_id), patient_id) as audit:
            audit.details["source_type"] = source_type
            patient = self._load_patient(patient_id, context)
            bundle = self._extraction.extract(raw_text)
            audit.details["findings"] = len(bundle.findings)

            patient_context = PatientContext(patient_id=patient.id, organization_id=patient.organization_id)
            with self._locks.hold(patient.id):
                existing = self._sections.get_all(patient.id)
                merged, change = self._merge_engine.merge(existing, bundle, patient_context)

                items: List[VerificationItem] = []
                if source_type is not SourceType.CLINICIAN:
                    items = [
                        self._ledger.prepare(
                            applied.finding,
                            source_type,
                            patient_id=patient.id,
                            resource_type=applied.section.value,
                            resource_id=applied.entry_id,
                        )
                        for applied in change.applied
                    ]
                if change.sections_changed:
                    self._sections.commit_merge(
                        [merged[name] for name in change.sections_changed],
                        {name: existing[name].version for name in change.sections_changed},
                        items,
                    )

            alert_ids = [
                alert.id
                for alert in self._threshold_alerts(patient, [a.finding for a in change.applied])
            ]

            audit.details.update(
                sections_changed=len(change.sections_changed),
                added=change.added,
                replaced=change.replaced,
                contradicted=change.contradicted,
                verification_items=len(items),
                alerts=len(alert_ids),
            )
            return IngestionResult(
                summary=change.delta,
                sections_changed=change.sections_changed,
                added=change.added,
                replaced=change.replaced,
                contradicted=change.contradicted,
                verification_item_ids=[item.id for item in items],
                alert_ids=alert_ids,
            )

    def _threshold_alerts(self, patient: Patient, findings: List[Finding]) -> List[Alert]:
        created: List[Alert] = []
        for finding in findings:
            if finding.kind not in (FindingKind.LAB, FindingKind.VITAL_TREND):
                continue
            for breach in self._thresholds.check_finding(finding.name, finding.value):
                category = "lab_threshold" if finding.kind is FindingKind.LAB else "vital_threshold"
                created.append(
                    self._alerts.create(
                        breach.severity,
                        category,
                        breach.message,
                        THRESHOLD_TRIGGER,
                        patient_id=patient.id,
                        organization_id=patient.organization_id,
                    )
                )
        return created

    # Utterances

    def ingest_utterance(
        self,
        patient_id: str,
        utterance: str,
        context: AuditContext,
        channel: Channel,
        *,
        register_self_report: bool = False,
    ) -> UtteranceOutcome:
        """Evaluate a patient message for escalation and raise alerts.

        The escalation decision depends on the message content only. A
        self-report is registered for verification afterwards, when asked.
        """

        action = AuditAction.VOICE_CALL if channel is Channel.VOICE else AuditAction.CREATE
        with self._audited(action, "patient_utterance", context.for_patient(patient_id), patient_id) as audit:
            audit.details["channel"] = channel
            patient = self._load_patient(patient_id, context)
            if not isinstance(utterance, str) or not utterance.strip():
                raise ValidationError("utterance is empty")

            patient_context = PatientContext(patient_id=patient.id, organization_id=patient.organization_id)
            decision = self._detector.evaluate(utterance, patient_context)
            outcome = UtteranceOutcome(decision=decision, account_locked=not patient.agent_enabled)

            if decision.requires_escalation:
                severity = max_severity(decision.severity, AlertSeverity.HIGH)
                alert = self._alerts.create(
                    severity,
                    ESCALATION_CATEGORY,
                    decision.reason,
                    f"patient_{channel.value.lower()}",
                    patient_id=patient.id,
                    organization_id=patient.organization_id,
                )
                outcome.alert_id = alert.id
                if patient.agent_enabled and self._alerts.should_lock(patient.id):
                    self._patients.save(patient.model_copy(update={"agent_enabled": False}))
                    self._alerts.create_lock_alert(patient_id=patient.id, organization_id=patient.organization_id)
                    outcome.account_locked = True
                    logger.warning("agent disabled for patient %s after repeated escalations", patient.id)

            if register_self_report:
                confidence = estimate_confidence(utterance)
                item = self._ledger.register(
                    Finding(kind=FindingKind.SYMPTOM, name=utterance.strip()),
                    channel.source_type,
                    confidence,
                    patient_id=patient.id,
                    resource_type="self_report",
                    resource_id=uuid4().hex,
                )
                outcome.verification_item_id = item.id
                audit.details["confidence"] = confidence

            audit.details.update(
                requires_escalation=decision.requires_escalation,
                signals=len(decision.matched_signals),
                severity=decision.severity.value if decision.severity else "none",
                advisory_checked=decision.advisory_checked,
                alert_created=outcome.alert_id is not None,
                account_locked=outcome.account_locked,
            )
            return outcome

    # Reads

    def get_record(self, patient_id: str, context: AuditContext) -> Dict[SectionName, RecordSection]:
        with self._audited(AuditAction.READ, "patient_record", context.for_patient(patient_id), patient_id) as audit:
            patient = self._load_patient(patient_id, context)
            sections = self._sections.get_all(patient.id)
            audit.details["entries"] = sum(s.entry_count() for s in sections.values())
            return sections

    def review_queue(self, patient_id: str, context: AuditContext) -> List[VerificationItem]:
        with self._audited(AuditAction.READ, "verification_queue", context.for_patient(patient_id), patient_id) as audit:
            patient = self._load_patient(patient_id, context)
            items = self._ledger.list_pending(patient.id)
            audit.details["pending"] = len(items)
            return items

    def review_transition(self, item_id: str, action: VerificationAction, context: AuditContext) -> VerificationItem:
        with self._audited(AuditAction.UPDATE, "verification_item", context, item_id) as audit:
            audit.details["action"] = action
            item = self._ledger.get(item_id)
            audit.context = context.for_patient(item.patient_id)
            self._check_reviewer(item.patient_id, context)
            updated = self._ledger.transition(item_id, action, context.actor)
            audit.details["status"] = updated.status
            return updated

    def list_alerts(self, patient_id: str, context: AuditContext, *, include_resolved: bool = True) -> List[Alert]:
        with self._audited(AuditAction.READ, "alert", context.for_patient(patient_id)) as audit:
            patient = self._load_patient(patient_id, context)
            alerts = self._alerts.list_for_patient(patient.id, include_resolved=include_resolved)
            audit.details["count"] = len(alerts)
            return alerts

    def resolve_alert(self, alert_id: str, context: AuditContext, resolution_note: Optional[str] = None) -> Alert:
        with self._audited(AuditAction.UPDATE, "alert", context, alert_id) as audit:
            alert = self._alerts.get(alert_id)
            audit.context = context.for_patient(alert.patient_id)
            if alert.organization_id != self._organization(context):
                raise AuthorizationError("reviewer is not bound to the patient's organization")
            resolved = self._alerts.resolve(alert_id, context.actor, resolution_note)
            audit.details["severity"] = resolved.severity
            audit.details["has_note"] = bool(resolution_note)
            return resolved
