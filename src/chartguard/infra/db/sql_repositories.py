from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from src.chartguard.domain.models.alert import Alert
from src.chartguard.domain.models.audit_event import AuditEvent
from src.chartguard.domain.models.patient import Patient
from src.chartguard.domain.models.record_section import RecordSection, SectionName
from src.chartguard.domain.models.verification import VerificationItem, VerificationStatus
from src.chartguard.errors import ConflictError
from src.chartguard.infra.db import codec
from src.chartguard.infra.db.models import (
    AlertORM,
    AuditEventORM,
    PatientORM,
    RecordSectionORM,
    VerificationItemORM,
)
from src.chartguard.infra.db.repositories import (
    AlertRepository,
    AuditEventRepository,
    PatientRepository,
    RecordSectionRepository,
    VerificationItemRepository,
)
from src.chartguard.infra.db.session import SessionFactory
from src.chartguard.services.encryption.envelope import EncryptionEnvelope


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; everything we write is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _verification_row(orm: VerificationItemORM) -> Dict[str, Any]:
    return {
        "id": orm.id,
        "patient_id": orm.patient_id,
        "resource_type": orm.resource_type,
        "resource_id": orm.resource_id,
        "enc_label": orm.enc_label,
        "source_type": orm.source_type,
        "confidence": orm.confidence,
        "status": orm.status,
        "verified_by": orm.verified_by,
        "verified_at": _aware(orm.verified_at),
        "created_at": _aware(orm.created_at),
    }


def _verification_orm(row: Dict[str, Any]) -> VerificationItemORM:
    return VerificationItemORM(
        id=row["id"],
        patient_id=row["patient_id"],
        resource_type=row["resource_type"],
        resource_id=row["resource_id"],
        enc_label=row["enc_label"],
        source_type=row["source_type"].value,
        confidence=row["confidence"],
        status=row["status"].value,
        verified_by=row["verified_by"],
        verified_at=row["verified_at"],
        created_at=row["created_at"],
    )


def _alert_row(orm: AlertORM) -> Dict[str, Any]:
    return {
        "id": orm.id,
        "patient_id": orm.patient_id,
        "organization_id": orm.organization_id,
        "severity": orm.severity,
        "category": orm.category,
        "enc_message": orm.enc_message,
        "trigger_source": orm.trigger_source,
        "created_at": _aware(orm.created_at),
        "resolved": orm.resolved,
        "resolved_by": orm.resolved_by,
        "resolved_at": _aware(orm.resolved_at),
        "enc_resolution_note": orm.enc_resolution_note,
    }


class SqlPatientRepository(PatientRepository):
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def get(self, patient_id: str) -> Optional[Patient]:
        with self._session_factory() as session:
            orm = session.get(PatientORM, patient_id)
            if orm is None:
                return None
            return Patient(
                id=orm.id,
                organization_id=orm.organization_id,
                enrolled_at=_aware(orm.enrolled_at),
                agent_enabled=orm.agent_enabled,
            )

    def save(self, patient: Patient) -> None:
        with self._session_factory() as session:
            existing = session.get(PatientORM, patient.id)
            if existing is None:
                session.add(
                    PatientORM(
                        id=patient.id,
                        organization_id=patient.organization_id,
                        enrolled_at=patient.enrolled_at,
                        agent_enabled=patient.agent_enabled,
                    )
                )
            else:
                existing.organization_id = patient.organization_id
                existing.agent_enabled = patient.agent_enabled
            session.commit()


class SqlRecordSectionRepository(RecordSectionRepository):
    def __init__(self, session_factory: SessionFactory, envelope: EncryptionEnvelope) -> None:
        self._session_factory = session_factory
        self._envelope = envelope

    def get(self, patient_id: str, name: SectionName) -> Optional[RecordSection]:
        with self._session_factory() as session:
            orm = session.get(RecordSectionORM, (patient_id, name.value))
            if orm is None:
                return None
            return codec.decrypt_section(
                self._envelope,
                patient_id=patient_id,
                name=name,
                version=orm.version,
                updated_at=_aware(orm.updated_at),
                enc_content=orm.enc_content,
            )

    def commit_merge(
        self,
        sections: Sequence[RecordSection],
        expected_versions: Mapping[SectionName, int],
        verification_items: Sequence[VerificationItem] = (),
    ) -> List[RecordSection]:
        now = datetime.now(timezone.utc)
        committed: List[RecordSection] = []
        with self._session_factory() as session:
            try:
                for section in sections:
                    expected = expected_versions.get(section.name, 0)
                    enc_content = codec.encrypt_section_content(self._envelope, section)
                    if expected == 0:
                        session.add(
                            RecordSectionORM(
                                patient_id=section.patient_id,
                                name=section.name.value,
                                version=1,
                                updated_at=now,
                                enc_content=enc_content,
                            )
                        )
                        session.flush()
                    else:
                        result = session.execute(
                            update(RecordSectionORM)
                            .where(
                                RecordSectionORM.patient_id == section.patient_id,
                                RecordSectionORM.name == section.name.value,
                                RecordSectionORM.version == expected,
                            )
                            .values(version=expected + 1, updated_at=now, enc_content=enc_content)
                        )
                        if result.rowcount != 1:
                            raise ConflictError(f"{section.name.value} changed concurrently")
                    committed.append(section.model_copy(update={"version": expected + 1, "updated_at": now}))
                for item in verification_items:
                    session.add(_verification_orm(codec.verification_to_row(self._envelope, item)))
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("record section created concurrently") from exc
            except Exception:
                session.rollback()
                raise
        return committed


class SqlVerificationItemRepository(VerificationItemRepository):
    def __init__(self, session_factory: SessionFactory, envelope: EncryptionEnvelope) -> None:
        self._session_factory = session_factory
        self._envelope = envelope

    def get(self, item_id: str) -> Optional[VerificationItem]:
        with self._session_factory() as session:
            orm = session.get(VerificationItemORM, item_id)
            if orm is None:
                return None
            return codec.verification_from_row(self._envelope, _verification_row(orm))

    def add(self, item: VerificationItem) -> None:
        with self._session_factory() as session:
            session.add(_verification_orm(codec.verification_to_row(self._envelope, item)))
            session.commit()

    def list_by_patient(
        self,
        patient_id: str,
        *,
        status: Optional[VerificationStatus] = None,
    ) -> Iterable[VerificationItem]:
        with self._session_factory() as session:
            query = select(VerificationItemORM).where(VerificationItemORM.patient_id == patient_id)
            if status is not None:
                query = query.where(VerificationItemORM.status == status.value)
            rows = [_verification_row(orm) for orm in session.scalars(query.order_by(VerificationItemORM.created_at))]
        for row in rows:
            yield codec.verification_from_row(self._envelope, row)

    def compare_and_set_status(self, item: VerificationItem, expected: VerificationStatus) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                update(VerificationItemORM)
                .where(VerificationItemORM.id == item.id, VerificationItemORM.status == expected.value)
                .values(status=item.status.value, verified_by=item.verified_by, verified_at=item.verified_at)
            )
            session.commit()
            return result.rowcount == 1


class SqlAlertRepository(AlertRepository):
    def __init__(self, session_factory: SessionFactory, envelope: EncryptionEnvelope) -> None:
        self._session_factory = session_factory
        self._envelope = envelope

    def get(self, alert_id: str) -> Optional[Alert]:
        with self._session_factory() as session:
            orm = session.get(AlertORM, alert_id)
            if orm is None:
                return None
            return codec.alert_from_row(self._envelope, _alert_row(orm))

    def add(self, alert: Alert) -> None:
        row = codec.alert_to_row(self._envelope, alert)
        with self._session_factory() as session:
            session.add(
                AlertORM(
                    id=row["id"],
                    patient_id=row["patient_id"],
                    organization_id=row["organization_id"],
                    severity=row["severity"].value,
                    category=row["category"],
                    enc_message=row["enc_message"],
                    trigger_source=row["trigger_source"],
                    created_at=row["created_at"],
                    resolved=row["resolved"],
                    resolved_by=row["resolved_by"],
                    resolved_at=row["resolved_at"],
                    enc_resolution_note=row["enc_resolution_note"],
                )
            )
            session.commit()

    def list_by_patient(
        self,
        patient_id: str,
        *,
        include_resolved: bool = True,
        since: Optional[datetime] = None,
    ) -> Iterable[Alert]:
        with self._session_factory() as session:
            query = select(AlertORM).where(AlertORM.patient_id == patient_id)
            if not include_resolved:
                query = query.where(AlertORM.resolved.is_(False))
            if since is not None:
                query = query.where(AlertORM.created_at >= since)
            rows = [_alert_row(orm) for orm in session.scalars(query.order_by(AlertORM.created_at.desc()))]
        for row in rows:
            yield codec.alert_from_row(self._envelope, row)

    def resolve_if_open(self, alert: Alert) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                update(AlertORM)
                .where(AlertORM.id == alert.id, AlertORM.resolved.is_(False))
                .values(
                    resolved=True,
                    resolved_by=alert.resolved_by,
                    resolved_at=alert.resolved_at,
                    enc_resolution_note=self._envelope.encrypt_optional(alert.resolution_note),
                )
            )
            session.commit()
            return result.rowcount == 1


class SqlAuditEventRepository(AuditEventRepository):
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def append(self, event: AuditEvent) -> None:
        with self._session_factory() as session:
            session.add(
                AuditEventORM(
                    id=event.id,
                    timestamp=event.timestamp,
                    actor=event.actor,
                    action=event.action.value,
                    resource_type=event.resource_type,
                    resource_id=event.resource_id,
                    organization_id=event.organization_id,
                    patient_id=event.patient_id,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    details=dict(event.details),
                )
            )
            session.commit()

    def list_events(
        self,
        *,
        patient_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        with self._session_factory() as session:
            query = select(AuditEventORM)
            if patient_id is not None:
                query = query.where(AuditEventORM.patient_id == patient_id)
            if since is not None:
                query = query.where(AuditEventORM.timestamp >= since)
            return [
                AuditEvent(
                    id=orm.id,
                    timestamp=_aware(orm.timestamp),
                    actor=orm.actor,
                    action=orm.action,
                    resource_type=orm.resource_type,
                    resource_id=orm.resource_id,
                    organization_id=orm.organization_id,
                    patient_id=orm.patient_id,
                    ip_address=orm.ip_address,
                    user_agent=orm.user_agent,
                    details=dict(orm.details or {}),
                )
                for orm in session.scalars(query.order_by(AuditEventORM.timestamp))
            ]
