from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from src.chartguard.domain.models.alert import Alert
from src.chartguard.domain.models.audit_event import AuditEvent
from src.chartguard.domain.models.patient import Patient
from src.chartguard.domain.models.record_section import RecordSection, SectionName
from src.chartguard.domain.models.verification import VerificationItem, VerificationStatus
from src.chartguard.errors import ConflictError
from src.chartguard.infra.db import codec
from src.chartguard.infra.db.repositories import (
    AlertRepository,
    AuditEventRepository,
    PatientRepository,
    RecordSectionRepository,
    VerificationItemRepository,
)
from src.chartguard.services.encryption.envelope import EncryptionEnvelope


class InMemoryPatientRepository(PatientRepository):
    def __init__(self) -> None:
        self._patients: Dict[str, Patient] = {}
        self._lock = threading.Lock()

    def get(self, patient_id: str) -> Optional[Patient]:
        with self._lock:
            patient = self._patients.get(patient_id)
            return patient.model_copy() if patient is not None else None

    def save(self, patient: Patient) -> None:
        with self._lock:
            self._patients[patient.id] = patient.model_copy()


class InMemoryVerificationItemRepository(VerificationItemRepository):
    """Stores rows with the protected label encrypted, like a real table would."""

    def __init__(self, envelope: EncryptionEnvelope) -> None:
        self._envelope = envelope
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, item_id: str) -> Optional[VerificationItem]:
        with self._lock:
            row = self._rows.get(item_id)
        if row is None:
            return None
        return codec.verification_from_row(self._envelope, row)

    def add(self, item: VerificationItem) -> None:
        self.add_many([item])

    def add_many(self, items: Sequence[VerificationItem]) -> None:
        rows = [codec.verification_to_row(self._envelope, item) for item in items]
        with self._lock:
            for row in rows:
                self._rows[row["id"]] = row

    def list_by_patient(
        self,
        patient_id: str,
        *,
        status: Optional[VerificationStatus] = None,
    ) -> Iterable[VerificationItem]:
        with self._lock:
            rows = [dict(r) for r in self._rows.values() if r["patient_id"] == patient_id]
        rows.sort(key=lambda r: r["created_at"])
        for row in rows:
            if status is not None and row["status"] != status:
                continue
            yield codec.verification_from_row(self._envelope, row)

    def compare_and_set_status(self, item: VerificationItem, expected: VerificationStatus) -> bool:
        with self._lock:
            row = self._rows.get(item.id)
            if row is None or row["status"] != expected:
                return False
            row["status"] = item.status
            row["verified_by"] = item.verified_by
            row["verified_at"] = item.verified_at
            return True

    def raw_rows(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._rows.values()]


class InMemoryRecordSectionRepository(RecordSectionRepository):
    def __init__(self, envelope: EncryptionEnvelope, verification_items: InMemoryVerificationItemRepository) -> None:
        self._envelope = envelope
        self._verification_items = verification_items
        self._rows: Dict[Tuple[str, SectionName], Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, patient_id: str, name: SectionName) -> Optional[RecordSection]:
        with self._lock:
            row = self._rows.get((patient_id, name))
            row = dict(row) if row is not None else None
        if row is None:
            return None
        return codec.decrypt_section(
            self._envelope,
            patient_id=patient_id,
            name=name,
            version=row["version"],
            updated_at=row["updated_at"],
            enc_content=row["enc_content"],
        )

    def commit_merge(
        self,
        sections: Sequence[RecordSection],
        expected_versions: Mapping[SectionName, int],
        verification_items: Sequence[VerificationItem] = (),
    ) -> List[RecordSection]:
        now = datetime.now(timezone.utc)
        prepared = [
            (section, codec.encrypt_section_content(self._envelope, section)) for section in sections
        ]
        with self._lock:
            for section, _ in prepared:
                row = self._rows.get((section.patient_id, section.name))
                current = row["version"] if row is not None else 0
                if current != expected_versions.get(section.name, 0):
                    raise ConflictError(f"{section.name.value} changed concurrently")
            committed: List[RecordSection] = []
            for section, enc_content in prepared:
                version = expected_versions.get(section.name, 0) + 1
                self._rows[(section.patient_id, section.name)] = {
                    "version": version,
                    "updated_at": now,
                    "enc_content": enc_content,
                }
                committed.append(section.model_copy(update={"version": version, "updated_at": now}))
            self._verification_items.add_many(verification_items)
        return committed

    def raw_rows(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._rows.values()]


class InMemoryAlertRepository(AlertRepository):
    def __init__(self, envelope: EncryptionEnvelope) -> None:
        self._envelope = envelope
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            row = self._rows.get(alert_id)
            row = dict(row) if row is not None else None
        if row is None:
            return None
        return codec.alert_from_row(self._envelope, row)

    def add(self, alert: Alert) -> None:
        row = codec.alert_to_row(self._envelope, alert)
        with self._lock:
            self._rows[alert.id] = row

    def list_by_patient(
        self,
        patient_id: str,
        *,
        include_resolved: bool = True,
        since: Optional[datetime] = None,
    ) -> Iterable[Alert]:
        with self._lock:
            rows = [dict(r) for r in self._rows.values() if r["patient_id"] == patient_id]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        for row in rows:
            if not include_resolved and row["resolved"]:
                continue
            if since is not None and row["created_at"] < since:
                continue
            yield codec.alert_from_row(self._envelope, row)

    def resolve_if_open(self, alert: Alert) -> bool:
        enc_note = self._envelope.encrypt_optional(alert.resolution_note)
        with self._lock:
            row = self._rows.get(alert.id)
            if row is None or row["resolved"]:
                return False
            row["resolved"] = True
            row["resolved_by"] = alert.resolved_by
            row["resolved_at"] = alert.resolved_at
            row["enc_resolution_note"] = enc_note
            return True

    def raw_rows(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._rows.values()]


class InMemoryAuditEventRepository(AuditEventRepository):
    def __init__(self) -> None:
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def append(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event.model_copy(deep=True))

    def list_events(
        self,
        *,
        patient_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        with self._lock:
            events = list(self._events)
        return [
            e
            for e in events
            if (patient_id is None or e.patient_id == patient_id) and (since is None or e.timestamp >= since)
        ]
