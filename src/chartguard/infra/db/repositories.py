from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from src.chartguard.domain.models.alert import Alert
from src.chartguard.domain.models.audit_event import AuditEvent
from src.chartguard.domain.models.patient import Patient
from src.chartguard.domain.models.record_section import RecordSection, SectionName
from src.chartguard.domain.models.verification import VerificationItem, VerificationStatus


class PatientRepository(ABC):
    @abstractmethod
    def get(self, patient_id: str) -> Optional[Patient]:
        raise NotImplementedError

    @abstractmethod
    def save(self, patient: Patient) -> None:
        raise NotImplementedError


class RecordSectionRepository(ABC):
    """Per-patient record sections, keyed by patient + section name.

    Implementations store section content encrypted and raise
    ``DecryptionError`` when stored content cannot be opened.
    """

    @abstractmethod
    def get(self, patient_id: str, name: SectionName) -> Optional[RecordSection]:
        raise NotImplementedError

    def get_all(self, patient_id: str) -> Dict[SectionName, RecordSection]:
        sections: Dict[SectionName, RecordSection] = {}
        for name in SectionName:
            section = self.get(patient_id, name)
            sections[name] = section if section is not None else RecordSection.empty(patient_id, name)
        return sections

    @abstractmethod
    def commit_merge(
        self,
        sections: Sequence[RecordSection],
        expected_versions: Mapping[SectionName, int],
        verification_items: Sequence[VerificationItem] = (),
    ) -> List[RecordSection]:
        """Write merged sections and their new verification items as one unit.

        Every section is compare-and-set against ``expected_versions``; if any
        stored version differs, nothing is written and ``ConflictError`` is
        raised. Returns the sections with their new versions.
        """

        raise NotImplementedError


class VerificationItemRepository(ABC):
    @abstractmethod
    def get(self, item_id: str) -> Optional[VerificationItem]:
        raise NotImplementedError

    @abstractmethod
    def add(self, item: VerificationItem) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_by_patient(
        self,
        patient_id: str,
        *,
        status: Optional[VerificationStatus] = None,
    ) -> Iterable[VerificationItem]:
        raise NotImplementedError

    @abstractmethod
    def compare_and_set_status(self, item: VerificationItem, expected: VerificationStatus) -> bool:
        """Persist ``item``'s review fields only if the stored status is ``expected``."""

        raise NotImplementedError


class AlertRepository(ABC):
    @abstractmethod
    def get(self, alert_id: str) -> Optional[Alert]:
        raise NotImplementedError

    @abstractmethod
    def add(self, alert: Alert) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_by_patient(
        self,
        patient_id: str,
        *,
        include_resolved: bool = True,
        since: Optional[datetime] = None,
    ) -> Iterable[Alert]:
        raise NotImplementedError

    @abstractmethod
    def resolve_if_open(self, alert: Alert) -> bool:
        """Persist resolution fields only if the stored alert is still open."""

        raise NotImplementedError


class AuditEventRepository(ABC):
    """Append-only. There is deliberately no update or delete."""

    @abstractmethod
    def append(self, event: AuditEvent) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_events(
        self,
        *,
        patient_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        raise NotImplementedError
