from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional
from uuid import uuid4

from src.chartguard.domain.models.finding import Finding
from src.chartguard.domain.models.verification import (
    SourceType,
    VerificationAction,
    VerificationItem,
    VerificationStatus,
)
from src.chartguard.errors import ConflictError, NotFoundError, ValidationError
from src.chartguard.infra.db.repositories import VerificationItemRepository

logger = logging.getLogger(__name__)


DEFAULT_CONFIDENCE: Dict[SourceType, int] = {
    SourceType.CLINICIAN: 3,
    SourceType.DEVICE: 3,
    SourceType.EMR_IMPORT: 2,
    SourceType.PATIENT_PORTAL: 1,
    SourceType.PATIENT_SMS: 1,
    SourceType.PATIENT_VOICE: 1,
    SourceType.AI_EXTRACTED: 1,
    SourceType.SYSTEM: 0,
}


@dataclass
class ConfidencePolicy:
    """Source-type to confidence tier table; unknown sources score ``default``."""

    table: Mapping[SourceType, int] = field(default_factory=lambda: dict(DEFAULT_CONFIDENCE))
    default: int = 0

    def confidence_for(self, source_type: SourceType) -> int:
        return self.table.get(source_type, self.default)


class VerificationLedger:
    """Tracks whether a physician has reviewed each non-clinician datum.

    Trust state lives here only. Nothing in the escalation path reads it.
    """

    def __init__(self, repository: VerificationItemRepository, policy: Optional[ConfidencePolicy] = None) -> None:
        self._repository = repository
        self._policy = policy or ConfidencePolicy()

    @property
    def policy(self) -> ConfidencePolicy:
        return self._policy

    def prepare(
        self,
        finding: Finding,
        source_type: SourceType,
        confidence: Optional[int] = None,
        *,
        patient_id: str,
        resource_type: str,
        resource_id: str,
        now: Optional[datetime] = None,
    ) -> VerificationItem:
        """Build an UNVERIFIED item without persisting it.

        Used by ingestion so items can be written together with the merged
        sections in one unit.
        """

        if source_type is SourceType.CLINICIAN:
            raise ValidationError("clinician-entered findings are not tracked for verification")
        if confidence is None:
            confidence = self._policy.confidence_for(source_type)
        if not 0 <= confidence <= 3:
            raise ValidationError("confidence must be between 0 and 3")
        return VerificationItem(
            id=uuid4().hex,
            patient_id=patient_id,
            resource_type=resource_type,
            resource_id=resource_id,
            label=finding.label(),
            source_type=source_type,
            confidence=confidence,
            created_at=now or datetime.now(timezone.utc),
        )

    def register(
        self,
        finding: Finding,
        source_type: SourceType,
        confidence: Optional[int] = None,
        *,
        patient_id: str,
        resource_type: str,
        resource_id: str,
    ) -> VerificationItem:
        item = self.prepare(
            finding,
            source_type,
            confidence,
            patient_id=patient_id,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        self._repository.add(item)
        return item

    def get(self, item_id: str) -> VerificationItem:
        item = self._repository.get(item_id)
        if item is None:
            raise NotFoundError("verification item not found")
        return item

    def transition(self, item_id: str, action: VerificationAction, reviewer: str) -> VerificationItem:
        """Move an UNVERIFIED item to VERIFIED or DISPUTED.

        Terminal items raise ``ConflictError`` and are left as they are. The
        write is a compare-and-set on status, so of two racing reviewers
        exactly one wins.
        """

        item = self.get(item_id)
        if item.status.is_terminal:
            raise ConflictError(f"verification item already {item.status.value}")

        updated = item.model_copy(
            update={
                "status": action.target_status,
                "verified_by": reviewer,
                "verified_at": datetime.now(timezone.utc),
            }
        )
        if not self._repository.compare_and_set_status(updated, VerificationStatus.UNVERIFIED):
            raise ConflictError("verification item was reviewed concurrently")
        logger.info("verification item %s -> %s", item_id, updated.status.value)
        return updated

    def list_pending(self, patient_id: str) -> List[VerificationItem]:
        items = list(self._repository.list_by_patient(patient_id, status=VerificationStatus.UNVERIFIED))
        items.sort(key=lambda i: i.created_at)
        return items
