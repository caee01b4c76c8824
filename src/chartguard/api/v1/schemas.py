from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from src.chartguard.domain.models.alert import Alert, AlertSeverity
from src.chartguard.domain.models.verification import SourceType, VerificationItem, VerificationStatus
from src.chartguard.services.verification.attribution import CONFIDENCE_LABELS, format_attributed


class VerificationItemView(BaseModel):
    id: str
    patient_id: str
    resource_type: str
    resource_id: str
    label: str
    display: str
    source_type: SourceType
    confidence: int
    confidence_label: str
    status: VerificationStatus
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_item(cls, item: VerificationItem) -> "VerificationItemView":
        return cls(
            **item.model_dump(),
            display=format_attributed(item),
            confidence_label=CONFIDENCE_LABELS.get(item.confidence, "Unknown"),
        )


class AlertView(BaseModel):
    id: str
    patient_id: str
    severity: AlertSeverity
    category: str
    message: str
    trigger_source: str
    created_at: datetime
    resolved: bool
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertView":
        return cls(**alert.model_dump(exclude={"organization_id"}))
