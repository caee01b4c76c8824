from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
}


def max_severity(*severities: Optional[AlertSeverity]) -> Optional[AlertSeverity]:
    present = [s for s in severities if s is not None]
    if not present:
        return None
    return max(present, key=lambda s: s.rank)


class Alert(BaseModel):
    """Physician-facing alert.

    OPEN while ``resolved`` is False; RESOLVED is terminal. Severity is fixed
    at creation. ``message`` and ``resolution_note`` are protected and stored
    encrypted.
    """

    id: str
    patient_id: str
    organization_id: str
    severity: AlertSeverity
    category: str
    message: str
    trigger_source: str
    created_at: datetime
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None
