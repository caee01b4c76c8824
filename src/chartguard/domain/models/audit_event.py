from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AuditAction(str, Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    EXPORT = "EXPORT"
    VOICE_CALL = "VOICE_CALL"


@dataclass(frozen=True)
class AuditContext:
    """Who is acting, for which organization/patient, and from where.

    Carries identifiers and network provenance only, never protected
    content.
    """

    actor: str
    organization_id: Optional[str] = None
    patient_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def for_patient(self, patient_id: str) -> "AuditContext":
        return AuditContext(
            actor=self.actor,
            organization_id=self.organization_id,
            patient_id=patient_id,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )


class AuditEvent(BaseModel):
    """Structured representation of an audit event.

    Intentionally keeps payload minimal and avoids PHI: focus on IDs, types,
    and high-level actions rather than clinical text.
    """

    id: str
    timestamp: datetime
    actor: str
    action: AuditAction
    resource_type: str
    resource_id: Optional[str] = None
    organization_id: Optional[str] = None
    patient_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
