from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, Field


class Patient(BaseModel):
    """Minimal patient registry row used for organization scoping.

    Demographics live elsewhere; nothing here is protected content.
    ``agent_enabled`` is switched off when the account is locked after
    repeated escalations.
    """

    id: str
    organization_id: str
    enrolled_at: datetime
    agent_enabled: bool = True


class PatientContext(BaseModel):
    """Read-only facts about the patient handed to merge and escalation."""

    patient_id: str
    organization_id: str
    conditions: List[str] = Field(default_factory=list)
