from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SourceType(str, Enum):
    PATIENT_SMS = "PATIENT_SMS"
    PATIENT_VOICE = "PATIENT_VOICE"
    PATIENT_PORTAL = "PATIENT_PORTAL"
    CLINICIAN = "CLINICIAN"
    DEVICE = "DEVICE"
    EMR_IMPORT = "EMR_IMPORT"
    AI_EXTRACTED = "AI_EXTRACTED"
    SYSTEM = "SYSTEM"


class VerificationStatus(str, Enum):
    UNVERIFIED = "UNVERIFIED"
    VERIFIED = "VERIFIED"
    DISPUTED = "DISPUTED"

    @property
    def is_terminal(self) -> bool:
        return self is not VerificationStatus.UNVERIFIED


class VerificationAction(str, Enum):
    VERIFY = "verify"
    DISPUTE = "dispute"

    @property
    def target_status(self) -> VerificationStatus:
        if self is VerificationAction.VERIFY:
            return VerificationStatus.VERIFIED
        return VerificationStatus.DISPUTED


class VerificationItem(BaseModel):
    """Trust state of a single non-clinician-entered data point.

    ``label`` is the protected human-readable datum (e.g. "BNP: 450 pg/mL");
    repositories store it encrypted. ``resource_type``/``resource_id`` point
    at the record entry the datum was merged into.
    """

    id: str
    patient_id: str
    resource_type: str
    resource_id: str
    label: str
    source_type: SourceType
    confidence: int = Field(ge=0, le=3)
    status: VerificationStatus = VerificationStatus.UNVERIFIED
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    created_at: datetime
