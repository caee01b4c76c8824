from __future__ import annotations

import re
from datetime import date, datetime
from typing import Optional

from src.chartguard.domain.models.verification import SourceType, VerificationItem, VerificationStatus

SOURCE_LABELS = {
    SourceType.PATIENT_SMS: "patient reported via SMS",
    SourceType.PATIENT_VOICE: "patient reported via call",
    SourceType.PATIENT_PORTAL: "patient entered via portal",
    SourceType.CLINICIAN: "clinician entered",
    SourceType.DEVICE: "device reported",
    SourceType.EMR_IMPORT: "imported from EMR",
    SourceType.AI_EXTRACTED: "AI extracted",
    SourceType.SYSTEM: "system generated",
}

CONFIDENCE_LABELS = {3: "High", 2: "Medium", 1: "Low", 0: "Unknown"}

# Cardiology drugs recognized by name in free text.
KNOWN_DRUGS = (
    "metoprolol",
    "lisinopril",
    "amlodipine",
    "atorvastatin",
    "eliquis",
    "apixaban",
    "warfarin",
    "metformin",
    "furosemide",
    "losartan",
    "carvedilol",
    "spironolactone",
    "digoxin",
    "amiodarone",
    "clopidogrel",
    "entresto",
    "xarelto",
    "rivaroxaban",
    "pradaxa",
    "dabigatran",
)

_DRUG_NAME = re.compile(r"\b(" + "|".join(KNOWN_DRUGS) + r")\b", re.IGNORECASE)
_DOSE = re.compile(r"\b\d+(?:\.\d+)?\s*(?:mg|mcg|ml|units?)\b", re.IGNORECASE)
_PRESCRIBER = re.compile(r"\b(?:doctor|dr\.|physician|cardiologist|prescribed|started me on)", re.IGNORECASE)
_VAGUE = re.compile(
    r"\b(?:something for|a pill for|medicine for|medication for|blood thinner|heart pill|cholesterol pill"
    r"|blood pressure pill)\b",
    re.IGNORECASE,
)


def source_label(source_type: SourceType) -> str:
    return SOURCE_LABELS.get(source_type, "unknown source")


def estimate_confidence(message: str) -> int:
    """Score a free-text self-report on the 0-3 confidence scale.

    3: a known drug name with a dose or a prescriber mention.
    2: a known drug name alone.
    1: a vague reference ("something for cholesterol").
    0: nothing usable.
    """

    has_drug = bool(_DRUG_NAME.search(message))
    if has_drug and (_DOSE.search(message) or _PRESCRIBER.search(message)):
        return 3
    if has_drug:
        return 2
    if _VAGUE.search(message):
        return 1
    return 0


def _day(value: Optional[datetime]) -> str:
    return (value.date() if value is not None else date.today()).isoformat()


def format_attributed(item: VerificationItem) -> str:
    """Render a queue line that carries the datum's provenance.

    ``[VERIFIED by dr-1 2026-02-26] BNP: 450 pg/mL``
    ``[UNVERIFIED - imported from EMR 2026-02-25] BNP: 450 pg/mL``
    """

    if item.status is VerificationStatus.VERIFIED:
        by = f" by {item.verified_by}" if item.verified_by else ""
        when = f" {_day(item.verified_at)}" if item.verified_at else ""
        return f"[VERIFIED{by}{when}] {item.label}"
    if item.status is VerificationStatus.DISPUTED:
        by = f" by {item.verified_by}" if item.verified_by else ""
        return f"[DISPUTED{by}] {item.label}"
    return f"[UNVERIFIED - {source_label(item.source_type)} {_day(item.created_at)}] {item.label}"
