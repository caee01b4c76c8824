from __future__ import annotations

import datetime as dt
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from src.chartguard.domain.models.finding import FindingKind


class SectionName(str, Enum):
    LABS = "Labs"
    MEDICAL_HISTORY = "MedicalHistory"
    TRENDS = "Trends"
    CARE_PLAN = "CarePlan"


# Entry flags.
NEEDS_REVIEW = "needs_review"


def new_entry_id() -> str:
    return uuid4().hex


class SectionEntry(BaseModel):
    """A single dated line in a record section.

    For CarePlan entries ``addendum_id`` groups the items appended together
    in one timestamped addendum block.
    """

    id: str = Field(default_factory=new_entry_id)
    kind: FindingKind
    subsection: str
    name: str
    value: str = ""
    unit: str = ""
    date: dt.date
    approximate_date: bool = False
    text: str = ""
    recorded_at: datetime
    addendum_id: Optional[str] = None
    flags: List[str] = Field(default_factory=list)
    conflicts_with: List[str] = Field(default_factory=list)

    def label(self) -> str:
        if not self.value:
            return self.name
        suffix = f" {self.unit}" if self.unit else ""
        return f"{self.name}: {self.value}{suffix}"

    def content_key(self) -> tuple:
        """Fields that define what the entry says, ignoring ids and timestamps."""

        return (
            self.kind.value,
            self.subsection,
            self.name,
            self.value,
            self.unit,
            self.date.isoformat(),
            self.approximate_date,
            self.text,
            tuple(sorted(self.flags)),
        )


class RecordSection(BaseModel):
    """One of a patient's longitudinal record sections.

    Entries are grouped into named subsections. ``version`` is bumped on each
    successful write and is used for compare-and-set at the persistence
    boundary. ``original`` is only used by CarePlan and is never rewritten by
    merges.
    """

    patient_id: str
    name: SectionName
    subsections: Dict[str, List[SectionEntry]] = Field(default_factory=dict)
    original: str = ""
    version: int = 0
    updated_at: Optional[datetime] = None

    def entries(self) -> List[SectionEntry]:
        result: List[SectionEntry] = []
        for key in sorted(self.subsections):
            result.extend(self.subsections[key])
        return result

    def entry_count(self) -> int:
        return sum(len(items) for items in self.subsections.values())

    def content_key(self) -> tuple:
        return (
            self.original,
            tuple(
                (key, tuple(entry.content_key() for entry in self.subsections[key]))
                for key in sorted(self.subsections)
            ),
        )

    @classmethod
    def empty(cls, patient_id: str, name: SectionName) -> "RecordSection":
        return cls(patient_id=patient_id, name=name)
