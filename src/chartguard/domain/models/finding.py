from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class FindingKind(str, Enum):
    LAB = "lab"
    CONDITION = "condition"
    PROCEDURE = "procedure"
    MEDICATION = "medication"
    VITAL_TREND = "vitalTrend"
    PLAN_ITEM = "planItem"
    SYMPTOM = "symptom"


class Finding(BaseModel):
    """One structured clinical fact extracted from a text submission.

    ``raw_text`` is the span the fact was read from and counts as protected
    content; it is never written to logs or audit details.
    """

    kind: FindingKind
    name: str
    value: str = ""
    unit: str = ""
    date: Optional[dt.date] = None
    raw_text: str = ""

    def label(self) -> str:
        """Human-readable one-liner, e.g. ``BNP: 450 pg/mL``."""

        if not self.value:
            return self.name
        suffix = f" {self.unit}" if self.unit else ""
        return f"{self.name}: {self.value}{suffix}"


class FindingsBundle(BaseModel):
    """Validated output of a single extraction call."""

    findings: List[Finding] = Field(default_factory=list)
    summary: str = ""

    def is_empty(self) -> bool:
        return not self.findings and not self.summary.strip()
