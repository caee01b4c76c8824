from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from src.chartguard.domain.models.alert import AlertSeverity


class EscalationDecision(BaseModel):
    """Outcome of scanning one utterance for emergency signals.

    ``matched_signals`` always lists every signal that contributed, keyword
    or advisory, so the decision can be audited after the fact.
    ``advisory_checked`` is False when the semantic check was disabled or
    failed; the keyword result stands either way.
    """

    requires_escalation: bool
    reason: str = ""
    matched_signals: List[str] = Field(default_factory=list)
    severity: Optional[AlertSeverity] = None
    advisory_checked: bool = False
