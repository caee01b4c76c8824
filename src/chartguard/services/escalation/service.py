from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from src.chartguard.config import Settings
from src.chartguard.domain.models.alert import AlertSeverity, max_severity
from src.chartguard.domain.models.escalation import EscalationDecision
from src.chartguard.domain.models.patient import PatientContext
from src.chartguard.errors import ValidationError
from src.chartguard.services.escalation.lexicon import EmergencyLexicon, normalize_utterance

logger = logging.getLogger(__name__)


@dataclass
class AdvisoryResult:
    escalate: bool
    severity: Optional[AlertSeverity] = None
    signals: List[str] = field(default_factory=list)
    reason: str = ""


class SemanticClassifier(Protocol):
    """Protocol for the secondary, advisory emergency check."""

    def classify(self, utterance: str, patient_context: PatientContext) -> AdvisoryResult:  # pragma: no cover - interface
        raise NotImplementedError


class DemoSemanticClassifier:
    """Deterministic pattern classifier for phrasings the lexicon does not list.

    Catches paraphrases such as "I can't catch my breath" or "my face is
    drooping" so tests and local development exercise the advisory path
    without an external model.
    """

    PATTERNS = (
        (re.compile(r"\b(?:can ?t|cannot|unable to|could not|couldn ?t) (?:catch my breath|get air)"), "breathing difficulty", AlertSeverity.CRITICAL),
        (re.compile(r"\bgasping\b"), "breathing difficulty", AlertSeverity.CRITICAL),
        (re.compile(r"\b(?:lips|face) (?:is |are )?(?:turning )?blue\b"), "cyanosis", AlertSeverity.CRITICAL),
        (re.compile(r"\b(?:face|smile) (?:is )?(?:drooping|droopy)\b|\bslurred speech\b|\bslurring\b"), "stroke symptoms", AlertSeverity.CRITICAL),
        (re.compile(r"\bcoughing (?:up )?blood\b|\bvomiting blood\b"), "bleeding", AlertSeverity.HIGH),
        (re.compile(r"\bcrushing\b|\bsqueezing\b"), "crushing pain", AlertSeverity.HIGH),
        (re.compile(r"\bheart (?:is )?(?:racing|pounding)\b"), "palpitations", AlertSeverity.HIGH),
        (
            re.compile(
                r"\bstop(?:ped)? (?:taking )?(?:my )?(?:blood thinner|eliquis|apixaban|warfarin|xarelto|rivaroxaban|pradaxa|dabigatran)\b"
            ),
            "stopped anticoagulant",
            AlertSeverity.HIGH,
        ),
        (re.compile(r"\bno reason to live\b|\bbetter off dead\b|\bhurt myself\b"), "self-harm risk", AlertSeverity.CRITICAL),
    )

    def classify(self, utterance: str, patient_context: PatientContext) -> AdvisoryResult:
        text = normalize_utterance(utterance).alnum
        signals: List[str] = []
        severity: Optional[AlertSeverity] = None
        for pattern, signal, level in self.PATTERNS:
            if pattern.search(text) and signal not in signals:
                signals.append(signal)
                severity = max_severity(severity, level)
        if not signals:
            return AdvisoryResult(escalate=False)
        return AdvisoryResult(escalate=True, severity=severity, signals=signals, reason="pattern match")


class LLMSemanticClassifier:
    """Advisory classifier that asks an LLM via the OpenAI Python client.

    This expects OPENAI_API_KEY to be set and uses the model name from
    LLM_MODEL. Any failure propagates to the detector, which records the
    check as not performed.
    """

    def __init__(self, settings: Settings, *, timeout: float = 10.0) -> None:  # pragma: no cover - external service
        self._settings = settings
        self._timeout = timeout

    def classify(self, utterance: str, patient_context: PatientContext) -> AdvisoryResult:  # pragma: no cover - external service
        import json

        api_key = self._settings.openai_api_key
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY must be set to use LLMSemanticClassifier")

        try:
            from openai import OpenAI
        except ImportError as exc:
            raise RuntimeError(
                "LLMSemanticClassifier requires the 'openai' package. Install it with 'pip install openai'"
            ) from exc

        client = OpenAI(api_key=api_key, timeout=self._timeout)
        prompt = {
            "role": "user",
            "content": (
                "You triage messages from cardiology patients. Decide whether the message "
                "describes a possible medical emergency or self-harm risk that needs a "
                "physician immediately. When unsure, escalate. Respond ONLY as compact JSON "
                "with keys 'escalate' (boolean), 'severity' (one of LOW, MEDIUM, HIGH, "
                "CRITICAL) and 'signals' (short phrases). Do not include explanations.\n\n"
                f"Message:\n{utterance}\n"
            ),
        }
        response = client.responses.create(model=self._settings.llm_model, input=[prompt])
        raw_text = getattr(response, "output_text", None)
        if not raw_text:
            raise RuntimeError("empty response from classifier model")

        data = json.loads(raw_text)
        if not isinstance(data, dict):
            raise RuntimeError("classifier response is not a JSON object")
        escalate = data.get("escalate") is True
        severity: Optional[AlertSeverity] = None
        raw_severity = data.get("severity")
        if isinstance(raw_severity, str) and raw_severity.upper() in AlertSeverity.__members__:
            severity = AlertSeverity[raw_severity.upper()]
        signals = [s for s in data.get("signals") or [] if isinstance(s, str)]
        return AdvisoryResult(escalate=escalate, severity=severity, signals=signals, reason="model assessment")


def get_classifier_from_settings(settings: Settings) -> Optional[SemanticClassifier]:
    """Select the advisory classifier based on ESCALATION_CLASSIFIER.

    Supports:
    - "demo" (default) – deterministic pattern classifier
    - "llm" – LLMSemanticClassifier using an external LLM
    - "none" – keyword lexicon only
    """

    name = settings.escalation_classifier.lower()
    if name == "none":
        return None
    if name == "llm":
        return LLMSemanticClassifier(settings)
    return DemoSemanticClassifier()


class EscalationDetector:
    """Decides whether an utterance needs emergency escalation.

    The keyword lexicon is authoritative for positives. The advisory
    classifier can add signals or raise severity but never turns a keyword
    hit into a non-escalation. The detector has no side effects and never
    sees verification state.
    """

    def __init__(self, lexicon: Optional[EmergencyLexicon] = None, classifier: Optional[SemanticClassifier] = None) -> None:
        self._lexicon = lexicon or EmergencyLexicon()
        self._classifier = classifier

    def evaluate(self, utterance: str, patient_context: PatientContext) -> EscalationDecision:
        if not isinstance(utterance, str):
            raise ValidationError("utterance must be text")

        matched, severity = self._lexicon.scan(utterance)
        reasons: List[str] = []
        if matched:
            reasons.append("Emergency keyword detected: " + ", ".join(matched))

        advisory_checked = False
        if self._classifier is not None:
            try:
                advisory = self._classifier.classify(utterance, patient_context)
            except Exception as exc:  # advisory only: keyword decision stands
                logger.warning("advisory escalation check failed for patient %s: %s", patient_context.patient_id, type(exc).__name__)
            else:
                advisory_checked = True
                if advisory.escalate:
                    for signal in advisory.signals or ["advisory concern"]:
                        if signal not in matched:
                            matched.append(signal)
                    severity = max_severity(severity, advisory.severity or AlertSeverity.HIGH)
                    reasons.append("Advisory check flagged: " + (advisory.reason or "semantic match"))

        return EscalationDecision(
            requires_escalation=bool(matched),
            reason="; ".join(reasons),
            matched_signals=matched,
            severity=severity,
            advisory_checked=advisory_checked,
        )
