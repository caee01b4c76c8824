from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from src.chartguard.domain.models.alert import AlertSeverity

_APOSTROPHES = str.maketrans({"’": "'", "‘": "'", "`": "'", "´": "'", "ʼ": "'"})
_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class NormalizedText:
    folded: str
    without_apostrophes: str
    alnum: str
    compact: str

    def contains(self, pattern: "NormalizedText") -> bool:
        # Plain substring match: "heatstroke" hits "stroke" and "19112" hits "911".
        # The compact form catches run-together words ("chestpain").
        return any(
            needle and needle in haystack
            for needle, haystack in (
                (pattern.folded, self.folded),
                (pattern.without_apostrophes, self.without_apostrophes),
                (pattern.compact, self.compact),
            )
        )


def normalize_utterance(text: str) -> NormalizedText:
    folded = _WHITESPACE.sub(" ", text.translate(_APOSTROPHES).lower()).strip()
    without = folded.replace("'", "")
    alnum = _NON_ALNUM.sub(" ", without).strip()
    return NormalizedText(folded=folded, without_apostrophes=without, alnum=alnum, compact=alnum.replace(" ", ""))


@dataclass(frozen=True)
class EmergencySignal:
    signal: str
    patterns: Tuple[str, ...]
    severity: AlertSeverity

    def matches(self, text: NormalizedText) -> bool:
        return any(text.contains(normalize_utterance(p)) for p in (self.signal,) + self.patterns)


_C = AlertSeverity.CRITICAL
_H = AlertSeverity.HIGH

DEFAULT_SIGNALS: Tuple[EmergencySignal, ...] = (
    EmergencySignal("chest pain", ("pain in my chest", "chest hurts"), _C),
    EmergencySignal("chest pressure", ("pressure in my chest", "chest tightness", "tight chest"), _C),
    EmergencySignal("can't breathe", ("cannot breathe", "unable to breathe"), _C),
    EmergencySignal("shortness of breath", ("short of breath",), _H),
    EmergencySignal("passing out", (), _C),
    EmergencySignal("passed out", (), _C),
    EmergencySignal("syncope", (), _C),
    EmergencySignal("fainted", (), _C),
    EmergencySignal("faint", (), _H),
    EmergencySignal("severe pain", (), _H),
    EmergencySignal("emergency", (), _H),
    EmergencySignal("911", (), _C),
    EmergencySignal("heart attack", (), _C),
    EmergencySignal("stroke", (), _C),
    EmergencySignal("arm pain", (), _H),
    EmergencySignal("jaw pain", (), _H),
    EmergencySignal("sweating", (), _H),
    EmergencySignal("dizzy and chest", (), _H),
    EmergencySignal("kill myself", (), _C),
    EmergencySignal("suicide", (), _C),
    EmergencySignal("suicidal", (), _C),
    EmergencySignal("want to die", (), _C),
    EmergencySignal("end my life", (), _C),
)


class EmergencyLexicon:
    """Keyword list tuned for recall: a false alarm is acceptable, a miss is not."""

    def __init__(self, signals: Sequence[EmergencySignal] = DEFAULT_SIGNALS) -> None:
        self._signals: List[EmergencySignal] = list(signals)

    @classmethod
    def with_extra(cls, extra: Iterable[str], severity: AlertSeverity = AlertSeverity.HIGH) -> "EmergencyLexicon":
        lexicon = cls()
        known = {s.signal for s in lexicon._signals}
        for phrase in extra:
            phrase = phrase.strip().lower()
            if phrase and phrase not in known:
                lexicon._signals.append(EmergencySignal(phrase, (), severity))
                known.add(phrase)
        return lexicon

    @property
    def signals(self) -> List[EmergencySignal]:
        return list(self._signals)

    def scan(self, utterance: str) -> Tuple[List[str], Optional[AlertSeverity]]:
        """Return matched canonical signals (in lexicon order) and the highest severity."""

        text = normalize_utterance(utterance)
        matched: List[str] = []
        severity: Optional[AlertSeverity] = None
        for signal in self._signals:
            if signal.matches(text):
                matched.append(signal.signal)
                if severity is None or signal.severity.rank > severity.rank:
                    severity = signal.severity
        return matched, severity
