from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from difflib import SequenceMatcher
from typing import List, Protocol, Tuple
from uuid import uuid4

from src.chartguard.domain.models.record_section import NEEDS_REVIEW, RecordSection, SectionEntry

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")

# Longest first so "no history of" wins over "no".
NEGATION_PREFIXES: Tuple[str, ...] = (
    "no history of",
    "no known",
    "negative for",
    "ruled out",
    "denies",
    "without",
    "not",
    "no",
)
NEGATION_SUFFIXES: Tuple[str, ...] = ("ruled out", "resolved", "negative")


def normalize(text: str) -> str:
    """Lowercase, replace punctuation runs with a space and collapse whitespace."""

    return _NON_ALNUM.sub(" ", text.lower()).strip()


def similarity(a: str, b: str) -> float:
    return SequenceMatcher(a=a, b=b).ratio()


def split_polarity(text: str) -> Tuple[bool, str]:
    """Return ``(negated, core)`` for a normalized statement."""

    for cue in NEGATION_PREFIXES:
        if text == cue:
            break
        if text.startswith(cue + " "):
            return True, text[len(cue) + 1 :].strip()
    for cue in NEGATION_SUFFIXES:
        if text.endswith(" " + cue):
            return True, text[: -len(cue) - 1].strip()
    return False, text


@dataclass
class StrategyResult:
    """What a strategy did to one section.

    ``added`` and ``replaced`` hold ``(incoming, stored)`` pairs; ``stored``
    is the entry as it now sits in the section (its id may differ from the
    incoming one when a value was replaced in place).
    """

    added: List[Tuple[SectionEntry, SectionEntry]] = field(default_factory=list)
    replaced: List[Tuple[SectionEntry, SectionEntry]] = field(default_factory=list)
    contradicted: List[SectionEntry] = field(default_factory=list)


class MergeStrategy(Protocol):
    def apply(self, section: RecordSection, incoming: List[SectionEntry], now: datetime) -> StrategyResult:
        """Fold ``incoming`` into ``section`` in place. ``section`` is already a private copy."""
        ...


def _rolling_key(entry: SectionEntry) -> Tuple[str, str]:
    return normalize(entry.name), entry.date.isoformat()


class RollingCapped:
    """Newest-first capped list per subsection (Labs, Trends)."""

    def __init__(self, cap: int = 10) -> None:
        if cap < 1:
            raise ValueError("cap must be at least 1")
        self.cap = cap

    def apply(self, section: RecordSection, incoming: List[SectionEntry], now: datetime) -> StrategyResult:
        result = StrategyResult()
        touched: List[str] = []

        for entry in incoming:
            current = section.subsections.setdefault(entry.subsection, [])
            existing = next((e for e in current if _rolling_key(e) == _rolling_key(entry)), None)
            if existing is None:
                current.insert(self._insert_at(current, entry), entry)
                result.added.append((entry, entry))
            elif (existing.value, existing.unit) != (entry.value, entry.unit):
                existing.value = entry.value
                existing.unit = entry.unit
                existing.text = entry.text
                existing.approximate_date = entry.approximate_date
                existing.recorded_at = entry.recorded_at
                result.replaced.append((entry, existing))
            if entry.subsection not in touched:
                touched.append(entry.subsection)

        retained: set = set()
        for key in touched:
            entries = section.subsections[key]
            # Stable: among equal dates, newer submissions stay ahead of older ones.
            entries.sort(key=lambda e: e.date, reverse=True)
            del entries[self.cap :]
            retained.update(e.id for e in entries)

        result.added = [pair for pair in result.added if pair[1].id in retained]
        result.replaced = [pair for pair in result.replaced if pair[1].id in retained]
        return result

    @staticmethod
    def _insert_at(current: List[SectionEntry], entry: SectionEntry) -> int:
        # New entries go ahead of older ones but keep the order they arrived in.
        index = 0
        while index < len(current) and current[index].recorded_at == entry.recorded_at:
            index += 1
        return index


def _history_text(entry: SectionEntry) -> str:
    return normalize(" ".join(part for part in (entry.name, entry.value, entry.unit) if part))


def _numbers(text: str) -> List[str]:
    return _NUMBER.findall(text)


def _without_numbers(text: str) -> str:
    return " ".join(_NUMBER.sub(" ", text).split())


class AppendNovel:
    """Append-only history; near-duplicates are skipped, contradictions are flagged."""

    def __init__(self, threshold: float = 0.9) -> None:
        self.threshold = threshold

    def is_duplicate(self, existing: SectionEntry, entry: SectionEntry) -> bool:
        old_text, new_text = _history_text(existing), _history_text(entry)
        # "Type 1 diabetes" and "Type 2 diabetes" are never the same entry.
        if _numbers(old_text) != _numbers(new_text):
            return False
        return similarity(old_text, new_text) >= self.threshold

    def contradicts(self, existing: SectionEntry, entry: SectionEntry) -> bool:
        old_negated, old_core = split_polarity(normalize(existing.name))
        new_negated, new_core = split_polarity(normalize(entry.name))
        if old_negated != new_negated and similarity(old_core, new_core) >= self.threshold:
            return True
        if old_core == new_core and old_negated == new_negated:
            old_value = normalize(f"{existing.value} {existing.unit}")
            new_value = normalize(f"{entry.value} {entry.unit}")
            if existing.value and entry.value and old_value != new_value:
                return True
        if old_negated == new_negated:
            old_text, new_text = _history_text(existing), _history_text(entry)
            if _numbers(old_text) != _numbers(new_text) and similarity(
                _without_numbers(old_text), _without_numbers(new_text)
            ) >= self.threshold:
                return True
        return False

    def apply(self, section: RecordSection, incoming: List[SectionEntry], now: datetime) -> StrategyResult:
        result = StrategyResult()
        for entry in incoming:
            current = section.subsections.setdefault(entry.subsection, [])
            conflicts: List[SectionEntry] = []
            duplicate = False
            for existing in current:
                if self.contradicts(existing, entry):
                    conflicts.append(existing)
                elif self.is_duplicate(existing, entry):
                    duplicate = True
                    break
            if duplicate:
                continue

            if conflicts:
                _flag(entry)
                for existing in conflicts:
                    _flag(existing)
                    existing.conflicts_with.append(entry.id)
                    entry.conflicts_with.append(existing.id)
                result.contradicted.append(entry)
            current.append(entry)
            result.added.append((entry, entry))
        return result


def _flag(entry: SectionEntry) -> None:
    if NEEDS_REVIEW not in entry.flags:
        entry.flags.append(NEEDS_REVIEW)


class AppendOnly:
    """Timestamped addenda; ``original`` and earlier addenda are never touched."""

    def apply(self, section: RecordSection, incoming: List[SectionEntry], now: datetime) -> StrategyResult:
        result = StrategyResult()
        seen = {normalize(e.text) for e in section.entries()}
        addendum_id = uuid4().hex
        for entry in incoming:
            key = normalize(entry.text)
            if not key or key in seen:
                continue
            seen.add(key)
            entry.addendum_id = addendum_id
            entry.recorded_at = now
            section.subsections.setdefault(entry.subsection, []).append(entry)
            result.added.append((entry, entry))
        return result
