from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Tuple

from src.chartguard.domain.models.finding import Finding, FindingKind, FindingsBundle
from src.chartguard.domain.models.patient import PatientContext
from src.chartguard.domain.models.record_section import RecordSection, SectionEntry, SectionName
from src.chartguard.errors import ValidationError
from src.chartguard.services.merge.strategies import (
    AppendNovel,
    AppendOnly,
    MergeStrategy,
    RollingCapped,
    StrategyResult,
    normalize,
)

ADDENDA = "addenda"
CLINICAL_NOTE_PREFIX = "Clinical note: "

_HISTORY_SUBSECTIONS = {
    FindingKind.CONDITION: "conditions",
    FindingKind.PROCEDURE: "procedures",
    FindingKind.MEDICATION: "medications",
}


def route(finding: Finding) -> Tuple[SectionName, str]:
    """Return the section and subsection a finding belongs to."""

    if finding.kind is FindingKind.LAB:
        return SectionName.LABS, "labs"
    if finding.kind is FindingKind.SYMPTOM:
        return SectionName.TRENDS, "symptoms"
    if finding.kind is FindingKind.VITAL_TREND:
        name = normalize(finding.name)
        if "weight" in name or name == "wt":
            return SectionName.TRENDS, "weight"
        if any(token in name for token in ("blood pressure", "systolic", "diastolic")) or name in {"bp", "sbp", "dbp"}:
            return SectionName.TRENDS, "blood_pressure"
        return SectionName.TRENDS, "vitals"
    if finding.kind is FindingKind.PLAN_ITEM:
        return SectionName.CARE_PLAN, ADDENDA
    return SectionName.MEDICAL_HISTORY, _HISTORY_SUBSECTIONS[finding.kind]


def default_strategies(*, rolling_cap: int = 10, similarity_threshold: float = 0.9) -> Dict[SectionName, MergeStrategy]:
    return {
        SectionName.LABS: RollingCapped(rolling_cap),
        SectionName.TRENDS: RollingCapped(rolling_cap),
        SectionName.MEDICAL_HISTORY: AppendNovel(similarity_threshold),
        SectionName.CARE_PLAN: AppendOnly(),
    }


@dataclass
class AppliedFinding:
    finding: Finding
    section: SectionName
    entry_id: str


@dataclass
class ChangeSummary:
    sections_changed: List[SectionName] = field(default_factory=list)
    added: int = 0
    replaced: int = 0
    contradicted: int = 0
    delta: str = ""
    applied: List[AppliedFinding] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.sections_changed)


class MergeEngine:
    """Reconciles a FindingsBundle into a patient's record sections.

    The engine is pure: it deep-copies its inputs, never performs I/O and
    never touches verification state. Callers persist the returned sections
    and register verification items for ``ChangeSummary.applied``.
    """

    def __init__(
        self,
        strategies: Optional[Mapping[SectionName, MergeStrategy]] = None,
        *,
        rolling_cap: int = 10,
        similarity_threshold: float = 0.9,
    ) -> None:
        self._strategies: Dict[SectionName, MergeStrategy] = dict(
            strategies or default_strategies(rolling_cap=rolling_cap, similarity_threshold=similarity_threshold)
        )

    def merge(
        self,
        existing: Mapping[SectionName, RecordSection],
        bundle: FindingsBundle,
        patient_context: PatientContext,
        now: Optional[datetime] = None,
    ) -> Tuple[Dict[SectionName, RecordSection], ChangeSummary]:
        now = now or datetime.now(timezone.utc)
        patient_id = patient_context.patient_id

        sections: Dict[SectionName, RecordSection] = {}
        for name in self._strategies:
            section = existing.get(name)
            if section is None:
                section = RecordSection.empty(patient_id, name)
            elif section.patient_id != patient_id:
                raise ValidationError(f"section {name.value} belongs to another patient")
            sections[name] = section.model_copy(deep=True)

        incoming: Dict[SectionName, List[SectionEntry]] = {}
        origins: Dict[str, Finding] = {}
        for finding in bundle.findings:
            name, subsection = route(finding)
            if name not in self._strategies:
                raise ValidationError(f"no merge strategy for section {name.value}")
            entry = self._to_entry(finding, subsection, now)
            origins[entry.id] = finding
            incoming.setdefault(name, []).append(entry)

        if bundle.summary.strip() and SectionName.CARE_PLAN in self._strategies:
            incoming.setdefault(SectionName.CARE_PLAN, []).append(
                SectionEntry(
                    kind=FindingKind.PLAN_ITEM,
                    subsection=ADDENDA,
                    name="Clinical note",
                    date=now.date(),
                    text=CLINICAL_NOTE_PREFIX + bundle.summary.strip(),
                    recorded_at=now,
                )
            )

        summary = ChangeSummary()
        results: Dict[SectionName, StrategyResult] = {}
        # One applied finding per stored entry; a later value for the same entry wins.
        applied: Dict[str, AppliedFinding] = {}
        for name, entries in incoming.items():
            before = sections[name].content_key()
            result = self._strategies[name].apply(sections[name], entries, now)
            results[name] = result
            if sections[name].content_key() != before:
                summary.sections_changed.append(name)
            summary.added += len(result.added)
            summary.replaced += len(result.replaced)
            summary.contradicted += len(result.contradicted)
            for incoming_entry, stored in result.added + result.replaced:
                finding = origins.get(incoming_entry.id)
                if finding is not None:
                    applied[stored.id] = AppliedFinding(finding=finding, section=name, entry_id=stored.id)

        summary.applied = list(applied.values())
        summary.delta = describe_changes(results)
        return sections, summary

    @staticmethod
    def _to_entry(finding: Finding, subsection: str, now: datetime) -> SectionEntry:
        name = finding.name.strip()
        if not name:
            raise ValidationError(f"{finding.kind.value} finding has no name")
        return SectionEntry(
            kind=finding.kind,
            subsection=subsection,
            name=name,
            value=finding.value.strip(),
            unit=finding.unit.strip(),
            date=finding.date or now.date(),
            approximate_date=finding.date is None,
            text=finding.label() if finding.kind is not FindingKind.PLAN_ITEM else name,
            recorded_at=now,
        )


def describe_changes(results: Mapping[SectionName, StrategyResult]) -> str:
    """Short human-readable delta of a merge, e.g. for the ingestion response."""

    def _stored(name: SectionName, kind: FindingKind) -> List[SectionEntry]:
        result = results.get(name)
        if result is None:
            return []
        return [stored for _, stored in result.added + result.replaced if stored.kind is kind]

    parts: List[str] = []
    conditions = _stored(SectionName.MEDICAL_HISTORY, FindingKind.CONDITION)
    if conditions:
        parts.append("conditions noted: " + ", ".join(e.name for e in conditions[:3]))
    labs = _stored(SectionName.LABS, FindingKind.LAB)
    if labs:
        parts.append(f"{len(labs)} new lab value{'s' if len(labs) > 1 else ''} captured")
    medications = _stored(SectionName.MEDICAL_HISTORY, FindingKind.MEDICATION)
    if medications:
        parts.append(f"{len(medications)} medication{'s' if len(medications) > 1 else ''} recorded")
    procedures = _stored(SectionName.MEDICAL_HISTORY, FindingKind.PROCEDURE)
    if procedures:
        parts.append("procedure history updated (" + ", ".join(e.name for e in procedures[:2]) + ")")
    vitals = _stored(SectionName.TRENDS, FindingKind.VITAL_TREND)
    if vitals:
        parts.append(f"{len(vitals)} vital trend value{'s' if len(vitals) > 1 else ''} captured")
    symptoms = _stored(SectionName.TRENDS, FindingKind.SYMPTOM)
    if symptoms:
        parts.append("symptoms documented: " + ", ".join(e.name for e in symptoms[:2]))
    care_plan = results.get(SectionName.CARE_PLAN)
    if care_plan is not None and care_plan.added:
        parts.append("care plan addenda appended")
    contradicted = sum(len(r.contradicted) for r in results.values())
    if contradicted:
        parts.append(f"{contradicted} history conflict{'s' if contradicted > 1 else ''} flagged for review")

    if not parts:
        return "Record merge processed with no novel structured findings."
    return f"Record merge processed; {'; '.join(parts)}."
