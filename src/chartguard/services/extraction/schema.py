from __future__ import annotations

import datetime as dt
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from src.chartguard.domain.models.finding import Finding, FindingKind, FindingsBundle
from src.chartguard.errors import ExtractionError

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%Y/%m/%d")


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        raise ValueError("expected text, got a boolean")
    if isinstance(value, (int, float)):
        return f"{value:g}" if isinstance(value, float) else str(value)
    if isinstance(value, str):
        return value.strip()
    raise ValueError(f"expected text, got {type(value).__name__}")


def parse_date(value: str) -> Optional[dt.date]:
    if not value:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return dt.datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError("unrecognized date format")


class _RawModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RawMeasurement(_RawModel):
    """A lab (``name``) or vital (``type``) reading as the oracle reports it."""

    name: str = ""
    value: str = ""
    unit: str = ""
    date: Optional[dt.date] = None

    @field_validator("name", "value", "unit", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _text(value)

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> Optional[dt.date]:
        if isinstance(value, dt.date):
            return value
        return parse_date(_text(value))


class RawVital(RawMeasurement):
    name: str = Field(default="", alias="type")


class RawMedication(_RawModel):
    drug_name: str = Field(default="", alias="drugName")
    dose: str = ""
    frequency: str = ""
    route: str = ""

    @field_validator("drug_name", "dose", "frequency", "route", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _text(value)


class RawExtraction(_RawModel):
    """Schema of the extraction oracle's JSON output.

    Unknown keys are ignored and absent keys default to empty; nothing is
    filled in that the oracle did not report.
    """

    conditions: List[str] = Field(default_factory=list)
    medications: List[RawMedication] = Field(default_factory=list)
    procedures: List[str] = Field(default_factory=list)
    labs: List[RawMeasurement] = Field(default_factory=list)
    vitals: List[RawVital] = Field(default_factory=list)
    symptoms: List[str] = Field(default_factory=list)
    plan_items: List[str] = Field(default_factory=list, alias="planItems")
    medical_summary: str = Field(default="", alias="medicalSummary")

    @field_validator("conditions", "procedures", "symptoms", "plan_items", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("expected a list")
        return [_text(v) for v in value]

    @field_validator("medications", "labs", "vitals", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("medical_summary", mode="before")
    @classmethod
    def _coerce_summary(cls, value: Any) -> str:
        return _text(value)

    def to_bundle(self) -> FindingsBundle:
        findings: List[Finding] = []
        for lab in self.labs:
            if lab.name and lab.value:
                findings.append(Finding(kind=FindingKind.LAB, name=lab.name, value=lab.value, unit=lab.unit, date=lab.date))
        for vital in self.vitals:
            if vital.name and vital.value:
                findings.append(
                    Finding(kind=FindingKind.VITAL_TREND, name=vital.name, value=vital.value, unit=vital.unit, date=vital.date)
                )
        for condition in self.conditions:
            if condition:
                findings.append(Finding(kind=FindingKind.CONDITION, name=condition))
        for procedure in self.procedures:
            if procedure:
                findings.append(Finding(kind=FindingKind.PROCEDURE, name=procedure))
        for med in self.medications:
            if med.drug_name:
                value = " ".join(part for part in (med.dose, med.frequency) if part)
                findings.append(Finding(kind=FindingKind.MEDICATION, name=med.drug_name, value=value))
        for symptom in self.symptoms:
            if symptom:
                findings.append(Finding(kind=FindingKind.SYMPTOM, name=symptom))
        for item in self.plan_items:
            if item:
                findings.append(Finding(kind=FindingKind.PLAN_ITEM, name=item))
        return FindingsBundle(findings=findings, summary=self.medical_summary)


def parse_extraction(raw: Any) -> FindingsBundle:
    """Validate oracle output and convert it to findings.

    Raises ``ExtractionError`` when the output is not a mapping or does not
    fit the schema; callers abandon the whole submission in that case.
    """

    if not isinstance(raw, Mapping):
        raise ExtractionError("extraction output is not an object")
    try:
        parsed = RawExtraction.model_validate(dict(raw))
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"][:1]) for err in exc.errors()})
        raise ExtractionError(f"malformed extraction output in: {', '.join(fields)}") from exc
    return parsed.to_bundle()
