import threading
from datetime import date

import pytest

from src.chartguard.config import Settings
from src.chartguard.domain.models.finding import FindingKind
from src.chartguard.errors import ExtractionError, ExtractionTimeout, ValidationError
from src.chartguard.services.extraction.backends import (
    DemoExtractionBackend,
    LLMExtractionBackend,
    get_extraction_backend_from_settings,
)
from src.chartguard.services.extraction.schema import parse_extraction
from src.chartguard.services.extraction.service import MAX_TEXT_LENGTH, ExtractionService

NOTE = (
    "2026-02-25 follow-up. BNP 450 pg/mL, Potassium 4.2 mEq/L. BP 150/95 mmHg, HR 88 bpm. "
    "History of hypertension and atrial fibrillation. No history of diabetes. s/p CABG. "
    "Taking metoprolol 25 mg twice daily. Reports ankle swelling, denies chest pain.\n"
    "Plan: Increase furosemide to 40 mg daily; Repeat BMP in 1 week\n"
    "Assessment: Volume overloaded HFrEF."
)


class StaticBackend:
    def __init__(self, output):
        self.output = output

    def extract(self, raw_text):
        return self.output


class SlowBackend:
    def __init__(self):
        self.release = threading.Event()

    def extract(self, raw_text):
        self.release.wait(5)
        return {}


class CrashingBackend:
    def extract(self, raw_text):
        raise RuntimeError("connection reset")


def by_kind(bundle, kind):
    return [f for f in bundle.findings if f.kind is kind]


def test_demo_backend_extracts_cardiology_note():
    bundle = parse_extraction(DemoExtractionBackend().extract(NOTE))

    labs = by_kind(bundle, FindingKind.LAB)
    assert [(f.name, f.value, f.unit, f.date) for f in labs] == [
        ("BNP", "450", "pg/mL", date(2026, 2, 25)),
        ("Potassium", "4.2", "mEq/L", date(2026, 2, 25)),
    ]
    vitals = {f.name: f.value for f in by_kind(bundle, FindingKind.VITAL_TREND)}
    assert vitals == {"blood pressure": "150/95", "heart rate": "88"}

    conditions = [f.name for f in by_kind(bundle, FindingKind.CONDITION)]
    assert conditions[:3] == ["hypertension", "atrial fibrillation", "no history of diabetes"]
    assert [f.name for f in by_kind(bundle, FindingKind.PROCEDURE)] == ["CABG"]

    meds = {f.name: f.value for f in by_kind(bundle, FindingKind.MEDICATION)}
    assert meds["metoprolol"] == "25 mg twice daily"
    assert "furosemide" in meds

    assert [f.name for f in by_kind(bundle, FindingKind.SYMPTOM)] == ["ankle swelling"]
    assert [f.name for f in by_kind(bundle, FindingKind.PLAN_ITEM)] == [
        "Increase furosemide to 40 mg daily",
        "Repeat BMP in 1 week",
    ]
    assert bundle.summary == "Volume overloaded HFrEF."


def test_demo_backend_without_date_leaves_readings_undated():
    bundle = parse_extraction(DemoExtractionBackend().extract("Weight 82 kg"))
    (weight,) = bundle.findings
    assert weight.kind is FindingKind.VITAL_TREND
    assert weight.date is None


def test_schema_coerces_and_ignores_unknown_keys():
    bundle = parse_extraction(
        {
            "labs": [
                {"name": "INR", "value": 2.5, "date": "02/24/2026", "comment": "ignored"},
                {"name": "Sodium", "value": ""},
            ],
            "vitals": [{"type": "weight", "value": 82, "unit": "kg"}],
            "medications": [{"drugName": "Eliquis", "dose": "5 mg"}],
            "conditions": None,
            "extra": {"anything": True},
        }
    )
    assert [(f.kind, f.name, f.value) for f in bundle.findings] == [
        (FindingKind.LAB, "INR", "2.5"),
        (FindingKind.VITAL_TREND, "weight", "82"),
        (FindingKind.MEDICATION, "Eliquis", "5 mg"),
    ]
    assert bundle.findings[0].date == date(2026, 2, 24)
    assert bundle.summary == ""


@pytest.mark.parametrize(
    "raw",
    [
        "not an object",
        ["labs"],
        {"labs": "BNP 450"},
        {"conditions": [{"name": "CHF"}]},
        {"labs": [{"name": "BNP", "value": "450", "date": "last Tuesday"}]},
        {"medicalSummary": ["a", "b"]},
        {"symptoms": [True]},
    ],
)
def test_malformed_output_raises_extraction_error(raw):
    with pytest.raises(ExtractionError):
        parse_extraction(raw)


def test_service_returns_validated_bundle():
    service = ExtractionService(StaticBackend({"conditions": ["CKD stage 3"]}), timeout_seconds=1)
    try:
        bundle = service.extract("CKD stage 3")
    finally:
        service.close()
    assert [f.name for f in bundle.findings] == ["CKD stage 3"]


def test_service_times_out_slow_backend():
    backend = SlowBackend()
    service = ExtractionService(backend, timeout_seconds=0.05)
    try:
        with pytest.raises(ExtractionTimeout):
            service.extract("BNP 450")
    finally:
        backend.release.set()
        service.close()


def test_service_wraps_backend_crash():
    service = ExtractionService(CrashingBackend(), timeout_seconds=1)
    try:
        with pytest.raises(ExtractionError) as excinfo:
            service.extract("BNP 450")
    finally:
        service.close()
    assert not isinstance(excinfo.value, ExtractionTimeout)


@pytest.mark.parametrize("text", ["", "   ", "x" * (MAX_TEXT_LENGTH + 1)])
def test_service_rejects_unusable_text(text):
    service = ExtractionService(StaticBackend({}), timeout_seconds=1)
    try:
        with pytest.raises(ValidationError):
            service.extract(text)
    finally:
        service.close()


def test_backend_selection():
    assert isinstance(get_extraction_backend_from_settings(Settings(extraction_backend="demo")), DemoExtractionBackend)
    assert isinstance(get_extraction_backend_from_settings(Settings(extraction_backend="llm")), LLMExtractionBackend)
