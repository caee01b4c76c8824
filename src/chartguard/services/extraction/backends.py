from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional, Protocol

from src.chartguard.config import Settings
from src.chartguard.errors import ExtractionError
from src.chartguard.services.verification.attribution import KNOWN_DRUGS


class ExtractionBackend(Protocol):
    """Protocol for the extraction oracle: raw clinical text in, JSON-like mapping out."""

    def extract(self, raw_text: str) -> Mapping[str, Any]:  # pragma: no cover - interface
        raise NotImplementedError


_LAB_NAMES = (
    "NT-proBNP",
    "BNP",
    "Potassium",
    "Sodium",
    "Creatinine",
    "INR",
    "HbA1c",
    "A1c",
    "Hemoglobin",
    "Glucose",
    "Troponin",
    "LDL",
    "HDL",
    "Total cholesterol",
    "Triglycerides",
    "Magnesium",
    "BUN",
    "eGFR",
    "TSH",
)
_LAB_UNITS = r"pg/mL|ng/mL|ng/L|mEq/L|mmol/L|mg/dL|g/dL|mIU/L|U/L|mL/min(?:/1\.73\s?m2)?|%"
_LAB = re.compile(
    r"(?<![\w-])(" + "|".join(re.escape(n) for n in _LAB_NAMES) + r")\s*(?:level)?\s*[:=]?\s*(-?\d+(?:\.\d+)?)\s*(" + _LAB_UNITS + r")?",
    re.IGNORECASE,
)
_VITALS = (
    ("blood pressure", re.compile(r"\b(?:BP|blood pressure)\s*[:=]?\s*(\d{2,3}\s*/\s*\d{2,3})\s*(mmHg)?", re.IGNORECASE)),
    ("heart rate", re.compile(r"\b(?:HR|heart rate|pulse)\s*[:=]?\s*(\d{2,3})\s*(bpm)?", re.IGNORECASE)),
    ("weight", re.compile(r"\b(?:weight|wt)\s*[:=]?\s*(\d{2,3}(?:\.\d+)?)\s*(kg|lbs?)?", re.IGNORECASE)),
    ("oxygen saturation", re.compile(r"\b(?:SpO2|O2 sat(?:uration)?|oxygen saturation)\s*[:=]?\s*(\d{2,3})\s*(%)?", re.IGNORECASE)),
    ("temperature", re.compile(r"\b(?:temp|temperature)\s*[:=]?\s*(\d{2,3}(?:\.\d+)?)\s*(F|C)?\b", re.IGNORECASE)),
)
_DATE = re.compile(r"\b(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{4})\b")
_CONDITION = re.compile(r"\b(no history of|history of|hx of|diagnosed with|denies)\s+([^.;,\n]+)", re.IGNORECASE)
_PROCEDURE = re.compile(r"\b(?:s/p|status post|underwent)\s+([^.;,\n]+)", re.IGNORECASE)
_MEDICATION = re.compile(
    r"\b(" + "|".join(KNOWN_DRUGS) + r")\b(?:\s+(\d+(?:\.\d+)?\s*(?:mg|mcg|units?|ml)))?"
    r"(?:\s+(daily|once daily|twice daily|bid|tid|qd|qhs|nightly|prn))?",
    re.IGNORECASE,
)
_SYMPTOMS = (
    "shortness of breath",
    "dyspnea",
    "orthopnea",
    "ankle swelling",
    "leg swelling",
    "edema",
    "fatigue",
    "dizziness",
    "palpitations",
    "chest pain",
    "cough",
    "nausea",
)
_SYMPTOM = re.compile(r"\b(" + "|".join(_SYMPTOMS) + r")\b", re.IGNORECASE)
_SYMPTOM_NEGATION = re.compile(r"\b(?:denies|no|without|negative for)\b[^.;\n]*$", re.IGNORECASE)
_PLAN = re.compile(r"^\s*(?:plan|recommendations?)\s*:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_SUMMARY = re.compile(r"^\s*(?:assessment|impression|summary)\s*:\s*(.+)$", re.IGNORECASE | re.MULTILINE)


def _split_items(text: str) -> List[str]:
    return [part.strip() for part in re.split(r"[;]|\.\s+|\.$", text) if part.strip()]


class DemoExtractionBackend:
    """Deterministic regex extractor used for tests and local development.

    Recognizes common cardiology labs and vitals, "history of" conditions,
    procedures, known medications, symptom mentions and "Plan:" lines. The
    first date in the text is applied to labs and vitals; without one the
    readings are left undated.
    """

    def extract(self, raw_text: str) -> Mapping[str, Any]:
        date_match = _DATE.search(raw_text)
        date = date_match.group(1) if date_match else ""

        labs: List[Dict[str, str]] = []
        for match in _LAB.finditer(raw_text):
            labs.append({"name": match.group(1), "value": match.group(2), "unit": match.group(3) or "", "date": date})

        vitals: List[Dict[str, str]] = []
        for vital_type, pattern in _VITALS:
            for match in pattern.finditer(raw_text):
                vitals.append(
                    {"type": vital_type, "value": re.sub(r"\s+", "", match.group(1)), "unit": match.group(2) or "", "date": date}
                )

        conditions: List[str] = []
        for match in _CONDITION.finditer(raw_text):
            cue = match.group(1).lower()
            for part in re.split(r"\s+and\s+", match.group(2).strip()):
                part = part.strip()
                if not part:
                    continue
                if cue in ("no history of", "denies"):
                    part = f"{cue} {part}"
                if part not in conditions:
                    conditions.append(part)

        procedures = [m.group(1).strip() for m in _PROCEDURE.finditer(raw_text)]

        medications: List[Dict[str, str]] = []
        seen_drugs = set()
        for match in _MEDICATION.finditer(raw_text):
            drug = match.group(1).lower()
            if drug in seen_drugs:
                continue
            seen_drugs.add(drug)
            medications.append(
                {"drugName": drug, "dose": match.group(2) or "", "frequency": match.group(3) or "", "route": "oral"}
            )

        symptoms: List[str] = []
        for match in _SYMPTOM.finditer(raw_text):
            if _SYMPTOM_NEGATION.search(raw_text[max(0, match.start() - 40) : match.start()]):
                continue
            symptom = match.group(1).lower()
            if symptom not in symptoms:
                symptoms.append(symptom)

        plan_items: List[str] = []
        for match in _PLAN.finditer(raw_text):
            plan_items.extend(_split_items(match.group(1)))

        summary_match = _SUMMARY.search(raw_text)
        return {
            "conditions": conditions,
            "medications": medications,
            "procedures": procedures,
            "labs": labs,
            "vitals": vitals,
            "symptoms": symptoms,
            "planItems": plan_items,
            "medicalSummary": summary_match.group(1).strip() if summary_match else "",
        }


EXTRACTION_INSTRUCTIONS = (
    "You are a medical data extraction assistant. Parse EMR/clinical text and return ONLY valid JSON.\n\n"
    "Extract these fields:\n"
    "- conditions: string[]\n"
    "- medications: [{drugName,dose,frequency,route}]\n"
    "- medicalSummary: 2-3 sentence factual summary\n"
    "- procedures: notable procedures/surgeries as string[]\n"
    "- labs: [{name,value,unit,date}] for any mentioned lab values, date as YYYY-MM-DD\n"
    "- vitals: [{type,value,unit,date}] for weight, BP, HR, glucose, O2, temp if present\n"
    "- symptoms: string[] clinically relevant symptom mentions\n"
    "- planItems: string[] treatment/follow-up recommendations in the source\n\n"
    "Rules:\n"
    "- Do not fabricate details.\n"
    "- Use empty strings/arrays when absent.\n"
    "- Return JSON only, no markdown."
)


def _strip_code_fences(text: str) -> str:
    return re.sub(r"```(?:json)?\s*", "", text).strip()


class LLMExtractionBackend:
    """Extraction oracle backed by an LLM via the OpenAI Python client.

    This backend expects OPENAI_API_KEY to be set and uses the model name
    from LLM_MODEL. The client timeout matches EXTRACTION_TIMEOUT_SECONDS so
    the request is abandoned together with the caller's wait.
    """

    def __init__(self, settings: Settings, model: Optional[str] = None) -> None:  # pragma: no cover - external service
        self._settings = settings
        self._model = model or settings.llm_model

    def extract(self, raw_text: str) -> Mapping[str, Any]:  # pragma: no cover - external service
        import json

        api_key = self._settings.openai_api_key
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY must be set to use LLMExtractionBackend")

        try:
            from openai import OpenAI
        except ImportError as exc:
            raise RuntimeError(
                "LLMExtractionBackend requires the 'openai' package. Install it with 'pip install openai'"
            ) from exc

        client = OpenAI(api_key=api_key, timeout=self._settings.extraction_timeout_seconds)
        response = client.responses.create(
            model=self._model,
            instructions=EXTRACTION_INSTRUCTIONS,
            input=[{"role": "user", "content": f"Parse this EMR text into structured data:\n\n{raw_text}"}],
        )

        raw_output = getattr(response, "output_text", None)
        if not raw_output:
            raise ExtractionError("extraction model returned no text")
        try:
            return json.loads(_strip_code_fences(raw_output))
        except json.JSONDecodeError as exc:
            raise ExtractionError("extraction model returned invalid JSON") from exc


def get_extraction_backend_from_settings(settings: Settings) -> ExtractionBackend:
    """Select the extraction backend based on EXTRACTION_BACKEND.

    Supports:
    - "demo" (default) – deterministic regex extractor
    - "llm" – LLMExtractionBackend using an external LLM
    """

    if settings.extraction_backend.lower() == "llm":
        return LLMExtractionBackend(settings)
    return DemoExtractionBackend()
