from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from src.chartguard.api.v1.schemas import AlertView, VerificationItemView
from src.chartguard.context import AppContext, get_app_context
from src.chartguard.domain.models.audit_event import AuditContext
from src.chartguard.domain.models.escalation import EscalationDecision
from src.chartguard.domain.models.patient import Patient
from src.chartguard.domain.models.record_section import RecordSection
from src.chartguard.domain.models.verification import SourceType
from src.chartguard.security import get_request_context
from src.chartguard.services.ingestion.service import Channel, IngestionResult


# Handlers are sync so blocking work (extraction wait, merge lock) runs in the
# threadpool instead of on the event loop.
router = APIRouter(prefix="/patients", tags=["patients"])


class EnrollPatientRequest(BaseModel):
    patient_id: Optional[str] = Field(default=None, min_length=1, max_length=64)


class ClinicalTextRequest(BaseModel):
    text: str = Field(min_length=1)
    source_type: SourceType = SourceType.EMR_IMPORT


class CarePlanRequest(BaseModel):
    content: str = Field(min_length=1)


class UtteranceRequest(BaseModel):
    text: str = Field(min_length=1)
    channel: Channel = Channel.SMS
    register_self_report: bool = False


class UtteranceResponse(BaseModel):
    decision: EscalationDecision
    alert_id: Optional[str] = None
    account_locked: bool = False
    verification_item_id: Optional[str] = None


class RecordResponse(BaseModel):
    patient_id: str
    sections: Dict[str, RecordSection]


@router.post("", response_model=Patient, status_code=status.HTTP_201_CREATED)
def enroll_patient(
    payload: EnrollPatientRequest,
    context: AuditContext = Depends(get_request_context),
    app_context: AppContext = Depends(get_app_context),
) -> Patient:
    return app_context.ingestion.enroll_patient(context, patient_id=payload.patient_id)


@router.post("/{patient_id}/care-plan", response_model=RecordSection, status_code=status.HTTP_201_CREATED)
def create_care_plan(
    patient_id: str,
    payload: CarePlanRequest,
    context: AuditContext = Depends(get_request_context),
    app_context: AppContext = Depends(get_app_context),
) -> RecordSection:
    return app_context.ingestion.create_care_plan(patient_id, payload.content, context)


@router.post("/{patient_id}/clinical-text", response_model=IngestionResult)
def ingest_clinical_text(
    patient_id: str,
    payload: ClinicalTextRequest,
    context: AuditContext = Depends(get_request_context),
    app_context: AppContext = Depends(get_app_context),
) -> IngestionResult:
    return app_context.ingestion.ingest_clinical_text(
        patient_id,
        payload.text,
        context,
        source_type=payload.source_type,
    )


@router.post("/{patient_id}/utterances", response_model=UtteranceResponse)
def ingest_utterance(
    patient_id: str,
    payload: UtteranceRequest,
    context: AuditContext = Depends(get_request_context),
    app_context: AppContext = Depends(get_app_context),
) -> UtteranceResponse:
    outcome = app_context.ingestion.ingest_utterance(
        patient_id,
        payload.text,
        context,
        payload.channel,
        register_self_report=payload.register_self_report,
    )
    return UtteranceResponse(**outcome.model_dump())


@router.get("/{patient_id}/record", response_model=RecordResponse)
def get_record(
    patient_id: str,
    context: AuditContext = Depends(get_request_context),
    app_context: AppContext = Depends(get_app_context),
) -> RecordResponse:
    sections = app_context.ingestion.get_record(patient_id, context)
    return RecordResponse(patient_id=patient_id, sections={name.value: section for name, section in sections.items()})


@router.get("/{patient_id}/verification-queue", response_model=List[VerificationItemView])
def review_queue(
    patient_id: str,
    context: AuditContext = Depends(get_request_context),
    app_context: AppContext = Depends(get_app_context),
) -> List[VerificationItemView]:
    items = app_context.ingestion.review_queue(patient_id, context)
    return [VerificationItemView.from_item(item) for item in items]


@router.get("/{patient_id}/alerts", response_model=List[AlertView])
def list_alerts(
    patient_id: str,
    include_resolved: bool = True,
    context: AuditContext = Depends(get_request_context),
    app_context: AppContext = Depends(get_app_context),
) -> List[AlertView]:
    alerts = app_context.ingestion.list_alerts(patient_id, context, include_resolved=include_resolved)
    return [AlertView.from_alert(alert) for alert in alerts]
