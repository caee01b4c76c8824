from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.chartguard.api.v1.schemas import AlertView
from src.chartguard.context import AppContext, get_app_context
from src.chartguard.domain.models.audit_event import AuditContext
from src.chartguard.security import get_request_context

router = APIRouter(prefix="/alerts", tags=["alerts"])


class ResolveAlertRequest(BaseModel):
    resolution_note: Optional[str] = Field(default=None, max_length=4000)


@router.post("/{alert_id}/resolve", response_model=AlertView)
def resolve_alert(
    alert_id: str,
    payload: ResolveAlertRequest,
    context: AuditContext = Depends(get_request_context),
    app_context: AppContext = Depends(get_app_context),
) -> AlertView:
    alert = app_context.ingestion.resolve_alert(alert_id, context, payload.resolution_note)
    return AlertView.from_alert(alert)
