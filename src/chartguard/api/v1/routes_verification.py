from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from src.chartguard.api.v1.schemas import VerificationItemView
from src.chartguard.context import AppContext, get_app_context
from src.chartguard.domain.models.audit_event import AuditContext
from src.chartguard.domain.models.verification import VerificationAction
from src.chartguard.security import get_request_context

router = APIRouter(prefix="/verification", tags=["verification"])


class VerificationTransitionRequest(BaseModel):
    action: VerificationAction


@router.post("/{item_id}", response_model=VerificationItemView)
def review_transition(
    item_id: str,
    payload: VerificationTransitionRequest,
    context: AuditContext = Depends(get_request_context),
    app_context: AppContext = Depends(get_app_context),
) -> VerificationItemView:
    """Verify or dispute a pending item. The reviewer is the calling actor."""

    item = app_context.ingestion.review_transition(item_id, payload.action, context)
    return VerificationItemView.from_item(item)
