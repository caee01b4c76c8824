from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import uuid4

from src.chartguard.domain.models.alert import Alert, AlertSeverity
from src.chartguard.errors import ConflictError, NotFoundError, ValidationError
from src.chartguard.infra.db.repositories import AlertRepository

logger = logging.getLogger(__name__)

ACCOUNT_LOCKED = "account_locked"
AUTO_LOCK_TRIGGER = "auto_lock"

_URGENT = {AlertSeverity.HIGH, AlertSeverity.CRITICAL}


class AlertLifecycle:
    """OPEN -> RESOLVED state machine for physician alerts.

    Severity is fixed at creation and there is no re-open; a change in
    urgency means a new alert. Organization checks belong to the caller.
    """

    def __init__(
        self,
        repository: AlertRepository,
        *,
        lock_alert_count: int = 3,
        lock_window_minutes: int = 30,
    ) -> None:
        self._repository = repository
        self._lock_alert_count = lock_alert_count
        self._lock_window = timedelta(minutes=lock_window_minutes)

    def create(
        self,
        severity: AlertSeverity,
        category: str,
        message: str,
        trigger_source: str,
        *,
        patient_id: str,
        organization_id: str,
        now: Optional[datetime] = None,
    ) -> Alert:
        if not category or not trigger_source:
            raise ValidationError("alert category and trigger source are required")
        alert = Alert(
            id=uuid4().hex,
            patient_id=patient_id,
            organization_id=organization_id,
            severity=severity,
            category=category,
            message=message,
            trigger_source=trigger_source,
            created_at=now or datetime.now(timezone.utc),
        )
        self._repository.add(alert)
        logger.info("alert %s created: severity=%s category=%s", alert.id, severity.value, category)
        return alert

    def get(self, alert_id: str) -> Alert:
        alert = self._repository.get(alert_id)
        if alert is None:
            raise NotFoundError("alert not found")
        return alert

    def resolve(self, alert_id: str, reviewer: str, resolution_note: Optional[str] = None) -> Alert:
        alert = self.get(alert_id)
        if alert.resolved:
            raise ConflictError("alert already resolved")
        resolved = alert.model_copy(
            update={
                "resolved": True,
                "resolved_by": reviewer,
                "resolved_at": datetime.now(timezone.utc),
                "resolution_note": resolution_note,
            }
        )
        if not self._repository.resolve_if_open(resolved):
            raise ConflictError("alert already resolved")
        logger.info("alert %s resolved", alert_id)
        return resolved

    def list_for_patient(self, patient_id: str, *, include_resolved: bool = True) -> List[Alert]:
        return list(self._repository.list_by_patient(patient_id, include_resolved=include_resolved))

    def should_lock(self, patient_id: str, now: Optional[datetime] = None) -> bool:
        """True when recent unresolved urgent alerts reach the lock threshold."""

        now = now or datetime.now(timezone.utc)
        recent = self._repository.list_by_patient(patient_id, include_resolved=False, since=now - self._lock_window)
        urgent = [a for a in recent if a.severity in _URGENT and a.category != ACCOUNT_LOCKED]
        return len(urgent) >= self._lock_alert_count

    def create_lock_alert(self, *, patient_id: str, organization_id: str) -> Alert:
        return self.create(
            AlertSeverity.CRITICAL,
            ACCOUNT_LOCKED,
            f"Agent disabled after {self._lock_alert_count} urgent alerts within "
            f"{int(self._lock_window.total_seconds() // 60)} minutes. Review before re-enabling.",
            AUTO_LOCK_TRIGGER,
            patient_id=patient_id,
            organization_id=organization_id,
        )
