from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request

from src.chartguard.config import Settings
from src.chartguard.errors import AuditWriteFailure
from src.chartguard.infra.db.bootstrap import Repositories, build_repositories
from src.chartguard.infra.locks import PatientLockRegistry
from src.chartguard.services.alerts.service import AlertLifecycle
from src.chartguard.services.alerts.thresholds import ThresholdTable
from src.chartguard.services.audit.service import AuditTrail
from src.chartguard.services.encryption.envelope import EncryptionEnvelope, EnvKeyProvider, KeyProvider
from src.chartguard.services.escalation.lexicon import EmergencyLexicon
from src.chartguard.services.escalation.service import (
    EscalationDetector,
    SemanticClassifier,
    get_classifier_from_settings,
)
from src.chartguard.services.extraction.backends import ExtractionBackend, get_extraction_backend_from_settings
from src.chartguard.services.extraction.service import ExtractionService
from src.chartguard.services.ingestion.service import IngestionService
from src.chartguard.services.merge.service import MergeEngine
from src.chartguard.services.verification.service import VerificationLedger

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass
class AppContext:
    """Everything a request needs, built once at startup.

    Routes get it through :func:`get_app_context`; tests construct it with
    :func:`build_context` and call the services directly.
    """

    settings: Settings
    envelope: EncryptionEnvelope
    repositories: Repositories
    audit_trail: AuditTrail
    ledger: VerificationLedger
    merge_engine: MergeEngine
    detector: EscalationDetector
    alerts: AlertLifecycle
    thresholds: ThresholdTable
    extraction: ExtractionService
    locks: PatientLockRegistry
    ingestion: IngestionService

    def close(self) -> None:
        self.audit_trail.close()
        self.extraction.close()


def build_context(
    settings: Optional[Settings] = None,
    *,
    key_provider: Optional[KeyProvider] = None,
    repositories: Optional[Repositories] = None,
    extraction_backend: Optional[ExtractionBackend] = None,
    classifier: object = _UNSET,
    on_audit_failure: Optional[Callable[[AuditWriteFailure], None]] = None,
) -> AppContext:
    """Wire the services from settings.

    Explicit arguments override what settings would select, which is how
    tests inject failing repositories, slow backends or a fixed key.
    Passing ``classifier=None`` disables the advisory escalation check.
    """

    settings = settings or Settings()
    envelope = EncryptionEnvelope(
        key_provider
        or EnvKeyProvider(settings.encryption_key or "", allow_ephemeral=settings.allow_ephemeral_key)
    )
    repositories = repositories or build_repositories(settings, envelope)

    audit_trail = AuditTrail(
        repositories.audit_events,
        asynchronous=settings.audit_async,
        queue_size=settings.audit_queue_size,
        on_failure=on_audit_failure,
    )
    ledger = VerificationLedger(repositories.verification_items)
    merge_engine = MergeEngine(
        rolling_cap=settings.rolling_cap,
        similarity_threshold=settings.history_similarity_threshold,
    )
    detector = EscalationDetector(
        EmergencyLexicon.with_extra(settings.escalation_extra_signals),
        get_classifier_from_settings(settings) if classifier is _UNSET else classifier,  # type: ignore[arg-type]
    )
    alerts = AlertLifecycle(
        repositories.alerts,
        lock_alert_count=settings.lock_alert_count,
        lock_window_minutes=settings.lock_window_minutes,
    )
    thresholds = ThresholdTable()
    extraction = ExtractionService(
        extraction_backend or get_extraction_backend_from_settings(settings),
        timeout_seconds=settings.extraction_timeout_seconds,
        max_workers=settings.extraction_workers,
    )
    locks = PatientLockRegistry(settings.merge_lock_timeout_seconds)
    ingestion = IngestionService(
        patients=repositories.patients,
        sections=repositories.sections,
        extraction=extraction,
        merge_engine=merge_engine,
        ledger=ledger,
        detector=detector,
        alerts=alerts,
        thresholds=thresholds,
        audit_trail=audit_trail,
        locks=locks,
    )
    return AppContext(
        settings=settings,
        envelope=envelope,
        repositories=repositories,
        audit_trail=audit_trail,
        ledger=ledger,
        merge_engine=merge_engine,
        detector=detector,
        alerts=alerts,
        thresholds=thresholds,
        extraction=extraction,
        locks=locks,
        ingestion=ingestion,
    )


def get_app_context(request: Request) -> AppContext:
    """FastAPI dependency returning the context stored on ``app.state``."""

    return request.app.state.context
