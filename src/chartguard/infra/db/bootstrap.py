from __future__ import annotations

import logging
from dataclasses import dataclass

from src.chartguard.config import Settings
from src.chartguard.infra.db.inmemory import (
    InMemoryAlertRepository,
    InMemoryAuditEventRepository,
    InMemoryPatientRepository,
    InMemoryRecordSectionRepository,
    InMemoryVerificationItemRepository,
)
from src.chartguard.infra.db.models import Base
from src.chartguard.infra.db.repositories import (
    AlertRepository,
    AuditEventRepository,
    PatientRepository,
    RecordSectionRepository,
    VerificationItemRepository,
)
from src.chartguard.infra.db.session import create_engine_for_url, create_sqlalchemy_session_factory
from src.chartguard.infra.db.sql_repositories import (
    SqlAlertRepository,
    SqlAuditEventRepository,
    SqlPatientRepository,
    SqlRecordSectionRepository,
    SqlVerificationItemRepository,
)
from src.chartguard.services.encryption.envelope import EncryptionEnvelope

logger = logging.getLogger(__name__)


@dataclass
class Repositories:
    patients: PatientRepository
    sections: RecordSectionRepository
    verification_items: VerificationItemRepository
    alerts: AlertRepository
    audit_events: AuditEventRepository


def build_inmemory_repositories(envelope: EncryptionEnvelope) -> Repositories:
    verification_items = InMemoryVerificationItemRepository(envelope)
    return Repositories(
        patients=InMemoryPatientRepository(),
        sections=InMemoryRecordSectionRepository(envelope, verification_items),
        verification_items=verification_items,
        alerts=InMemoryAlertRepository(envelope),
        audit_events=InMemoryAuditEventRepository(),
    )


def build_sql_repositories(database_url: str, envelope: EncryptionEnvelope) -> Repositories:
    engine = create_engine_for_url(database_url)

    # Create tables if they do not exist. In a real deployment this should be
    # handled by migrations, but this is convenient for early setups.
    Base.metadata.create_all(engine)

    session_factory = create_sqlalchemy_session_factory(engine)
    return Repositories(
        patients=SqlPatientRepository(session_factory),
        sections=SqlRecordSectionRepository(session_factory, envelope),
        verification_items=SqlVerificationItemRepository(session_factory, envelope),
        alerts=SqlAlertRepository(session_factory, envelope),
        audit_events=SqlAuditEventRepository(session_factory),
    )


def build_repositories(settings: Settings, envelope: EncryptionEnvelope) -> Repositories:
    """Pick repository implementations from settings.

    When USE_SQL_REPOS is enabled and a DATABASE_URL is configured, the SQL
    implementations are used. Otherwise (tests, local dev without a
    database) the in-memory repositories are returned.
    """

    if not settings.use_sql_repos:
        return build_inmemory_repositories(envelope)
    if not settings.database_url:
        # Misconfigured: requested SQL repos but no database URL.
        logger.warning("USE_SQL_REPOS is set without DATABASE_URL; using in-memory repositories")
        return build_inmemory_repositories(envelope)
    return build_sql_repositories(settings.database_url, envelope)
