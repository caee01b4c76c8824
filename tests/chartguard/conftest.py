import pytest

from src.chartguard.config import Settings
from src.chartguard.context import build_context
from src.chartguard.domain.models.audit_event import AuditContext
from src.chartguard.services.encryption.envelope import EncryptionEnvelope, StaticKeyProvider, generate_key_hex


def make_settings(**overrides) -> Settings:
    values = dict(
        encryption_key=generate_key_hex(),
        allow_ephemeral_key=False,
        extraction_backend="demo",
        extraction_timeout_seconds=5,
        escalation_classifier="demo",
        escalation_extra_signals=[],
        audit_async=False,
        use_sql_repos=False,
        database_url=None,
        enable_api_auth=False,
        api_keys=None,
        merge_lock_timeout_seconds=2,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def envelope() -> EncryptionEnvelope:
    return EncryptionEnvelope(StaticKeyProvider(bytes(range(32))))


@pytest.fixture
def app_context(settings):
    context = build_context(settings)
    yield context
    context.close()


@pytest.fixture
def context_factory():
    """Build extra contexts with setting overrides or injected components."""

    contexts = []

    def _build(settings_overrides=None, **kwargs):
        context = build_context(make_settings(**(settings_overrides or {})), **kwargs)
        contexts.append(context)
        return context

    yield _build
    for context in contexts:
        context.close()


@pytest.fixture
def clinician() -> AuditContext:
    return AuditContext(actor="dr-1", organization_id="org-1", ip_address="10.0.0.1", user_agent="pytest")
