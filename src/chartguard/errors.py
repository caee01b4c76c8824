from __future__ import annotations

from typing import Optional


class ChartGuardError(Exception):
    """Base class for errors raised by the record pipeline.

    Each error is local to the operation that raised it; none of them imply
    that previously committed state was modified.
    """

    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(ChartGuardError):
    """Malformed input or Finding; rejected before any merge or write."""

    code = "validation_error"


class ExtractionError(ChartGuardError):
    """The extraction backend failed or returned output we cannot use."""

    code = "extraction_error"


class ExtractionTimeout(ExtractionError):
    """The extraction backend did not answer within the configured bound."""

    code = "extraction_timeout"


class DecryptionError(ChartGuardError):
    """An envelope could not be authenticated or decoded.

    Callers must not treat this as "no data": the content exists but is
    unavailable.
    """

    code = "undecryptable"


class ConflictError(ChartGuardError):
    """Terminal-state transition attempt or a concurrent write on the same record."""

    code = "conflict"


class NotFoundError(ChartGuardError):
    code = "not_found"


class AuthorizationError(ChartGuardError):
    code = "forbidden"


class AuditWriteFailure(ChartGuardError):
    """Operational signal for an audit event that could not be persisted.

    Never raised out of a clinical operation; handed to the audit trail's
    failure callback and logged instead.
    """

    code = "audit_write_failure"

    def __init__(self, message: str = "", *, action: Optional[str] = None, resource_type: Optional[str] = None,
                 resource_id: Optional[str] = None, actor: Optional[str] = None) -> None:
        super().__init__(message)
        self.action = action
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.actor = actor
