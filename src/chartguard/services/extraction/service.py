from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

from src.chartguard.domain.models.finding import FindingsBundle
from src.chartguard.errors import ChartGuardError, ExtractionError, ExtractionTimeout, ValidationError
from src.chartguard.services.extraction.backends import ExtractionBackend
from src.chartguard.services.extraction.schema import parse_extraction

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 50_000


class ExtractionService:
    """Runs the extraction oracle off the caller's thread with a hard time bound.

    Output is schema-validated before it is returned, so callers either get
    a complete FindingsBundle or an error and nothing else.
    """

    def __init__(self, backend: ExtractionBackend, *, timeout_seconds: float = 20.0, max_workers: int = 4) -> None:
        self._backend = backend
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="extraction")

    def extract(self, raw_text: str) -> FindingsBundle:
        if not isinstance(raw_text, str) or not raw_text.strip():
            raise ValidationError("clinical text is empty")
        if len(raw_text) > MAX_TEXT_LENGTH:
            raise ValidationError("clinical text is too long")

        future = self._executor.submit(self._backend.extract, raw_text)
        try:
            raw = future.result(timeout=self._timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning("extraction timed out after %.1fs", self._timeout)
            raise ExtractionTimeout(f"extraction did not finish within {self._timeout:g}s") from exc
        except ChartGuardError:
            raise
        except Exception as exc:
            logger.warning("extraction backend failed: %s", type(exc).__name__)
            raise ExtractionError("extraction backend failed") from exc

        return parse_extraction(raw)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
