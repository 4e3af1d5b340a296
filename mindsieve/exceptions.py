"""Exception hierarchy for MindSieve.

Every error is scoped to a single request. Errors that reach the HTTP layer
are rendered by the handler in ``mindsieve.api.main`` without upstream
details unless debug mode is on.
"""

from typing import Any, Dict, Optional


class MindSieveError(Exception):
    """Base exception for all MindSieve errors."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class UnsafeInputError(MindSieveError):
    """Raised when a query is rejected by the safety guard or the model."""

    code = "blocked"
    status_code = 400

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Query blocked: {reason}", {"reason": reason})


class UpstreamUnavailableError(MindSieveError):
    """An external service could not be reached and has no fallback."""

    code = "upstream_unavailable"
    status_code = 502


class EmbeddingUnavailableError(UpstreamUnavailableError):
    """Every embedding region and endpoint failed."""

    code = "embedding_unavailable"


class SearchUnavailableError(UpstreamUnavailableError):
    """The search engine rejected or failed the hybrid query."""

    code = "search_unavailable"


class BootstrapError(MindSieveError):
    """Secrets or clients could not be initialized."""

    code = "bootstrap_failed"
    status_code = 503


class MissingIndexError(MindSieveError):
    """The document store lacks a composite index for an ordered query.

    Not a failure: callers switch to the in-memory path and flag degraded mode.
    """

    code = "missing_index"
    status_code = 500


class DocumentExistsError(MindSieveError):
    """A create operation hit an existing document."""

    code = "already_exists"
    status_code = 409
