"""Error taxonomy shared by the search components.

Every error carries the backend-style ``error_type``/``reason``/``status``
triple; ``http_status`` is what the API layer answers with. Only the connection manager
retries; everything else is raised once and translated by the caller.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class SearchError(Exception):
    """Base class for failures surfaced by the search subsystem."""

    http_status: int = 500
    default_type: str = "search_error"

    def __init__(
        self,
        reason: str,
        *,
        error_type: Optional[str] = None,
        status: Optional[int] = None,
        caused_by: Optional[Dict[str, Any]] = None,
        root_cause: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.error_type = error_type or self.default_type
        # Origin status (backend HTTP status when there is one).
        self.status = status if status is not None else self.http_status
        self.caused_by = caused_by
        self.root_cause = root_cause

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.error_type,
            "reason": self.reason,
            "status": self.status,
        }
        if self.caused_by:
            payload["caused_by"] = self.caused_by
        if self.root_cause:
            payload["root_cause"] = self.root_cause
        return payload


class SearchValidationError(SearchError):
    """Request parameters outside their allowed bounds."""

    http_status = 400
    default_type = "validation_error"

    def __init__(self, errors: List[str]) -> None:
        super().__init__("; ".join(errors) or "invalid search request")
        self.errors = list(errors)


class BackendConnectionError(SearchError):
    """Transient network failure that survived every retry (service unavailable)."""

    http_status = 503
    default_type = "connection_exception"


class BackendStartupError(BackendConnectionError):
    """The backend never answered a ping during startup."""

    default_type = "startup_connection_failed"


class BackendQueryError(SearchError):
    """Malformed query DSL or index/mapping mismatch; never retried."""

    http_status = 400
    default_type = "query_error"


class SearchTimeoutError(SearchError):
    """The per-request deadline elapsed before the search finished."""

    http_status = 504
    default_type = "search_timeout"


class CacheUnavailable(SearchError):
    """Cache store could not be reached; callers continue without caching."""

    http_status = 503
    default_type = "cache_unavailable"


class AnalyticsFailure(SearchError):
    """Analytics event could not be written; logged, never propagated."""

    default_type = "analytics_failure"
