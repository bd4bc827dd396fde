"""Lifecycle, health and retry policy for the link to Elasticsearch.

``ConnectionManager`` is the only component that retries. It owns a single
``ConnectionState`` snapshot that is replaced wholesale on every transition,
so readers never observe a half-updated state:

    disconnected -> connecting -> connected
    connected    -> degraded      (cluster yellow/red)
    any          -> disconnected  (transport failure: the node is unreachable)

Per-request API errors never change the state; the health poller owns
recovery.

Blocking client calls run through ``asyncio.to_thread``; backoff and health
polling use ``asyncio.sleep`` so they never block other requests.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from elasticsearch import ApiError, ConnectionTimeout, Elasticsearch, TransportError
from elasticsearch import ConnectionError as ESConnectionError

from .config import Settings, settings as default_settings
from .errors import (
    BackendConnectionError,
    BackendQueryError,
    BackendStartupError,
    SearchError,
)

logger = logging.getLogger(__name__)

# Error types that indicate a defect in the query itself; retrying cannot help.
QUERY_ERROR_TYPES = {
    "parsing_exception",
    "x_content_parse_exception",
    "search_phase_execution_exception",
    "query_shard_exception",
    "illegal_argument_exception",
    "mapper_parsing_exception",
    "index_not_found_exception",
}
RETRYABLE_ERROR_TYPES = {"timeout_exception", "connection_exception", "connect_timeout", "request_timeout"}
RETRYABLE_STATUSES = {408, 504}


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


CLUSTER_HEALTH = {
    "green": HealthStatus.HEALTHY,
    "yellow": HealthStatus.DEGRADED,
    "red": HealthStatus.UNHEALTHY,
}


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    cluster_status: Optional[str] = None
    last_health_check: Optional[datetime] = None
    node: str = ""

    @property
    def health(self) -> HealthStatus:
        if self.status in (ConnectionStatus.DISCONNECTED, ConnectionStatus.CONNECTING):
            return HealthStatus.UNHEALTHY
        if self.cluster_status is None:
            return HealthStatus.HEALTHY
        return CLUSTER_HEALTH.get(self.cluster_status, HealthStatus.UNHEALTHY)

    @property
    def accepts_queries(self) -> bool:
        # Degraded (yellow) clusters still serve best-effort; red ones fail fast.
        return self.health is not HealthStatus.UNHEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "health": self.health.value,
            "cluster_status": self.cluster_status,
            "last_health_check": self.last_health_check.isoformat() if self.last_health_check else None,
            "node": self.node,
        }


def _error_details(exc: ApiError) -> Dict[str, Any]:
    body = exc.body
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {}


def _error_type(exc: ApiError) -> str:
    return str(_error_details(exc).get("type") or exc.message or "unknown_error")


def is_retryable(exc: BaseException) -> bool:
    """Only timeouts and dropped/refused connections are worth another attempt."""
    if isinstance(exc, (ConnectionTimeout, ESConnectionError, BackendConnectionError)):
        return True
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, ApiError):
        error_type = _error_type(exc)
        if error_type in QUERY_ERROR_TYPES:
            return False
        return exc.status_code in RETRYABLE_STATUSES or error_type in RETRYABLE_ERROR_TYPES
    return False


def is_transport_failure(exc: BaseException) -> bool:
    """True when the node itself could not be reached, as opposed to an API error response."""
    if isinstance(exc, ApiError):
        return False
    return isinstance(exc, (ConnectionTimeout, ESConnectionError, asyncio.TimeoutError, TimeoutError, ConnectionError))


def wrap_error(exc: BaseException) -> SearchError:
    """Convert client/transport exceptions into the search error taxonomy."""
    if isinstance(exc, SearchError):
        return exc
    if isinstance(exc, ApiError):
        details = _error_details(exc)
        error_type = _error_type(exc)
        reason = str(details.get("reason") or exc.message or error_type)
        kwargs = {
            "error_type": error_type,
            "status": exc.status_code,
            "caused_by": details.get("caused_by"),
            "root_cause": details.get("root_cause"),
        }
        if error_type in QUERY_ERROR_TYPES or exc.status_code in (400, 404):
            return BackendQueryError(reason, **kwargs)
        if is_retryable(exc) or exc.status_code >= 500:
            return BackendConnectionError(reason, **kwargs)
        return SearchError(reason, **kwargs)
    if isinstance(exc, (ConnectionTimeout, asyncio.TimeoutError, TimeoutError)):
        return BackendConnectionError(str(exc) or "request timed out", error_type="timeout_exception", status=504)
    if isinstance(exc, (ESConnectionError, ConnectionError, TransportError)):
        return BackendConnectionError(str(exc) or "connection failed", error_type="connection_exception")
    return SearchError(str(exc) or exc.__class__.__name__, error_type="unknown_error")


class ConnectionManager:
    def __init__(
        self,
        client: Elasticsearch,
        config: Settings = default_settings,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._settings = config
        self._sleep = sleep
        self._state = ConnectionState(node=config.es_host)
        self._monitor_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _set_state(self, **changes: Any) -> None:
        previous = self._state
        self._state = replace(previous, **changes)
        if previous.status is not self._state.status:
            logger.info("Elasticsearch connection %s -> %s", previous.status.value, self._state.status.value)

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt, capped at the ceiling."""
        delay = self._settings.retry_initial_delay * self._settings.retry_backoff_factor ** (attempt - 1)
        return min(delay, self._settings.retry_max_delay)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, monitor: bool = True) -> ConnectionState:
        """Ping with capped exponential backoff, then start health polling."""
        self._set_state(status=ConnectionStatus.CONNECTING)
        attempts = self._settings.max_retries
        for attempt in range(1, attempts + 1):
            try:
                await self._ping()
                break
            except Exception as exc:
                if not is_retryable(exc):
                    self._set_state(status=ConnectionStatus.DISCONNECTED)
                    raise BackendStartupError(f"Elasticsearch connection failed: {exc}") from exc
                logger.warning("Elasticsearch connection attempt %s/%s failed: %s", attempt, attempts, exc)
                if attempt < attempts:
                    await self._sleep(self.backoff_delay(attempt))
        else:
            self._set_state(status=ConnectionStatus.DISCONNECTED)
            logger.error("Failed to connect to Elasticsearch after %s attempts", attempts)
            raise BackendStartupError(f"Elasticsearch connection failed after {attempts} attempts")

        self._set_state(status=ConnectionStatus.CONNECTED)
        await self.check_health()
        if monitor:
            self._monitor_task = asyncio.create_task(self._monitor())
            logger.info("Health monitoring started with %.1fs interval", self._settings.health_check_interval)
        return self._state

    async def close(self) -> None:
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
            logger.info("Health monitoring stopped")
        try:
            await asyncio.to_thread(self._client.close)
        except Exception as exc:  # pragma: no cover - best effort on shutdown
            logger.error("Error closing Elasticsearch connection: %s", exc)
        self._set_state(status=ConnectionStatus.DISCONNECTED)

    async def _ping(self) -> None:
        client = self._client.options(request_timeout=self._settings.ping_timeout)
        ok = await asyncio.to_thread(client.ping)
        if not ok:
            raise BackendConnectionError("Elasticsearch ping failed")

    async def _monitor(self) -> None:
        while True:
            await asyncio.sleep(self._settings.health_check_interval)
            await self.poll_once()

    async def poll_once(self) -> ConnectionState:
        """One health-poll tick: reconnect when disconnected, otherwise refresh health."""
        if self._state.status is ConnectionStatus.DISCONNECTED:
            self._set_state(status=ConnectionStatus.CONNECTING)
            try:
                await self._ping()
            except Exception as exc:
                logger.warning("Reconnect attempt failed: %s", exc)
                self._set_state(status=ConnectionStatus.DISCONNECTED)
                return self._state
            self._set_state(status=ConnectionStatus.CONNECTED)
        await self.check_health()
        return self._state

    # ------------------------------------------------------------------
    # health
    # ------------------------------------------------------------------

    async def cluster_health(self) -> Dict[str, Any]:
        timeout = f"{int(self._settings.health_check_interval * 1000)}ms"
        return await self._call_once("cluster.health", {"timeout": timeout})

    async def index_health(self, index: str) -> Dict[str, Any]:
        response = await self._call_once("cluster.health", {"index": index, "level": "indices"})
        data = (response.get("indices") or {}).get(index)
        if not data:
            raise BackendQueryError(f"Index {index} not found in health response", error_type="index_not_found_exception", status=404)
        return {"index": index, **data}

    async def check_health(self) -> Dict[str, Any]:
        try:
            cluster = await self.cluster_health()
        except SearchError as exc:
            logger.warning("Health check failed: %s", exc.reason)
            self._set_state(status=ConnectionStatus.DISCONNECTED, cluster_status=None)
            return {"status": HealthStatus.UNHEALTHY.value, "cluster": None, **self.status()}

        cluster_status = cluster.get("status")
        new_status = ConnectionStatus.CONNECTED if cluster_status == "green" else ConnectionStatus.DEGRADED
        self._set_state(
            status=new_status,
            cluster_status=cluster_status,
            last_health_check=datetime.now(timezone.utc),
        )
        return {"status": self._state.health.value, "cluster": cluster, **self.status()}

    def status(self) -> Dict[str, Any]:
        state = self._state
        return {
            "connection": state.accepts_queries,
            "state": state.status.value,
            "last_check": state.last_health_check.isoformat() if state.last_health_check else None,
            "node": state.node,
        }

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        attempts: Optional[int] = None,
        mark_unavailable: bool = True,
    ) -> Any:
        """Run a client method (dotted path, e.g. ``"search"`` or ``"indices.stats"``).

        Retryable failures are retried with the startup backoff policy; all
        terminal failures are raised as :class:`SearchError` subclasses. An
        exhausted transport failure marks the backend disconnected unless
        ``mark_unavailable`` is false (best-effort side requests).
        """
        state = self._state
        if not state.accepts_queries:
            raise BackendConnectionError(
                f"Search backend unavailable (state={state.status.value}, cluster={state.cluster_status})",
                error_type="backend_unavailable",
            )
        attempts = attempts or self._settings.max_retries
        for attempt in range(1, attempts + 1):
            try:
                return await self._call(operation, params)
            except Exception as exc:
                if attempt < attempts and is_retryable(exc):
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        "Query attempt %s/%s for %s failed, retrying in %.2fs: %s",
                        attempt,
                        attempts,
                        operation,
                        delay,
                        exc,
                    )
                    await self._sleep(delay)
                    continue
                error = wrap_error(exc)
                logger.error(
                    "%s failed after %s attempt(s): type=%s status=%s reason=%s",
                    operation,
                    attempt,
                    error.error_type,
                    error.status,
                    error.reason,
                )
                if mark_unavailable and is_transport_failure(exc):
                    self._set_state(status=ConnectionStatus.DISCONNECTED)
                raise error from exc
        raise BackendConnectionError(f"{operation} was not attempted")  # pragma: no cover

    async def _call_once(self, operation: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            return await self._call(operation, params)
        except Exception as exc:
            raise wrap_error(exc) from exc

    async def _call(self, operation: str, params: Optional[Dict[str, Any]]) -> Any:
        target: Any = self._client
        for part in operation.split("."):
            target = getattr(target, part, None)
            if target is None:
                raise BackendQueryError(f"Invalid Elasticsearch method: {operation}", error_type="invalid_operation")
        result = await asyncio.to_thread(target, **(params or {}))
        return getattr(result, "body", result)
