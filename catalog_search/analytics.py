"""Search analytics: event model, Elasticsearch sink and a fire-and-forget emitter."""
from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol

from .config import Settings, settings as default_settings
from .errors import AnalyticsFailure, SearchError

if TYPE_CHECKING:
    from .connection import ConnectionManager

logger = logging.getLogger(__name__)

POPULAR_QUERY_SCRIPT = (
    "ctx._source.frequency += 1; "
    "ctx._source.last_searched = params.now; "
    "ctx._source.result_count = params.result_count"
)


@dataclass
class AnalyticsEvent:
    query_text: Optional[str]
    results_count: int
    response_time: float
    filters_applied: List[str] = field(default_factory=list)
    sort: str = "relevance"
    page: int = 1
    limit: int = 20
    from_cache: bool = False
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)


class AnalyticsSink(Protocol):
    async def record(self, event: AnalyticsEvent) -> None: ...


def popular_query_id(text: str) -> str:
    return hashlib.sha1(text.strip().lower().encode("utf-8")).hexdigest()


class ElasticsearchAnalyticsSink:
    """Writes one event document and bumps the popular-query counter."""

    def __init__(self, connection: "ConnectionManager", config: Settings = default_settings) -> None:
        self._connection = connection
        self._settings = config

    async def record(self, event: AnalyticsEvent) -> None:
        try:
            await self._connection.execute(
                "index",
                {"index": self._settings.analytics_index, "document": event.to_document()},
                attempts=1,
                mark_unavailable=False,
            )
            if event.query_text and not event.from_cache:
                await self._connection.execute(
                    "update",
                    {
                        "index": self._settings.search_queries_index,
                        "id": popular_query_id(event.query_text),
                        "script": {
                            "source": POPULAR_QUERY_SCRIPT,
                            "lang": "painless",
                            "params": {"now": event.timestamp, "result_count": event.results_count},
                        },
                        "upsert": {
                            "query": event.query_text.strip().lower(),
                            "frequency": 1,
                            "result_count": event.results_count,
                            "last_searched": event.timestamp,
                        },
                    },
                    attempts=1,
                    mark_unavailable=False,
                )
        except SearchError as exc:
            raise AnalyticsFailure(f"Failed to record search analytics: {exc.reason}", caused_by=exc.to_dict()) from exc


class AnalyticsEmitter:
    """Queues events and drains them on one background task.

    ``emit`` never blocks the caller and never raises: a full queue drops the
    event and sink failures are only logged.
    """

    def __init__(self, sink: AnalyticsSink, config: Settings = default_settings) -> None:
        self._sink = sink
        self._enabled = config.analytics_enabled
        self._queue: asyncio.Queue[AnalyticsEvent] = asyncio.Queue(maxsize=config.analytics_queue_size)
        self._worker: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        if self._enabled and self._worker is None:
            self._worker = asyncio.create_task(self._drain())
            logger.info("Analytics emitter started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        await self.flush()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Analytics emitter stopped")

    def emit(self, event: AnalyticsEvent) -> None:
        if not self._enabled:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Analytics queue full, dropping event q=%r", event.query_text)

    async def flush(self) -> None:
        await self._queue.join()

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._sink.record(event)
            except AnalyticsFailure as exc:
                logger.warning("%s", exc.reason)
            except Exception:
                logger.exception("Unexpected analytics failure")
            finally:
                self._queue.task_done()
