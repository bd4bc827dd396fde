"""Shared fakes: nothing here talks to a real cluster or Redis."""
from __future__ import annotations

import inspect
from typing import Any, Callable, Dict, List, Optional

import pytest
from elastic_transport import ApiResponseMeta, HttpHeaders, NodeConfig
from elasticsearch import ApiError

from catalog_search.aggregations import AggregationEngine
from catalog_search.cache import InMemoryCache
from catalog_search.catalog import CatalogEntry, InMemoryCatalogStore
from catalog_search.config import Settings
from catalog_search.connection import ConnectionState, ConnectionStatus
from catalog_search.search_service import SearchOrchestrator


def api_error(status: int, error_type: str, reason: str = "boom") -> ApiError:
    meta = ApiResponseMeta(
        status=status,
        http_version="1.1",
        headers=HttpHeaders(),
        duration=0.0,
        node=NodeConfig("http", "localhost", 9200),
    )
    body = {
        "error": {"type": error_type, "reason": reason, "root_cause": [{"type": error_type, "reason": reason}]},
        "status": status,
    }
    return ApiError(message=error_type, meta=meta, body=body)


def search_response(
    hits: Optional[List[Dict[str, Any]]] = None,
    *,
    total: Optional[int] = None,
    aggregations: Optional[Dict[str, Any]] = None,
    took: int = 3,
    max_score: Optional[float] = None,
) -> Dict[str, Any]:
    hits = hits or []
    response: Dict[str, Any] = {
        "took": took,
        "timed_out": False,
        "hits": {
            "total": {"value": len(hits) if total is None else total, "relation": "eq"},
            "max_score": max_score if max_score is not None else (max((h.get("_score") or 0 for h in hits), default=None)),
            "hits": hits,
        },
    }
    if aggregations is not None:
        response["aggregations"] = aggregations
    return response


def product_hit(product_id: str, title: str, score: float = 1.0, **source: Any) -> Dict[str, Any]:
    return {"_id": product_id, "_score": score, "_source": {"id": product_id, "title": title, **source}}


class FakeCluster:
    def __init__(self, es: "FakeElasticsearch") -> None:
        self._es = es

    def health(self, **kwargs: Any) -> Dict[str, Any]:
        return self._es.respond("cluster.health", kwargs)


class FakeElasticsearch:
    """Stands in for the synchronous client.

    ``responses`` maps a method name to a dict, an exception, a list consumed
    one item per call, or a callable receiving the keyword arguments.
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None) -> None:
        self.responses: Dict[str, Any] = {"ping": True, "cluster.health": {"status": "green"}}
        self.responses.update(responses or {})
        self.calls: List[tuple] = []
        self.cluster = FakeCluster(self)
        self.closed = False

    def respond(self, method: str, kwargs: Dict[str, Any]) -> Any:
        self.calls.append((method, kwargs))
        result = self.responses.get(method, {})
        if isinstance(result, list):
            result = result.pop(0) if len(result) > 1 else result[0]
        if callable(result) and not isinstance(result, type):
            result = result(**kwargs)
        if isinstance(result, BaseException):
            raise result
        return result

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def options(self, **kwargs: Any) -> "FakeElasticsearch":
        return self

    def ping(self) -> Any:
        return self.respond("ping", {})

    def search(self, **kwargs: Any) -> Any:
        return self.respond("search", kwargs)

    def mget(self, **kwargs: Any) -> Any:
        return self.respond("mget", kwargs)

    def explain(self, **kwargs: Any) -> Any:
        return self.respond("explain", kwargs)

    def index(self, **kwargs: Any) -> Any:
        return self.respond("index", kwargs)

    def update(self, **kwargs: Any) -> Any:
        return self.respond("update", kwargs)

    def close(self) -> None:
        self.closed = True


class FakeConnection:
    """Connection manager double: records ``execute`` calls and delegates to ``handler``."""

    def __init__(self, handler: Optional[Callable[[str, Dict[str, Any]], Any]] = None) -> None:
        self.calls: List[tuple] = []
        self.handler = handler or (lambda operation, params: {})
        self.state = ConnectionState(status=ConnectionStatus.CONNECTED, cluster_status="green", node="fake")

    async def execute(
        self,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        attempts: Optional[int] = None,
        mark_unavailable: bool = True,
    ) -> Any:
        params = params or {}
        self.calls.append((operation, params))
        result = self.handler(operation, params)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseException):
            raise result
        return result

    def bodies(self, operation: str = "search") -> List[Dict[str, Any]]:
        return [params.get("body") for name, params in self.calls if name == operation]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class RecordingEmitter:
    def __init__(self) -> None:
        self.events = []

    def emit(self, event) -> None:
        self.events.append(event)


@pytest.fixture
def config() -> Settings:
    return Settings(
        es_host="http://es.test:9200",
        max_retries=3,
        retry_initial_delay=1.0,
        retry_max_delay=10.0,
        retry_backoff_factor=2.0,
        cache_enabled=True,
        analytics_enabled=True,
        search_timeout_seconds=5.0,
        max_result_window=10000,
    )


@pytest.fixture
def catalog() -> InMemoryCatalogStore:
    return InMemoryCatalogStore(
        categories=[
            CatalogEntry(id="c1", name="Electronics", slug="electronics", path="electronics", level=0),
            CatalogEntry(id="c2", name="Laptops", slug="laptops", parent_id="c1", path="electronics/laptops", level=1),
        ],
        brands=[
            CatalogEntry(id="b1", name="Acme", slug="acme", logo="acme.png"),
            CatalogEntry(id="b2", name="Globex", slug="globex"),
        ],
    )


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def make_service(config, catalog, cache, emitter):
    def factory(connection, **overrides) -> SearchOrchestrator:
        return SearchOrchestrator(
            connection,
            overrides.pop("aggregations", AggregationEngine(catalog)),
            cache=overrides.pop("cache", cache),
            analytics=overrides.pop("analytics", emitter),
            config=overrides.pop("config", config),
        )

    return factory
