"""FastAPI application wiring the search service."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, TypeVar

import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from .aggregations import AggregationEngine
from .analytics import AnalyticsEmitter, ElasticsearchAnalyticsSink
from .analyzer import analyze_query
from .cache import get_cache
from .catalog import ElasticsearchCatalogStore
from .config import settings
from .connection import ConnectionManager
from .errors import SearchError, SearchValidationError
from .es_client import get_client
from .models import (
    AdvancedSearchResponse,
    AutocompleteResponse,
    QueryAnalysis,
    QueryType,
    SearchMode,
    SearchRequest,
    SearchResponse,
    SortOption,
    StrategyComparison,
    SuggestRequest,
    SuggestResponse,
    ValidationReport,
)
from .search_service import SearchOrchestrator
from .suggestions import SuggestionEngine

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL = logging.getLevelName(settings.log_level.upper())

# ``force=True`` replaces uvicorn's default handlers so every module logs the same way.
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, force=True)
for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "elastic_transport"):
    logging.getLogger(name).setLevel(LOG_LEVEL)

logger = logging.getLogger(__name__)
logger.info("Logging configured at %s", settings.log_level.upper())

# Non-standard "client closed request" status used by nginx.
CLIENT_CLOSED_REQUEST = 499
DISCONNECT_POLL_SECONDS = 0.25

T = TypeVar("T")

app = FastAPI(title="Catalog Search Service")


@app.on_event("startup")
async def startup_event() -> None:
    connection = ConnectionManager(get_client())
    await connection.start()
    cache = await asyncio.to_thread(get_cache) if settings.cache_enabled else None
    emitter = AnalyticsEmitter(ElasticsearchAnalyticsSink(connection))
    emitter.start()

    app.state.connection = connection
    app.state.analytics = emitter
    app.state.search_service = SearchOrchestrator(
        connection,
        AggregationEngine(ElasticsearchCatalogStore(connection)),
        cache=cache,
        analytics=emitter,
    )
    app.state.suggestions = SuggestionEngine(connection, cache)
    logger.info("Search service ready (index=%s)", settings.products_index)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    emitter: Optional[AnalyticsEmitter] = getattr(app.state, "analytics", None)
    if emitter is not None:
        await emitter.stop()
    connection: Optional[ConnectionManager] = getattr(app.state, "connection", None)
    if connection is not None:
        await connection.close()


def get_search_service(request: Request) -> SearchOrchestrator:
    return request.app.state.search_service


def get_suggestion_engine(request: Request) -> SuggestionEngine:
    return request.app.state.suggestions


def get_connection(request: Request) -> ConnectionManager:
    return request.app.state.connection


@app.exception_handler(SearchError)
async def search_error_handler(request: Request, exc: SearchError) -> JSONResponse:
    payload: Dict[str, Any] = {"type": exc.error_type, "reason": exc.reason, "status": exc.http_status}
    if isinstance(exc, SearchValidationError):
        payload["errors"] = exc.errors
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.reason, exc.error_type)
    return JSONResponse(status_code=exc.http_status, content={"error": payload})


def _build(model, **params):
    """Build a model from query parameters; invalid input becomes FastAPI's 422."""
    try:
        return model(**{k: v for k, v in params.items() if v is not None})
    except ValidationError as exc:
        raise RequestValidationError(exc.errors(include_url=False)) from exc


def search_params(
    q: Optional[str] = Query(None, description="Free text query"),
    query_type: Optional[QueryType] = None,
    search_mode: Optional[SearchMode] = None,
    fuzzy: Optional[bool] = None,
    proximity: Optional[int] = None,
    minimum_should_match: Optional[int] = None,
    category: Optional[str] = Query(None, description="Comma separated category ids"),
    brand: Optional[str] = Query(None, description="Comma separated brand ids"),
    tags: Optional[str] = Query(None, description="Comma separated tags"),
    price_min: Optional[float] = None,
    price_max: Optional[float] = None,
    rating_min: Optional[float] = None,
    in_stock: Optional[bool] = None,
    sort: SortOption = SortOption.RELEVANCE,
    page: int = 1,
    limit: int = settings.default_page_size,
    facets: bool = False,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> SearchRequest:
    return _build(SearchRequest, **locals())


async def run_until_disconnect(http_request: Request, operation: Awaitable[T]) -> T | Response:
    """Await ``operation``, cancelling it when the client goes away."""
    task = asyncio.ensure_future(operation)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await http_request.is_disconnected():
                task.cancel()
                logger.info("Client disconnected, cancelled %s", http_request.url.path)
                return Response(status_code=CLIENT_CLOSED_REQUEST)
    finally:
        if not task.done():
            task.cancel()


@app.get("/health")
async def health(connection: ConnectionManager = Depends(get_connection)) -> dict:
    report = await connection.check_health()
    return {**report, "index": settings.products_index}


@app.get("/connection/status")
async def connection_status(connection: ConnectionManager = Depends(get_connection)) -> dict:
    state = connection.state
    return {"connection": state.accepts_queries, **state.to_dict()}


@app.get("/search", response_model=SearchResponse)
async def search_get(
    http_request: Request,
    request: SearchRequest = Depends(search_params),
    service: SearchOrchestrator = Depends(get_search_service),
):
    return await run_until_disconnect(http_request, service.search(request))


@app.post("/search", response_model=SearchResponse)
async def search_post(
    request: SearchRequest,
    http_request: Request,
    service: SearchOrchestrator = Depends(get_search_service),
):
    return await run_until_disconnect(http_request, service.search(request))


@app.post("/search/facets", response_model=SearchResponse)
async def search_facets(
    request: SearchRequest,
    http_request: Request,
    service: SearchOrchestrator = Depends(get_search_service),
):
    return await run_until_disconnect(http_request, service.facets(request))


@app.post("/search/advanced", response_model=AdvancedSearchResponse)
async def search_advanced(
    request: SearchRequest,
    http_request: Request,
    service: SearchOrchestrator = Depends(get_search_service),
):
    return await run_until_disconnect(http_request, service.advanced(request))


@app.post("/query/compare", response_model=StrategyComparison)
async def query_compare(request: SearchRequest, service: SearchOrchestrator = Depends(get_search_service)):
    return await service.compare(request)


@app.get("/query/analyze", response_model=QueryAnalysis)
async def query_analyze(q: str = Query(..., min_length=1, description="Query to analyze")) -> QueryAnalysis:
    return analyze_query(q)


@app.post("/query/validate", response_model=ValidationReport)
async def query_validate(request: SearchRequest, service: SearchOrchestrator = Depends(get_search_service)):
    return service.validate(request)


@app.post("/query/explain/{product_id}")
async def query_explain(
    product_id: str,
    request: SearchRequest,
    service: SearchOrchestrator = Depends(get_search_service),
) -> dict:
    return await service.explain(request, product_id)


@app.get("/suggest", response_model=SuggestResponse)
async def suggest(
    q: str = Query(..., description="Prefix to complete"),
    types: Optional[str] = Query(None, description="Comma separated: products,categories,brands,queries"),
    limit: int = 5,
    fuzzy: bool = True,
    spell_check: bool = False,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    engine: SuggestionEngine = Depends(get_suggestion_engine),
):
    kinds = [part.strip() for part in types.split(",") if part.strip()] if types else None
    request = _build(
        SuggestRequest,
        q=q,
        types=kinds,
        limit=limit,
        fuzzy=fuzzy,
        spell_check=spell_check,
        user_id=user_id,
        session_id=session_id,
    )
    return await engine.get_suggestions(request)


@app.get("/autocomplete", response_model=AutocompleteResponse)
async def autocomplete(
    q: str = Query(..., min_length=1, max_length=200),
    size: int = Query(10, ge=1, le=20),
    category: Optional[str] = None,
    engine: SuggestionEngine = Depends(get_suggestion_engine),
):
    return await engine.autocomplete(q, size, category)


def serve() -> None:
    uvicorn.run("catalog_search.main:app", host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())
