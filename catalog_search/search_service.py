"""Search orchestration: validation, caching, execution, facets and analytics."""
from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from time import perf_counter
from typing import TYPE_CHECKING, Any, Dict, Optional

from .aggregations import AggregationEngine, resolve_options
from .analytics import AnalyticsEmitter, AnalyticsEvent
from .analyzer import (
    analyze_query,
    compare_strategies,
    explain,
    optimize_request,
    performance_hints,
    validate_and_optimize,
)
from .cache import CacheBackend, cache_store, cached_model, make_cache_key
from .config import Settings, settings as default_settings
from .errors import SearchTimeoutError, SearchValidationError
from .models import (
    AdvancedSearchResponse,
    HitsTotal,
    Pagination,
    ProductHit,
    QueryInfo,
    SearchHits,
    SearchRequest,
    SearchResponse,
    StrategyComparison,
    ValidationReport,
)
from .query_builder import QueryPlan, applied_filter_names, build_query_plan

if TYPE_CHECKING:
    from .connection import ConnectionManager

logger = logging.getLogger(__name__)

FACETS_VARIANT = "facets"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_hits(raw: Dict[str, Any]) -> SearchHits:
    hits = raw.get("hits") or {}
    total = hits.get("total")
    if isinstance(total, dict):
        hits_total = HitsTotal(value=int(total.get("value") or 0), relation=total.get("relation") or "eq")
    else:
        hits_total = HitsTotal(value=int(total or 0))
    products = []
    for hit in hits.get("hits", []):
        source = dict(hit.get("_source") or {})
        source.setdefault("id", hit.get("_id"))
        source.update(score=hit.get("_score"), highlight=hit.get("highlight"))
        products.append(ProductHit.model_validate(source))
    return SearchHits(total=hits_total, max_score=hits.get("max_score"), products=products)


def build_pagination(plan: QueryPlan, total: int, max_window: int) -> Pagination:
    per_page = plan.limit
    if per_page > 0:
        total_pages = min(math.ceil(total / per_page), math.ceil(max_window / per_page))
    else:
        total_pages = 0
    has_next = plan.page < total_pages
    has_prev = plan.page > 1
    return Pagination(
        current_page=plan.page,
        per_page=per_page,
        offset=plan.offset,
        total_pages=total_pages,
        total_results=total,
        has_next=has_next,
        has_prev=has_prev,
        next_page=plan.page + 1 if has_next else None,
        prev_page=plan.page - 1 if has_prev else None,
    )


class SearchOrchestrator:
    def __init__(
        self,
        connection: "ConnectionManager",
        aggregations: AggregationEngine,
        cache: Optional[CacheBackend] = None,
        analytics: Optional[AnalyticsEmitter] = None,
        config: Settings = default_settings,
    ) -> None:
        self._connection = connection
        self._aggregations = aggregations
        self._cache = cache if config.cache_enabled else None
        self._analytics = analytics
        self._settings = config

    @property
    def connection(self) -> "ConnectionManager":
        return self._connection

    async def search(self, request: SearchRequest) -> SearchResponse:
        return await self._with_deadline(self._run(request), request)

    async def facets(self, request: SearchRequest) -> SearchResponse:
        """Facet counts only: no hits are fetched."""
        request = request.model_copy(update={"facets": True})
        return await self._with_deadline(self._run(request, size=0, variant=FACETS_VARIANT), request)

    async def _with_deadline(self, operation, request: SearchRequest) -> SearchResponse:
        deadline = self._settings.search_timeout_seconds
        try:
            return await asyncio.wait_for(operation, timeout=deadline)
        except asyncio.TimeoutError as exc:
            logger.warning("Search deadline of %.2fs exceeded q=%r", deadline, request.q)
            raise SearchTimeoutError(f"Search exceeded the {deadline:g}s deadline") from exc

    async def _run(self, request: SearchRequest, *, size: Optional[int] = None, variant: Optional[str] = None) -> SearchResponse:
        t0 = perf_counter()
        report = validate_and_optimize(request)
        if not report.is_valid:
            raise SearchValidationError(report.errors)
        for warning in report.warnings:
            logger.debug("search warning q=%r: %s", request.q, warning)
        request = report.optimized_request

        cache_key = make_cache_key(request, variant=variant)
        response = await cached_model(self._cache, cache_key, SearchResponse)
        if response is not None:
            response.from_cache = True
            response.eta_ms = (perf_counter() - t0) * 1000
            logger.info("timing: total=%.2fms cache_hit=1 q=%r", response.eta_ms, request.q)
            self._emit(request, response)
            return response

        t1 = perf_counter()
        options = resolve_options(request)
        aggs = self._aggregations.build(request, options) if request.facets else None
        plan = build_query_plan(request, aggs, size=size, config=self._settings)
        body = plan.request_body()
        body["timeout"] = f"{int(self._settings.search_timeout_seconds * 1000)}ms"
        t2 = perf_counter()
        raw = await self._connection.execute("search", {"index": self._settings.products_index, "body": body})
        t3 = perf_counter()

        facets = None
        if request.facets:
            facets = await self._aggregations.transform(raw.get("aggregations"), request, options)
        hits = parse_hits(raw)
        t4 = perf_counter()

        response = SearchResponse(
            hits=hits,
            facets=facets,
            pagination=build_pagination(plan, hits.total.value, self._settings.max_result_window),
            query_info=QueryInfo(
                query=request.q,
                query_type=plan.query_type,
                search_mode=plan.search_mode,
                filters_applied=applied_filter_names(request),
                sort_by=request.sort,
            ),
            took_ms=float(raw.get("took") or 0),
            eta_ms=(t4 - t0) * 1000,
            timestamp=_now(),
        )

        if raw.get("timed_out"):
            logger.warning("Backend returned partial results q=%r; not caching", request.q)
        else:
            await cache_store(
                self._cache,
                cache_key,
                response.model_dump(mode="json", by_alias=True),
                self._settings.cache_ttl_seconds,
            )
        self._emit(request, response)

        logger.info(
            "timing: total=%.2fms prepare=%.2fms build=%.2fms es=%.2fms post=%.2fms q=%r type=%s mode=%s hits=%s",
            response.eta_ms,
            (t1 - t0) * 1000,
            (t2 - t1) * 1000,
            (t3 - t2) * 1000,
            (t4 - t3) * 1000,
            request.q,
            plan.query_type.value,
            plan.search_mode.value,
            hits.total.value,
        )
        return response

    def _emit(self, request: SearchRequest, response: SearchResponse) -> None:
        if self._analytics is None:
            return
        self._analytics.emit(
            AnalyticsEvent(
                query_text=request.q,
                results_count=response.hits.total.value,
                response_time=response.eta_ms,
                filters_applied=applied_filter_names(request),
                sort=request.sort.value,
                page=request.page,
                limit=request.limit,
                from_cache=response.from_cache,
                user_id=request.user_id,
                session_id=request.session_id,
            )
        )

    async def advanced(self, request: SearchRequest) -> AdvancedSearchResponse:
        """Fill strategy and mode from query analysis, then run the search."""
        analysis = analyze_query(request.q)
        optimized = optimize_request(request, analysis)
        results = await self.search(optimized)
        plan = build_query_plan(optimized, config=self._settings)
        return AdvancedSearchResponse(
            analysis=analysis,
            query_type=plan.query_type,
            search_mode=plan.search_mode,
            explanation=explain(analysis, optimized),
            performance_hints=performance_hints(analysis, optimized),
            query=plan.query,
            results=results,
        )

    async def compare(self, request: SearchRequest) -> StrategyComparison:
        report = validate_and_optimize(request)
        if not report.is_valid:
            raise SearchValidationError(report.errors)
        return await compare_strategies(self._connection, report.optimized_request, self._settings)

    async def explain(self, request: SearchRequest, product_id: str) -> Dict[str, Any]:
        """Backend scoring explanation of ``product_id`` against the request's query."""
        plan = build_query_plan(request, config=self._settings)
        return await self._connection.execute(
            "explain",
            {"index": self._settings.products_index, "id": product_id, "body": {"query": plan.query}},
        )

    def validate(self, request: SearchRequest) -> ValidationReport:
        return validate_and_optimize(request)
