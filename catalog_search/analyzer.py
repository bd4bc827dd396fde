"""Query analysis, validation and strategy comparison.

Everything here except :func:`compare_strategies` is pure and never raises;
``compare_strategies`` records backend failures per strategy instead of
propagating them.
"""
from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Dict, List, Tuple

from .config import Settings, settings as default_settings
from .errors import SearchError
from .models import (
    QueryAnalysis,
    QueryType,
    SearchMode,
    SearchRequest,
    StrategyComparison,
    StrategyResult,
    ValidationReport,
)
from .query_builder import build_query_plan

if TYPE_CHECKING:
    from .connection import ConnectionManager

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 1000
PROXIMITY_RANGE = (0, 10)
MSM_RANGE = (10, 100)
LARGE_PAGE = 50
COMPARE_SIZE = 5
COMPARE_TIMEOUT = "5s"
DEFAULT_STRATEGY = "Standard Multi-Match"

STRATEGIES: List[Tuple[str, QueryType, SearchMode]] = [
    ("Standard Multi-Match", QueryType.MULTI_MATCH, SearchMode.STANDARD),
    ("Strict Multi-Match", QueryType.MULTI_MATCH, SearchMode.STRICT),
    ("Relaxed Multi-Match", QueryType.MULTI_MATCH, SearchMode.RELAXED),
    ("Phrase Search", QueryType.PHRASE, SearchMode.STANDARD),
    ("Fuzzy Search", QueryType.FUZZY, SearchMode.STANDARD),
    ("Boolean Search", QueryType.BOOLEAN, SearchMode.STANDARD),
]

_PHRASE_RE = re.compile(r"([\"']).+\1")
_WILDCARD_RE = re.compile(r"[*?]")
_OPERATOR_RE = re.compile(r"\b(AND|OR|NOT)\b")


def _has_boolean_operators(text: str) -> bool:
    if _OPERATOR_RE.search(text):
        return True
    return any(len(token) > 1 and token[0] in "+-" for token in text.split())


def analyze_query(text: str | None) -> QueryAnalysis:
    analysis = QueryAnalysis()
    text = (text or "").strip()
    if not text:
        return analysis

    analysis.is_phrase = bool(_PHRASE_RE.search(text))
    analysis.has_wildcards = bool(_WILDCARD_RE.search(text))
    analysis.has_boolean_operators = _has_boolean_operators(text)
    analysis.term_count = len(text.split())

    if analysis.term_count > 5 or analysis.has_boolean_operators or analysis.has_wildcards:
        analysis.estimated_complexity = "high"
    elif analysis.term_count > 2 or analysis.is_phrase:
        analysis.estimated_complexity = "medium"

    if analysis.has_boolean_operators:
        analysis.recommended_query_type = QueryType.BOOLEAN
    elif analysis.has_wildcards:
        analysis.recommended_query_type = QueryType.WILDCARD
    elif analysis.is_phrase:
        analysis.recommended_query_type = QueryType.PHRASE
    elif analysis.term_count == 1:
        analysis.recommended_query_type = QueryType.PREFIX

    if analysis.estimated_complexity == "high":
        analysis.recommended_search_mode = SearchMode.RELAXED
    elif analysis.is_phrase:
        analysis.recommended_search_mode = SearchMode.STRICT
    return analysis


def optimize_request(request: SearchRequest, analysis: QueryAnalysis | None = None) -> SearchRequest:
    """Fill in strategy and mode from the analysis; explicit values are kept."""
    analysis = analysis or analyze_query(request.q)
    updates: Dict[str, object] = {}
    if request.query_type is None:
        updates["query_type"] = analysis.recommended_query_type
    if request.search_mode is None:
        updates["search_mode"] = analysis.recommended_search_mode
    if request.fuzzy is None and analysis.estimated_complexity == "low":
        updates["fuzzy"] = True
    return request.model_copy(update=updates) if updates else request


def validate_and_optimize(request: SearchRequest) -> ValidationReport:
    errors: List[str] = []
    warnings: List[str] = []
    updates: Dict[str, object] = {}

    if request.q and len(request.q) > MAX_QUERY_LENGTH:
        errors.append(f"Query text too long (max {MAX_QUERY_LENGTH} characters)")
    if request.proximity is not None and not PROXIMITY_RANGE[0] <= request.proximity <= PROXIMITY_RANGE[1]:
        errors.append(f"Proximity must be between {PROXIMITY_RANGE[0]} and {PROXIMITY_RANGE[1]}")
    if request.minimum_should_match is not None and not MSM_RANGE[0] <= request.minimum_should_match <= MSM_RANGE[1]:
        errors.append(f"Minimum should match must be between {MSM_RANGE[0]}% and {MSM_RANGE[1]}%")
    if request.price_min is not None and request.price_max is not None and request.price_min > request.price_max:
        errors.append("price_min must not exceed price_max")

    if request.fuzzy and request.query_type is QueryType.PHRASE:
        warnings.append("Fuzzy matching is not effective with phrase queries")
        updates["fuzzy"] = False
    if request.proximity and request.query_type is not QueryType.PHRASE:
        warnings.append("Proximity setting only applies to phrase queries")
    if not request.q and request.query_type not in (None, QueryType.MULTI_MATCH):
        warnings.append("Empty query with specific query type will return no results")
        updates["query_type"] = QueryType.MULTI_MATCH
    if request.limit > LARGE_PAGE:
        warnings.append("Large result sets may impact performance")

    optimized = request.model_copy(update=updates) if updates else request
    return ValidationReport(is_valid=not errors, errors=errors, warnings=warnings, optimized_request=optimized)


def explain(analysis: QueryAnalysis, request: SearchRequest) -> str:
    parts = [
        f"Query complexity: {analysis.estimated_complexity}",
        f"Query type: {(request.query_type or QueryType.MULTI_MATCH).value}",
        f"Search mode: {(request.search_mode or SearchMode.STANDARD).value}",
    ]
    if analysis.is_phrase:
        parts.append("Detected phrase query - using exact phrase matching")
    if analysis.has_wildcards:
        parts.append("Detected wildcards - using pattern matching")
    if analysis.has_boolean_operators:
        parts.append("Detected boolean operators - using structured boolean logic")
    if request.fuzzy:
        parts.append(f"Fuzzy matching enabled with fuzziness: {request.fuzziness or 'AUTO'}")
    if request.function_score:
        parts.append("Custom relevance scoring enabled")
    return ". ".join(parts)


def performance_hints(analysis: QueryAnalysis, request: SearchRequest) -> List[str]:
    hints = []
    if analysis.estimated_complexity == "high":
        hints.append("Consider breaking down complex queries into simpler terms")
        if request.fuzzy:
            hints.append("Disable fuzzy matching for complex queries to improve performance")
    if request.limit > LARGE_PAGE:
        hints.append("Use pagination for large result sets")
    if analysis.has_wildcards:
        hints.append("Wildcard queries can be slow - consider using prefix or fuzzy matching instead")
    if not request.facets and request.limit < 20:
        hints.append("Enable caching for small result sets to improve response times")
    return hints


def _hit_count(hits: Dict[str, object]) -> int:
    total = hits.get("total")
    if isinstance(total, dict):
        return int(total.get("value") or 0)
    return int(total or 0)


def rank_strategies(results: List[StrategyResult]) -> List[str]:
    """Order by max score desc, backend latency asc, then the fixed strategy order.

    Strategies that failed or matched nothing follow in fixed order.
    """
    order = {name: i for i, (name, _, _) in enumerate(STRATEGIES)}
    productive = [r for r in results if r.error is None and r.hits > 0]
    rest = [r for r in results if r not in productive]
    productive.sort(key=lambda r: (-r.max_score, r.took_ms, order.get(r.name, len(order))))
    rest.sort(key=lambda r: order.get(r.name, len(order)))
    return [r.name for r in productive + rest]


async def compare_strategies(
    connection: "ConnectionManager",
    request: SearchRequest,
    config: Settings = default_settings,
) -> StrategyComparison:
    base = request.model_copy(update={"facets": False, "page": 1, "limit": COMPARE_SIZE})
    results: List[StrategyResult] = []
    for name, query_type, mode in STRATEGIES:
        plan = build_query_plan(base.model_copy(update={"query_type": query_type, "search_mode": mode}), size=COMPARE_SIZE, config=config)
        body = plan.request_body()
        body["_source"] = ["id", "title"]
        body.pop("highlight", None)
        body["timeout"] = COMPARE_TIMEOUT
        try:
            response = await connection.execute("search", {"index": config.products_index, "body": body}, attempts=1)
        except SearchError as exc:
            logger.warning("Strategy %s failed: %s", name, exc.reason)
            results.append(
                StrategyResult(name=name, query_type=query_type, search_mode=mode, took_ms=-1, hits=0, max_score=0, error=exc.reason)
            )
            continue
        hits = response.get("hits") or {}
        results.append(
            StrategyResult(
                name=name,
                query_type=query_type,
                search_mode=mode,
                took_ms=float(response.get("took") or 0),
                hits=_hit_count(hits),
                max_score=float(hits.get("max_score") or 0),
            )
        )

    ranking = rank_strategies(results)
    productive = any(r.error is None and r.hits > 0 for r in results)
    recommended = ranking[0] if productive else DEFAULT_STRATEGY
    logger.info("compare q=%r recommended=%s ranking=%s", request.q, recommended, ranking)
    return StrategyComparison(query=request.q, strategies=results, ranking=ranking, recommended=recommended)
