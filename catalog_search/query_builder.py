"""Turn a ``SearchRequest`` into an Elasticsearch query body.

Each query strategy is a plain function registered in ``STRATEGY_BUILDERS``;
``build_query_plan`` picks one (explicit request choice first, best-fields
multi-match otherwise), adds the filter clauses, wraps the result in a
function-score envelope and freezes everything into a ``QueryPlan``.

The builder does no I/O and does not raise: out-of-range knobs are clamped and
missing text degrades to ``match_all``.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .config import Settings, settings as default_settings
from .models import QueryType, SearchMode, SearchRequest, SortOption

logger = logging.getLogger(__name__)

SEARCH_FIELDS = {
    "title": "title",
    "brand": "brand.name",
    "keywords": "search_keywords",
    "category": "category.name",
    "description": "description",
}
DEFAULT_BOOSTS = {
    "title": 3.0,
    "brand": 2.0,
    "keywords": 2.0,
    "category": 1.5,
    "description": 1.0,
}
_FIELD_ALIASES = {path: name for name, path in SEARCH_FIELDS.items()}

# (multi_match type, operator, minimum_should_match)
MODE_SETTINGS = {
    SearchMode.STANDARD: ("best_fields", "and", "75%"),
    SearchMode.STRICT: ("most_fields", "and", "100%"),
    SearchMode.RELAXED: ("best_fields", "or", "50%"),
}

DEFAULT_SCORE_FACTORS = {
    "featured": 1.5,
    "popularity": 1.2,
    "rating": 1.1,
    "recency": 1.0,
    "stock": 1.1,
}
MAX_BOOST = 10
MIN_SCORE = 0.1

SOURCE_FIELDS = [
    "id",
    "title",
    "description",
    "sku",
    "slug",
    "price",
    "discount_price",
    "in_stock",
    "stock_quantity",
    "is_active",
    "is_featured",
    "images",
    "tags",
    "category",
    "brand",
    "rating",
    "created_at",
]

HIGHLIGHT = {
    "pre_tags": ["<mark>"],
    "post_tags": ["</mark>"],
    "fields": {
        "title": {"fragment_size": 100, "number_of_fragments": 1},
        "description": {"fragment_size": 150, "number_of_fragments": 2},
    },
}

SORTS: Dict[SortOption, List[dict]] = {
    SortOption.RELEVANCE: [
        {"_score": {"order": "desc"}},
        {"popularity_score": {"order": "desc"}},
        {"rating.average": {"order": "desc"}},
    ],
    SortOption.PRICE_ASC: [{"price": {"order": "asc"}}, {"_score": {"order": "desc"}}],
    SortOption.PRICE_DESC: [{"price": {"order": "desc"}}, {"_score": {"order": "desc"}}],
    SortOption.RATING: [
        {"rating.average": {"order": "desc"}},
        {"rating.count": {"order": "desc"}},
        {"_score": {"order": "desc"}},
    ],
    SortOption.NEWEST: [{"created_at": {"order": "desc"}}, {"_score": {"order": "desc"}}],
    SortOption.POPULARITY: [
        {"popularity_score": {"order": "desc"}},
        {"rating.average": {"order": "desc"}},
        {"_score": {"order": "desc"}},
    ],
}


@dataclass(frozen=True)
class StrategyContext:
    text: str
    mode: SearchMode
    boosts: Mapping[str, float]
    fuzzy: bool = True
    fuzziness: str = "AUTO"
    proximity: Optional[int] = None
    minimum_should_match: Optional[int] = None


@dataclass(frozen=True)
class QueryPlan:
    query_type: QueryType
    search_mode: SearchMode
    boosts: Mapping[str, float]
    page: int
    limit: int
    offset: int
    has_text: bool
    body: Dict[str, Any] = field(repr=False)

    def request_body(self) -> Dict[str, Any]:
        """A private copy of the backend body; the plan itself is never mutated."""
        return copy.deepcopy(self.body)

    @property
    def query(self) -> Dict[str, Any]:
        return copy.deepcopy(self.body["query"])


def _fmt(value: float) -> str:
    return f"{value:g}"


def merge_boosts(overrides: Optional[Mapping[str, float]]) -> Dict[str, float]:
    """Default boost table merged with per-request overrides (unknown keys ignored)."""
    boosts = dict(DEFAULT_BOOSTS)
    for key, value in (overrides or {}).items():
        name = key if key in SEARCH_FIELDS else _FIELD_ALIASES.get(key)
        if name is None:
            logger.debug("Ignoring boost for unknown field %r", key)
            continue
        try:
            boost = float(value)
        except (TypeError, ValueError):
            continue
        if boost > 0:
            boosts[name] = boost
    return boosts


def field_list(boosts: Mapping[str, float]) -> List[str]:
    return [f"{SEARCH_FIELDS[name]}^{_fmt(boosts[name])}" for name in SEARCH_FIELDS]


def normalize_pagination(page: Any, limit: Any, max_window: int, max_page_size: int = 100) -> Tuple[int, int, int]:
    """Clamp page/limit and derive ``offset = (page - 1) * limit`` inside the result window."""
    try:
        page = max(int(page), 1)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = min(max(int(limit), 1), max_page_size)
    except (TypeError, ValueError):
        limit = 20
    offset = (page - 1) * limit
    if offset + limit > max_window:
        offset = max(0, max_window - limit)
    return page, limit, offset


# ---------------------------------------------------------------------------
# strategies
# ---------------------------------------------------------------------------


def build_multi_match(ctx: StrategyContext) -> Dict[str, Any]:
    match_type, operator, default_msm = MODE_SETTINGS[ctx.mode]
    msm = f"{ctx.minimum_should_match}%" if ctx.minimum_should_match is not None else default_msm
    clause: Dict[str, Any] = {
        "multi_match": {
            "query": ctx.text,
            "fields": field_list(ctx.boosts),
            "type": match_type,
            "operator": operator,
            "minimum_should_match": msm,
        }
    }
    if ctx.fuzzy:
        clause["multi_match"].update(fuzziness=ctx.fuzziness, prefix_length=2, max_expansions=50)

    if ctx.mode is not SearchMode.STANDARD:
        return clause

    # Exact phrase hits score higher without excluding partial matches.
    phrase = {
        "multi_match": {
            "query": ctx.text,
            "fields": [
                f"{SEARCH_FIELDS['title']}^{_fmt(ctx.boosts['title'] * 2)}",
                f"{SEARCH_FIELDS['keywords']}^{_fmt(ctx.boosts['keywords'] * 1.5)}",
            ],
            "type": "phrase",
            "boost": 2,
        }
    }
    return {"bool": {"should": [clause, phrase], "minimum_should_match": 1}}


def build_phrase(ctx: StrategyContext) -> Dict[str, Any]:
    clause: Dict[str, Any] = {
        "multi_match": {
            "query": ctx.text.strip("\"'"),
            "fields": field_list(ctx.boosts),
            "type": "phrase",
        }
    }
    if ctx.proximity:
        clause["multi_match"]["slop"] = ctx.proximity
    return clause


def build_prefix(ctx: StrategyContext) -> Dict[str, Any]:
    boosts = ctx.boosts
    return {
        "bool": {
            "should": [
                {"prefix": {"title.keyword": {"value": ctx.text, "boost": boosts["title"], "case_insensitive": True}}},
                {"prefix": {"brand.name.keyword": {"value": ctx.text, "boost": boosts["brand"], "case_insensitive": True}}},
                {
                    "multi_match": {
                        "query": ctx.text,
                        "fields": [
                            f"title^{_fmt(boosts['title'])}",
                            f"description^{_fmt(boosts['description'])}",
                            f"search_keywords^{_fmt(boosts['keywords'])}",
                        ],
                        "type": "phrase_prefix",
                    }
                },
            ],
            "minimum_should_match": 1,
        }
    }


def build_fuzzy(ctx: StrategyContext) -> Dict[str, Any]:
    # One match per field: fuzziness does not compose reliably across fields.
    should = [
        {
            "match": {
                SEARCH_FIELDS[name]: {
                    "query": ctx.text,
                    "fuzziness": ctx.fuzziness,
                    "boost": ctx.boosts[name],
                    "prefix_length": 1,
                    "max_expansions": 50,
                }
            }
        }
        for name in ("title", "description", "keywords")
    ]
    return {"bool": {"should": should, "minimum_should_match": 1}}


def build_wildcard(ctx: StrategyContext) -> Dict[str, Any]:
    pattern = ctx.text if ("*" in ctx.text or "?" in ctx.text) else f"*{ctx.text}*"
    should = [
        {
            "wildcard": {
                f"{SEARCH_FIELDS[name]}.keyword": {
                    "value": pattern,
                    "boost": ctx.boosts[name],
                    "case_insensitive": True,
                }
            }
        }
        for name in ("title", "keywords", "brand")
    ]
    return {"bool": {"should": should, "minimum_should_match": 1}}


def parse_boolean_terms(text: str) -> Tuple[List[str], List[str], List[str]]:
    """Split on whitespace into (required, excluded, optional) terms."""
    must: List[str] = []
    must_not: List[str] = []
    should: List[str] = []
    for token in text.split():
        if token.startswith("+"):
            if token[1:]:
                must.append(token[1:])
        elif token.startswith("-"):
            if token[1:]:
                must_not.append(token[1:])
        else:
            should.append(token)
    return must, must_not, should


def build_boolean(ctx: StrategyContext) -> Dict[str, Any]:
    must, must_not, should = parse_boolean_terms(ctx.text)
    fields = field_list(ctx.boosts)
    if not (must or should):
        # Nothing to match positively; keep the exclusions over everything.
        return {"bool": {"must": [{"match_all": {}}], "must_not": [{"multi_match": {"query": t, "fields": fields}} for t in must_not]}}

    def optional(term: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {"query": term, "fields": fields}
        if ctx.fuzzy:
            body["fuzziness"] = "AUTO"
        return {"multi_match": body}

    clause: Dict[str, Any] = {
        "bool": {
            "must": [{"multi_match": {"query": t, "fields": fields, "operator": "and"}} for t in must],
            "must_not": [{"multi_match": {"query": t, "fields": fields}} for t in must_not],
            "should": [optional(t) for t in should],
        }
    }
    if should and not must:
        clause["bool"]["minimum_should_match"] = 1
    return clause


STRATEGY_BUILDERS: Dict[QueryType, Callable[[StrategyContext], Dict[str, Any]]] = {
    QueryType.MULTI_MATCH: build_multi_match,
    QueryType.PHRASE: build_phrase,
    QueryType.PREFIX: build_prefix,
    QueryType.FUZZY: build_fuzzy,
    QueryType.WILDCARD: build_wildcard,
    QueryType.BOOLEAN: build_boolean,
}


# ---------------------------------------------------------------------------
# envelope
# ---------------------------------------------------------------------------


def build_function_score(base: Dict[str, Any], score_factors: Optional[Mapping[str, float]] = None) -> Dict[str, Any]:
    factors = dict(DEFAULT_SCORE_FACTORS)
    factors.update({k: float(v) for k, v in (score_factors or {}).items() if k in DEFAULT_SCORE_FACTORS})
    return {
        "function_score": {
            "query": base,
            "functions": [
                {"filter": {"term": {"is_featured": True}}, "weight": factors["featured"]},
                {
                    "field_value_factor": {
                        "field": "popularity_score",
                        "factor": factors["popularity"],
                        "modifier": "log1p",
                        "missing": 1,
                    }
                },
                {
                    "field_value_factor": {
                        "field": "rating.average",
                        "factor": factors["rating"],
                        "modifier": "none",
                        "missing": 3,
                    }
                },
                {
                    "field_value_factor": {
                        "field": "rating.count",
                        "factor": 0.1,
                        "modifier": "log1p",
                        "missing": 0,
                    }
                },
                {
                    "gauss": {"created_at": {"origin": "now", "scale": "30d", "offset": "7d", "decay": 0.5}},
                    "weight": factors["recency"],
                },
                {"filter": {"term": {"in_stock": True}}, "weight": factors["stock"]},
            ],
            "score_mode": "multiply",
            "boost_mode": "multiply",
            "max_boost": MAX_BOOST,
            "min_score": MIN_SCORE,
        }
    }


def build_filters(request: SearchRequest) -> List[Dict[str, Any]]:
    filters: List[Dict[str, Any]] = [{"term": {"is_active": True}}]
    if request.category:
        filters.append({"nested": {"path": "category", "query": {"terms": {"category.id": sorted(set(request.category))}}}})
    if request.brand:
        filters.append({"terms": {"brand.id": sorted(set(request.brand))}})
    if request.tags:
        filters.append({"terms": {"tags": sorted(set(request.tags))}})
    if request.price_min is not None or request.price_max is not None:
        price: Dict[str, float] = {}
        if request.price_min is not None:
            price["gte"] = request.price_min
        if request.price_max is not None:
            price["lte"] = request.price_max
        filters.append({"range": {"price": price}})
    if request.rating_min is not None:
        filters.append({"range": {"rating.average": {"gte": request.rating_min}}})
    if request.in_stock is not None:
        filters.append({"term": {"in_stock": request.in_stock}})
    return filters


def applied_filter_names(request: SearchRequest) -> List[str]:
    names = []
    if request.category:
        names.append("category")
    if request.brand:
        names.append("brand")
    if request.tags:
        names.append("tags")
    if request.price_min is not None or request.price_max is not None:
        names.append("price")
    if request.rating_min is not None:
        names.append("rating")
    if request.in_stock is not None:
        names.append("stock")
    return names


def _clamp(value: Optional[int], low: int, high: int) -> Optional[int]:
    if value is None:
        return None
    return min(max(int(value), low), high)


def build_text_query(request: SearchRequest, query_type: QueryType, mode: SearchMode, boosts: Mapping[str, float]) -> Optional[Dict[str, Any]]:
    text = request.q
    if query_type is QueryType.BOOLEAN and request.boolean_query:
        text = request.boolean_query
    if not text:
        return None
    ctx = StrategyContext(
        text=text,
        mode=mode,
        boosts=boosts,
        fuzzy=request.fuzzy is not False,
        fuzziness=request.fuzziness or "AUTO",
        proximity=_clamp(request.proximity, 0, 10),
        minimum_should_match=_clamp(request.minimum_should_match, 10, 100),
    )
    try:
        return STRATEGY_BUILDERS[query_type](ctx)
    except Exception:
        logger.warning("Strategy %s failed for %r; using best-fields multi-match", query_type.value, text, exc_info=True)
        return build_multi_match(StrategyContext(text=text, mode=SearchMode.STANDARD, boosts=boosts))


def build_query_plan(
    request: SearchRequest,
    aggregations: Optional[Dict[str, Any]] = None,
    *,
    size: Optional[int] = None,
    config: Settings = default_settings,
) -> QueryPlan:
    """Resolve strategy, mode and pagination and assemble the full search body.

    ``size`` overrides the page size (``0`` for facet-only requests).
    """
    query_type = request.query_type or QueryType.MULTI_MATCH
    mode = request.search_mode or SearchMode.STANDARD
    boosts = merge_boosts(request.field_boosts)
    page, limit, offset = normalize_pagination(request.page, request.limit, config.max_result_window, config.max_page_size)
    if size is not None:
        limit, offset = max(int(size), 0), 0

    base = build_text_query(request, query_type, mode, boosts)
    has_text = base is not None
    query: Dict[str, Any] = {
        "bool": {
            "must": [base if has_text else {"match_all": {}}],
            "filter": build_filters(request),
        }
    }
    if has_text and request.function_score:
        query = build_function_score(query, request.score_factors)

    body: Dict[str, Any] = {
        "query": query,
        "from": offset,
        "size": limit,
        "_source": list(SOURCE_FIELDS),
        "sort": copy.deepcopy(SORTS.get(request.sort, SORTS[SortOption.RELEVANCE])),
        "track_total_hits": config.track_total_hits,
    }
    if has_text:
        body["highlight"] = copy.deepcopy(HIGHLIGHT)
    if aggregations:
        body["aggs"] = copy.deepcopy(aggregations)

    logger.debug("ES query payload=%s", body)
    return QueryPlan(
        query_type=query_type,
        search_mode=mode,
        boosts=MappingProxyType(dict(boosts)),
        page=page,
        limit=limit,
        offset=offset,
        has_text=has_text,
        body=body,
    )
