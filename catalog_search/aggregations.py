"""Facet aggregations: request building and bucket-to-facet transformation."""
from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .catalog import CatalogEntry, CatalogStore
from .errors import SearchError
from .models import (
    AppliedFilters,
    CategoryFacetBucket,
    CategoryFacetConfig,
    CustomFacetConfig,
    CustomFacetType,
    FacetBucket,
    FacetOptions,
    FacetResults,
    GlobalFacetCounts,
    PriceRangeConfig,
    PriceRangeType,
    RangeFacetBucket,
    RatingFacetBucket,
    SearchRequest,
)

logger = logging.getLogger(__name__)

CUSTOM_PREFIX = "custom_"
GLOBAL_SCOPE = "global_facets"

DEFAULT_PRICE_RANGES: List[Dict[str, Any]] = [
    {"key": "0-25", "to": 25},
    {"key": "25-50", "from": 25, "to": 50},
    {"key": "50-100", "from": 50, "to": 100},
    {"key": "100-250", "from": 100, "to": 250},
    {"key": "250-500", "from": 250, "to": 500},
    {"key": "500-1000", "from": 500, "to": 1000},
    {"key": "1000+", "from": 1000},
]
RATING_RANGES: List[Dict[str, Any]] = [
    {"key": "5-stars", "from": 4.5, "to": 5.1},
    {"key": "4-stars", "from": 4.0, "to": 4.5},
    {"key": "3-stars", "from": 3.0, "to": 4.0},
    {"key": "2-stars", "from": 2.0, "to": 3.0},
    {"key": "1-star", "from": 1.0, "to": 2.0},
]
LOW_STOCK_MAX = 10
AVAILABILITY_FILTERS: Dict[str, Dict[str, Any]] = {
    "in_stock": {"term": {"in_stock": True}},
    "out_of_stock": {"term": {"in_stock": False}},
    "low_stock": {"range": {"stock_quantity": {"gte": 1, "lte": LOW_STOCK_MAX}}},
    "high_stock": {"range": {"stock_quantity": {"gt": LOW_STOCK_MAX}}},
}
AVAILABILITY_LABELS = {
    "in_stock": "In Stock",
    "out_of_stock": "Out of Stock",
    "low_stock": f"Low Stock (1-{LOW_STOCK_MAX})",
    "high_stock": f"High Stock ({LOW_STOCK_MAX}+)",
}


# ---------------------------------------------------------------------------
# aggregation builders
# ---------------------------------------------------------------------------


def category_aggregation(config: Optional[CategoryFacetConfig] = None, min_doc_count: int = 1) -> Dict[str, Any]:
    config = config or CategoryFacetConfig()
    scope: List[Dict[str, Any]] = []
    if config.include_hierarchy:
        scope.append({"range": {"category.level": {"lte": config.max_depth}}})
    if config.parent_category:
        scope.append({"prefix": {"category.path": config.parent_category}})

    terms_aggs: Dict[str, Any] = {"category_names": {"terms": {"field": "category.name.keyword", "size": 1}}}
    if config.include_hierarchy:
        terms_aggs["category_paths"] = {"terms": {"field": "category.path", "size": 1}}

    return {
        "nested": {"path": "category"},
        "aggs": {
            "category_scope": {
                "filter": {"bool": {"filter": scope}} if scope else {"match_all": {}},
                "aggs": {
                    "category_terms": {
                        "terms": {
                            "field": "category.id",
                            "size": 50,
                            "min_doc_count": min_doc_count,
                            "order": {"_count": "desc"},
                        },
                        "aggs": terms_aggs,
                    }
                },
            }
        },
    }


def brand_aggregation(size: int = 20, min_doc_count: int = 1) -> Dict[str, Any]:
    return {
        "terms": {"field": "brand.id", "size": size, "min_doc_count": min_doc_count, "order": {"_count": "desc"}},
        "aggs": {
            "brand_names": {"terms": {"field": "brand.name.keyword", "size": 1}},
            "brand_popularity": {"avg": {"field": "popularity_score"}},
        },
    }


def _range_spec(key: Optional[str], start: Optional[float], end: Optional[float]) -> Dict[str, Any]:
    spec: Dict[str, Any] = {"key": key or f"{_number(start or 0)}-{_number(end) if end is not None else 'max'}"}
    if start is not None:
        spec["from"] = start
    if end is not None:
        spec["to"] = end
    return spec


def price_aggregation(config: Optional[PriceRangeConfig] = None, min_doc_count: int = 1) -> Dict[str, Any]:
    if config is not None and config.type is PriceRangeType.DYNAMIC:
        return {"histogram": {"field": "price", "interval": config.interval, "min_doc_count": min_doc_count}}
    if config is not None and config.ranges:
        ranges = [_range_spec(r.key, r.from_, r.to) for r in config.ranges]
    else:
        ranges = [dict(r) for r in DEFAULT_PRICE_RANGES]
    return {"range": {"field": "price", "ranges": ranges}}


def rating_aggregation() -> Dict[str, Any]:
    return {
        "range": {"field": "rating.average", "ranges": [dict(r) for r in RATING_RANGES]},
        "aggs": {"rating_stats": {"stats": {"field": "rating.average"}}},
    }


def tag_aggregation(size: int = 15, min_doc_count: int = 1) -> Dict[str, Any]:
    return {"terms": {"field": "tags", "size": size, "min_doc_count": min_doc_count, "order": {"_count": "desc"}}}


def availability_aggregation() -> Dict[str, Any]:
    return {"filters": {"filters": {key: dict(clause) for key, clause in AVAILABILITY_FILTERS.items()}}}


def custom_aggregation(config: CustomFacetConfig) -> Dict[str, Any]:
    if config.type is CustomFacetType.HISTOGRAM:
        return {"histogram": {"field": config.field, "interval": config.interval, "min_doc_count": config.min_doc_count}}
    terms: Dict[str, Any] = {"field": config.field, "size": config.size, "min_doc_count": config.min_doc_count}
    if config.include:
        terms["include"] = config.include
    if config.exclude:
        terms["exclude"] = config.exclude
    return {"terms": terms}


def resolve_options(request: SearchRequest, options: Optional[FacetOptions] = None) -> FacetOptions:
    return options or request.facet_options or FacetOptions()


def build_aggregations(request: SearchRequest, options: Optional[FacetOptions] = None) -> Dict[str, Any]:
    """One backend aggregation per enabled facet kind, plus the optional global scope."""
    options = resolve_options(request, options)
    aggs: Dict[str, Any] = {}
    if options.categories:
        aggs["categories"] = category_aggregation(options.category_config, options.min_doc_count)
    if options.brands:
        aggs["brands"] = brand_aggregation(options.brand_size, options.min_doc_count)
    if options.price_ranges:
        aggs["price_ranges"] = price_aggregation(options.price_config, options.min_doc_count)
    if options.ratings:
        aggs["ratings"] = rating_aggregation()
    if options.tags:
        aggs["tags"] = tag_aggregation(options.tag_size, options.min_doc_count)
    if options.availability:
        aggs["availability"] = availability_aggregation()
    for name, config in options.custom_facets.items():
        aggs[f"{CUSTOM_PREFIX}{name}"] = custom_aggregation(config)

    if not options.filtered_facets:
        unfiltered: Dict[str, Any] = {}
        if options.categories:
            unfiltered["all_categories"] = category_aggregation(options.category_config, options.min_doc_count)
        if options.brands:
            unfiltered["all_brands"] = brand_aggregation(options.brand_size, options.min_doc_count)
        if options.ratings:
            unfiltered["all_ratings"] = rating_aggregation()
        aggs[GLOBAL_SCOPE] = {
            "global": {},
            "aggs": {"active": {"filter": {"term": {"is_active": True}}, "aggs": unfiltered}},
        }

    logger.debug("Built aggregations: %s", sorted(aggs))
    return aggs


# ---------------------------------------------------------------------------
# labels / selection helpers
# ---------------------------------------------------------------------------


def _number(value: Optional[float]) -> str:
    if value is None:
        return ""
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


def price_label(start: Optional[float], end: Optional[float]) -> str:
    if end is None:
        return f"${_number(start or 0)}+"
    return f"${_number(start or 0)} - ${_number(end)}"


def rating_value(start: Optional[float]) -> int:
    return int(math.ceil(start or 0))


def rating_label(value: int) -> str:
    if value >= 5:
        return "5 Stars"
    if value == 1:
        return "1 Star & Up"
    return f"{value} Stars & Up"


def range_overlaps(start: Optional[float], end: Optional[float], low: Optional[float], high: Optional[float]) -> bool:
    """True when bucket ``[start, end)`` intersects the filter ``[low, high]``."""
    if low is None and high is None:
        return False
    bucket_min = start if start is not None else 0.0
    bucket_max = end if end is not None else math.inf
    return (low is None or low < bucket_max) and (high is None or high >= bucket_min)


def availability_selected(key: str, in_stock: Optional[bool]) -> bool:
    if in_stock is None:
        return False
    if in_stock:
        return key in {"in_stock", "low_stock", "high_stock"}
    return key == "out_of_stock"


def _first_key(agg: Optional[Dict[str, Any]]) -> Optional[str]:
    buckets = (agg or {}).get("buckets") or []
    return str(buckets[0]["key"]) if buckets else None


def _buckets(agg: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    buckets = (agg or {}).get("buckets") or []
    return buckets if isinstance(buckets, list) else []


def _category_buckets(agg: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    agg = agg or {}
    scope = agg.get("category_scope") or agg
    return _buckets(scope.get("category_terms"))


class AggregationEngine:
    def __init__(self, catalog: CatalogStore) -> None:
        self._catalog = catalog

    def build(self, request: SearchRequest, options: Optional[FacetOptions] = None) -> Dict[str, Any]:
        return build_aggregations(request, options)

    async def _lookup(
        self,
        fetch: Callable[[List[str]], Awaitable[Dict[str, CatalogEntry]]],
        ids: Iterable[str],
        kind: str,
    ) -> Dict[str, CatalogEntry]:
        unique = sorted(set(ids))
        if not unique:
            return {}
        try:
            return await fetch(unique)
        except SearchError as exc:
            logger.warning("Catalog %s lookup failed, using aggregation names: %s", kind, exc.reason)
            return {}

    async def transform(
        self,
        raw: Optional[Dict[str, Any]],
        request: SearchRequest,
        options: Optional[FacetOptions] = None,
    ) -> FacetResults:
        """Turn raw aggregation output into facets; enabled kinds are always present."""
        options = resolve_options(request, options)
        raw = raw or {}
        scope = (raw.get(GLOBAL_SCOPE) or {}).get("active") or {}

        category_ids: List[str] = []
        brand_ids: List[str] = []
        if options.categories:
            for agg in (raw.get("categories"), scope.get("all_categories")):
                category_ids.extend(str(b["key"]) for b in _category_buckets(agg))
        if options.brands:
            for agg in (raw.get("brands"), scope.get("all_brands")):
                brand_ids.extend(str(b["key"]) for b in _buckets(agg))

        categories, brands = await asyncio.gather(
            self._lookup(self._catalog.get_categories, category_ids, "categories"),
            self._lookup(self._catalog.get_brands, brand_ids, "brands"),
        )

        result = FacetResults(applied_filters=self.applied_filters(request))
        if options.categories:
            hierarchy = bool(options.category_config and options.category_config.include_hierarchy)
            result.categories = self._categories(raw.get("categories"), categories, request.category, hierarchy)
        if options.brands:
            result.brands = self._brands(raw.get("brands"), brands, request.brand)
        if options.price_ranges:
            result.price_ranges = self._price_ranges(raw.get("price_ranges"), request, options.price_config)
        if options.ratings:
            result.ratings = self._ratings(raw.get("ratings"), request.rating_min)
        if options.tags:
            result.tags = self._terms(raw.get("tags"), request.tags)
        if options.availability:
            result.availability = self._availability(raw.get("availability"), request.in_stock)
        for name, config in options.custom_facets.items():
            agg = raw.get(f"{CUSTOM_PREFIX}{name}")
            if config.type is CustomFacetType.HISTOGRAM:
                result.custom[name] = self._histogram(agg, config.interval)
            else:
                result.custom[name] = self._terms(agg, [])

        if not options.filtered_facets:
            counts = GlobalFacetCounts()
            if options.categories:
                counts.categories = self._categories(scope.get("all_categories"), categories, request.category, False)
            if options.brands:
                counts.brands = self._brands(scope.get("all_brands"), brands, request.brand)
            if options.ratings:
                counts.ratings = self._ratings(scope.get("all_ratings"), request.rating_min)
            result.global_counts = counts
            if scope:
                result.total_products = int(scope.get("doc_count", 0))
        return result

    @staticmethod
    def applied_filters(request: SearchRequest) -> AppliedFilters:
        return AppliedFilters(
            categories=sorted(set(request.category)),
            brands=sorted(set(request.brand)),
            tags=sorted(set(request.tags)),
            price_min=request.price_min,
            price_max=request.price_max,
            rating_min=request.rating_min,
            in_stock=request.in_stock,
        )

    def _categories(
        self,
        agg: Optional[Dict[str, Any]],
        catalog: Dict[str, CatalogEntry],
        selected: List[str],
        hierarchy: bool,
    ) -> List[CategoryFacetBucket]:
        chosen = set(selected)
        buckets: List[CategoryFacetBucket] = []
        for raw_bucket in _category_buckets(agg):
            key = str(raw_bucket["key"])
            entry = catalog.get(key)
            path = _first_key(raw_bucket.get("category_paths")) or (entry.path if entry else None)
            if entry is not None:
                level = entry.level
            else:
                level = path.count("/") if path else 0
            buckets.append(
                CategoryFacetBucket(
                    key=key,
                    count=int(raw_bucket.get("doc_count", 0)),
                    name=(entry.name if entry else None) or _first_key(raw_bucket.get("category_names")) or key,
                    selected=key in chosen,
                    parent_id=entry.parent_id if entry else None,
                    path=path,
                    level=level,
                )
            )
        buckets.sort(key=lambda b: -b.count)
        if not hierarchy:
            return buckets

        by_key = {bucket.key: bucket for bucket in buckets}
        roots: List[CategoryFacetBucket] = []
        for bucket in buckets:
            parent = by_key.get(bucket.parent_id) if bucket.parent_id else None
            if parent is not None and parent is not bucket:
                parent.children.append(bucket)
            else:
                roots.append(bucket)
        return roots

    def _brands(self, agg: Optional[Dict[str, Any]], catalog: Dict[str, CatalogEntry], selected: List[str]) -> List[FacetBucket]:
        chosen = set(selected)
        buckets = []
        for raw_bucket in _buckets(agg):
            key = str(raw_bucket["key"])
            entry = catalog.get(key)
            data = {
                "logo": entry.logo if entry else None,
                "popularity": (raw_bucket.get("brand_popularity") or {}).get("value"),
            }
            buckets.append(
                FacetBucket(
                    key=key,
                    count=int(raw_bucket.get("doc_count", 0)),
                    name=(entry.name if entry else None) or _first_key(raw_bucket.get("brand_names")) or key,
                    selected=key in chosen,
                    data={k: v for k, v in data.items() if v is not None} or None,
                )
            )
        return buckets

    def _price_ranges(
        self,
        agg: Optional[Dict[str, Any]],
        request: SearchRequest,
        config: Optional[PriceRangeConfig],
    ) -> List[RangeFacetBucket]:
        if config is not None and config.type is PriceRangeType.DYNAMIC:
            raw_buckets = [
                {"key": None, "from": b["key"], "to": b["key"] + config.interval, "doc_count": b.get("doc_count", 0)}
                for b in _buckets(agg)
            ]
        else:
            raw_buckets = _buckets(agg)
        buckets = []
        for raw_bucket in raw_buckets:
            start, end = raw_bucket.get("from"), raw_bucket.get("to")
            buckets.append(
                RangeFacetBucket(
                    key=str(raw_bucket.get("key") or _range_spec(None, start, end)["key"]),
                    count=int(raw_bucket.get("doc_count", 0)),
                    from_=start,
                    to=end,
                    label=price_label(start, end),
                    selected=range_overlaps(start, end, request.price_min, request.price_max),
                )
            )
        return buckets

    def _ratings(self, agg: Optional[Dict[str, Any]], rating_min: Optional[float]) -> List[RatingFacetBucket]:
        buckets = []
        for raw_bucket in _buckets(agg):
            value = rating_value(raw_bucket.get("from"))
            buckets.append(
                RatingFacetBucket(
                    key=value,
                    count=int(raw_bucket.get("doc_count", 0)),
                    label=rating_label(value),
                    selected=rating_min is not None and (raw_bucket.get("from") or 0) >= rating_min,
                )
            )
        return sorted(buckets, key=lambda b: -b.key)

    def _terms(self, agg: Optional[Dict[str, Any]], selected: List[str]) -> List[FacetBucket]:
        chosen = set(selected)
        return [
            FacetBucket(key=str(b["key"]), count=int(b.get("doc_count", 0)), name=str(b["key"]), selected=str(b["key"]) in chosen)
            for b in _buckets(agg)
        ]

    def _histogram(self, agg: Optional[Dict[str, Any]], interval: float) -> List[FacetBucket]:
        return [
            FacetBucket(
                key=_number(b["key"]),
                count=int(b.get("doc_count", 0)),
                name=f"{_number(b['key'])}-{_number(b['key'] + interval)}",
            )
            for b in _buckets(agg)
        ]

    def _availability(self, agg: Optional[Dict[str, Any]], in_stock: Optional[bool]) -> List[FacetBucket]:
        raw_buckets = (agg or {}).get("buckets") or {}
        if not isinstance(raw_buckets, dict) or not raw_buckets:
            return []
        return [
            FacetBucket(
                key=key,
                count=int((raw_buckets.get(key) or {}).get("doc_count", 0)),
                name=AVAILABILITY_LABELS[key],
                selected=availability_selected(key, in_stock),
            )
            for key in AVAILABILITY_FILTERS
            if key in raw_buckets
        ]
