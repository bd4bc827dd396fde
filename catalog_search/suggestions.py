"""Completion, popular-query and spelling suggestions."""
from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import TYPE_CHECKING, Any, Awaitable, Dict, List, Optional

from .cache import CacheBackend, cache_store, cached_model, make_autocomplete_key, make_suggest_key
from .config import Settings, settings as default_settings
from .errors import SearchError
from .models import (
    AutocompleteResponse,
    AutocompleteSuggestion,
    BrandSuggestion,
    CategorySuggestion,
    EntityRef,
    ProductSuggestion,
    QuerySuggestion,
    SpellCorrection,
    SuggestionType,
    SuggestRequest,
    SuggestResponse,
)

if TYPE_CHECKING:
    from .connection import ConnectionManager

logger = logging.getLogger(__name__)

PRODUCT_SOURCE = ["id", "title", "price", "discount_price", "in_stock", "images", "category", "brand"]
CATEGORY_SOURCE = ["id", "name", "path", "level", "product_count"]
BRAND_SOURCE = ["id", "name", "logo", "product_count", "is_featured"]
QUERY_SOURCE = ["query", "frequency", "result_count", "last_searched"]


def completion(name: str, prefix: str, size: int, *, field: str = "suggest", fuzziness: Optional[str] = None) -> Dict[str, Any]:
    spec: Dict[str, Any] = {"field": field, "size": size, "skip_duplicates": True}
    if fuzziness:
        spec["fuzzy"] = {"fuzziness": fuzziness, "prefix_length": 1}
    return {name: {"prefix": prefix, "completion": spec}}


def _options(response: Dict[str, Any], name: str) -> List[Dict[str, Any]]:
    entries = (response.get("suggest") or {}).get(name) or []
    if not entries:
        return []
    options = entries[0].get("options") or []
    return options if isinstance(options, list) else []


def _id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _ref(value: Any) -> Optional[EntityRef]:
    if not isinstance(value, dict):
        return None
    return EntityRef(id=value.get("id"), name=value.get("name"), slug=value.get("slug"))


class SuggestionEngine:
    def __init__(
        self,
        connection: "ConnectionManager",
        cache: Optional[CacheBackend] = None,
        config: Settings = default_settings,
    ) -> None:
        self._connection = connection
        self._cache = cache
        self._settings = config

    async def _search(self, index: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._connection.execute("search", {"index": index, "body": body})

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    async def products(self, request: SuggestRequest) -> List[ProductSuggestion]:
        fuzziness = request.fuzziness if request.fuzzy else None
        response = await self._search(
            self._settings.products_index,
            {"suggest": completion("product_suggest", request.q, request.limit, fuzziness=fuzziness), "_source": PRODUCT_SOURCE},
        )
        suggestions = []
        for option in _options(response, "product_suggest"):
            source = option.get("_source") or {}
            images = source.get("images") or []
            suggestions.append(
                ProductSuggestion(
                    text=option.get("text", ""),
                    product_id=_id(source.get("id")),
                    score=option.get("_score") or 0,
                    title=source.get("title"),
                    price=source.get("discount_price") or source.get("price"),
                    image=images[0] if images else None,
                    in_stock=source.get("in_stock"),
                    category=_ref(source.get("category")),
                    brand=_ref(source.get("brand")),
                )
            )
        return suggestions

    async def categories(self, request: SuggestRequest) -> List[CategorySuggestion]:
        fuzziness = request.fuzziness if request.fuzzy else None
        response = await self._search(
            self._settings.categories_index,
            {"suggest": completion("category_suggest", request.q, request.limit, fuzziness=fuzziness), "_source": CATEGORY_SOURCE},
        )
        suggestions = []
        for option in _options(response, "category_suggest"):
            source = option.get("_source") or {}
            suggestions.append(
                CategorySuggestion(
                    text=option.get("text", ""),
                    category_id=_id(source.get("id")),
                    name=source.get("name"),
                    path=source.get("path") or "",
                    level=source.get("level") or 0,
                    product_count=source.get("product_count") or 0,
                )
            )
        return suggestions

    async def brands(self, request: SuggestRequest) -> List[BrandSuggestion]:
        fuzziness = request.fuzziness if request.fuzzy else None
        response = await self._search(
            self._settings.brands_index,
            {"suggest": completion("brand_suggest", request.q, request.limit, fuzziness=fuzziness), "_source": BRAND_SOURCE},
        )
        suggestions = []
        for option in _options(response, "brand_suggest"):
            source = option.get("_source") or {}
            suggestions.append(
                BrandSuggestion(
                    text=option.get("text", ""),
                    brand_id=_id(source.get("id")),
                    name=source.get("name"),
                    logo=source.get("logo"),
                    product_count=source.get("product_count") or 0,
                    is_featured=bool(source.get("is_featured")),
                )
            )
        return suggestions

    async def popular_queries(self, request: SuggestRequest) -> List[QuerySuggestion]:
        """Previously searched queries, prefix matches first, scored by frequency and recency."""
        text = request.q.strip().lower()
        body = {
            "query": {
                "function_score": {
                    "query": {
                        "bool": {
                            "should": [
                                {"prefix": {"query.keyword": {"value": text, "boost": 2.0}}},
                                {"match": {"query": text}},
                            ],
                            "minimum_should_match": 1,
                        }
                    },
                    "functions": [
                        {"field_value_factor": {"field": "frequency", "modifier": "log1p", "missing": 1}},
                        {"gauss": {"last_searched": {"origin": "now", "scale": "7d", "decay": 0.5}}},
                    ],
                    "score_mode": "multiply",
                    "boost_mode": "multiply",
                }
            },
            "size": request.limit,
            "_source": QUERY_SOURCE,
        }
        response = await self._search(self._settings.search_queries_index, body)
        return [
            QuerySuggestion(
                text=hit["_source"].get("query", ""),
                frequency=hit["_source"].get("frequency") or 0,
                result_count=hit["_source"].get("result_count") or 0,
                last_searched=hit["_source"].get("last_searched"),
            )
            for hit in (response.get("hits") or {}).get("hits", [])
            if hit.get("_source")
        ]

    async def spelling(self, request: SuggestRequest) -> List[SpellCorrection]:
        body = {
            "size": 0,
            "suggest": {
                "spell_suggest": {
                    "text": request.q,
                    "term": {
                        "field": "title",
                        "size": 3,
                        "sort": "frequency",
                        "suggest_mode": "popular",
                        "min_word_length": 3,
                        "prefix_length": 1,
                        "min_doc_freq": 1,
                    },
                }
            },
        }
        response = await self._search(self._settings.products_index, body)
        corrections: List[SpellCorrection] = []
        seen = set()
        for entry in (response.get("suggest") or {}).get("spell_suggest") or []:
            for option in entry.get("options") or []:
                pair = (entry.get("text", ""), option.get("text", ""))
                if pair in seen or pair[0] == pair[1]:
                    continue
                seen.add(pair)
                corrections.append(
                    SpellCorrection(
                        original=pair[0],
                        suggested=pair[1],
                        confidence=option.get("score") or 0,
                        frequency=option.get("freq") or 0,
                    )
                )
        return corrections[: request.limit]

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------

    async def get_suggestions(self, request: SuggestRequest) -> SuggestResponse:
        started = perf_counter()
        key = make_suggest_key(request)
        response = await cached_model(self._cache, key, SuggestResponse)
        if response is not None:
            response.from_cache = True
            logger.info("timing: total=%.2fms cache_hit=1 suggest q=%r", (perf_counter() - started) * 1000, request.q)
            return response

        lookups: Dict[str, Awaitable[list]] = {}
        types = set(request.types)
        if SuggestionType.PRODUCTS in types:
            lookups["products"] = self.products(request)
        if SuggestionType.CATEGORIES in types:
            lookups["categories"] = self.categories(request)
        if SuggestionType.BRANDS in types:
            lookups["brands"] = self.brands(request)
        if SuggestionType.QUERIES in types:
            lookups["queries"] = self.popular_queries(request)
        if request.spell_check:
            lookups["corrections"] = self.spelling(request)

        response = SuggestResponse(query=request.q)
        results = await asyncio.gather(*lookups.values(), return_exceptions=True)
        for section, result in zip(lookups, results):
            if isinstance(result, Exception):
                logger.warning("%s suggestions failed for q=%r: %s", section, request.q, getattr(result, "reason", result))
                continue
            if isinstance(result, BaseException):
                raise result
            setattr(response, section, result)

        response.total_suggestions = (
            len(response.products) + len(response.categories) + len(response.brands) + len(response.queries)
        )
        response.took_ms = (perf_counter() - started) * 1000
        await cache_store(self._cache, key, response.model_dump(mode="json"), self._settings.suggest_cache_ttl_seconds)
        logger.info(
            "timing: total=%.2fms suggest q=%r sections=%s total=%s",
            response.took_ms,
            request.q,
            sorted(lookups),
            response.total_suggestions,
        )
        return response

    async def autocomplete(self, text: str, size: int = 10, category_context: Optional[str] = None) -> AutocompleteResponse:
        started = perf_counter()
        key = make_autocomplete_key(text, size, category_context)
        cached = await cached_model(self._cache, key, AutocompleteResponse)
        if cached is not None:
            cached.from_cache = True
            return cached

        suggest = completion("autocomplete", text, size, field="autocomplete", fuzziness="AUTO")
        if category_context:
            suggest["autocomplete"]["completion"]["contexts"] = {"category": [category_context]}
        try:
            raw = await self._search(self._settings.products_index, {"size": 0, "suggest": suggest})
        except SearchError as exc:
            logger.warning("autocomplete failed for q=%r: %s", text, exc.reason)
            return AutocompleteResponse(query=text, took_ms=(perf_counter() - started) * 1000)

        suggestions = [
            AutocompleteSuggestion(text=option.get("text", ""), score=option.get("_score") or 0, data=option.get("payload") or {})
            for option in _options(raw, "autocomplete")
        ]
        response = AutocompleteResponse(
            query=text,
            suggestions=suggestions,
            total=len(suggestions),
            took_ms=(perf_counter() - started) * 1000,
        )
        await cache_store(self._cache, key, response.model_dump(mode="json"), self._settings.suggest_cache_ttl_seconds)
        return response
