"""Pydantic models for request/response payloads."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class QueryType(str, Enum):
    MULTI_MATCH = "multi_match"
    PHRASE = "phrase"
    PREFIX = "prefix"
    FUZZY = "fuzzy"
    WILDCARD = "wildcard"
    BOOLEAN = "boolean"


class SearchMode(str, Enum):
    STANDARD = "standard"
    STRICT = "strict"
    RELAXED = "relaxed"


class SortOption(str, Enum):
    RELEVANCE = "relevance"
    PRICE_ASC = "price_asc"
    PRICE_DESC = "price_desc"
    RATING = "rating"
    NEWEST = "newest"
    POPULARITY = "popularity"


class PriceRangeType(str, Enum):
    FIXED = "fixed"
    DYNAMIC = "dynamic"


class CustomFacetType(str, Enum):
    TERMS = "terms"
    HISTOGRAM = "histogram"


class SuggestionType(str, Enum):
    PRODUCTS = "products"
    CATEGORIES = "categories"
    BRANDS = "brands"
    QUERIES = "queries"


# ---------------------------------------------------------------------------
# Facet configuration
# ---------------------------------------------------------------------------


class PriceRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: Optional[str] = None
    from_: Optional[float] = Field(None, alias="from")
    to: Optional[float] = None


class PriceRangeConfig(BaseModel):
    type: PriceRangeType = PriceRangeType.FIXED
    ranges: Optional[List[PriceRange]] = None
    interval: float = Field(50, gt=0)


class CategoryFacetConfig(BaseModel):
    include_hierarchy: bool = False
    max_depth: int = Field(5, ge=1, le=10)
    parent_category: Optional[str] = None


class CustomFacetConfig(BaseModel):
    field: str
    type: CustomFacetType = CustomFacetType.TERMS
    size: int = Field(10, ge=1, le=100)
    min_doc_count: int = Field(1, ge=0)
    interval: float = Field(10, gt=0)
    include: Optional[str] = None
    exclude: Optional[str] = None


class FacetOptions(BaseModel):
    """Which facets to compute and how."""

    categories: bool = True
    category_config: Optional[CategoryFacetConfig] = None
    brands: bool = True
    brand_size: int = Field(20, ge=1, le=100)
    price_ranges: bool = True
    price_config: Optional[PriceRangeConfig] = None
    ratings: bool = True
    tags: bool = False
    tag_size: int = Field(15, ge=1, le=50)
    availability: bool = True
    custom_facets: Dict[str, CustomFacetConfig] = Field(default_factory=dict)
    min_doc_count: int = Field(1, ge=0)
    # False adds a ``global`` aggregation scope carrying unfiltered counts.
    filtered_facets: bool = False


# ---------------------------------------------------------------------------
# Search request
# ---------------------------------------------------------------------------


class SearchRequest(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    q: Optional[str] = Field(None, description="Free text query")
    query_type: Optional[QueryType] = None
    search_mode: Optional[SearchMode] = None
    fuzzy: Optional[bool] = None
    fuzziness: Optional[str] = None
    phrase_match: Optional[bool] = None
    proximity: Optional[int] = None
    minimum_should_match: Optional[int] = None
    field_boosts: Optional[Dict[str, float]] = None
    boolean_query: Optional[str] = None

    category: List[str] = Field(default_factory=list)
    brand: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    price_min: Optional[float] = Field(None, ge=0)
    price_max: Optional[float] = Field(None, ge=0)
    rating_min: Optional[float] = Field(None, ge=1, le=5)
    in_stock: Optional[bool] = None

    sort: SortOption = SortOption.RELEVANCE
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)

    facets: bool = False
    facet_options: Optional[FacetOptions] = None
    function_score: bool = True
    score_factors: Optional[Dict[str, float]] = None

    user_id: Optional[str] = None
    session_id: Optional[str] = None

    @field_validator("category", "brand", "tags", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("q", "boolean_query")
    @classmethod
    def _strip_text(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


# ---------------------------------------------------------------------------
# Search response
# ---------------------------------------------------------------------------


class EntityRef(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: Optional[str] = None
    name: Optional[str] = None
    slug: Optional[str] = None


class RatingSummary(BaseModel):
    average: Optional[float] = None
    count: Optional[int] = None


class ProductHit(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    sku: Optional[str] = None
    slug: Optional[str] = None
    price: Optional[float] = None
    discount_price: Optional[float] = None
    in_stock: Optional[bool] = None
    stock_quantity: Optional[int] = None
    is_featured: Optional[bool] = None
    images: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    category: Optional[EntityRef] = None
    brand: Optional[EntityRef] = None
    rating: Optional[RatingSummary] = None
    created_at: Optional[str] = None
    score: Optional[float] = None
    highlight: Optional[Dict[str, List[str]]] = None


class HitsTotal(BaseModel):
    value: int = 0
    relation: str = "eq"


class SearchHits(BaseModel):
    total: HitsTotal = Field(default_factory=HitsTotal)
    max_score: Optional[float] = None
    products: List[ProductHit] = Field(default_factory=list)


class FacetBucket(BaseModel):
    key: str
    count: int
    name: Optional[str] = None
    selected: bool = False
    data: Optional[Dict[str, Any]] = None


class CategoryFacetBucket(FacetBucket):
    parent_id: Optional[str] = None
    path: Optional[str] = None
    level: int = 0
    children: List["CategoryFacetBucket"] = Field(default_factory=list)


class RangeFacetBucket(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str
    count: int
    from_: Optional[float] = Field(None, alias="from")
    to: Optional[float] = None
    label: str
    selected: bool = False


class RatingFacetBucket(BaseModel):
    key: int
    count: int
    label: str
    selected: bool = False


class AppliedFilters(BaseModel):
    categories: List[str] = Field(default_factory=list)
    brands: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    rating_min: Optional[float] = None
    in_stock: Optional[bool] = None


class GlobalFacetCounts(BaseModel):
    """Counts over every active product, ignoring the query and filters."""

    categories: Optional[List[CategoryFacetBucket]] = None
    brands: Optional[List[FacetBucket]] = None
    ratings: Optional[List[RatingFacetBucket]] = None


class FacetResults(BaseModel):
    categories: Optional[List[CategoryFacetBucket]] = None
    brands: Optional[List[FacetBucket]] = None
    price_ranges: Optional[List[RangeFacetBucket]] = None
    ratings: Optional[List[RatingFacetBucket]] = None
    tags: Optional[List[FacetBucket]] = None
    availability: Optional[List[FacetBucket]] = None
    custom: Dict[str, List[FacetBucket]] = Field(default_factory=dict)
    global_counts: Optional[GlobalFacetCounts] = None
    total_products: Optional[int] = None
    applied_filters: AppliedFilters = Field(default_factory=AppliedFilters)


class Pagination(BaseModel):
    current_page: int
    per_page: int
    offset: int
    total_pages: int
    total_results: int
    has_next: bool
    has_prev: bool
    next_page: Optional[int] = None
    prev_page: Optional[int] = None


class QueryInfo(BaseModel):
    query: Optional[str] = None
    query_type: QueryType
    search_mode: SearchMode
    filters_applied: List[str] = Field(default_factory=list)
    sort_by: SortOption = SortOption.RELEVANCE


class SearchResponse(BaseModel):
    hits: SearchHits
    facets: Optional[FacetResults] = None
    pagination: Pagination
    query_info: QueryInfo
    took_ms: float
    eta_ms: float
    from_cache: bool = False
    timestamp: str


# ---------------------------------------------------------------------------
# Query analysis
# ---------------------------------------------------------------------------


class QueryAnalysis(BaseModel):
    is_phrase: bool = False
    has_wildcards: bool = False
    has_boolean_operators: bool = False
    term_count: int = 0
    estimated_complexity: str = "low"
    recommended_query_type: QueryType = QueryType.MULTI_MATCH
    recommended_search_mode: SearchMode = SearchMode.STANDARD


class ValidationReport(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    optimized_request: SearchRequest


class StrategyResult(BaseModel):
    name: str
    query_type: QueryType
    search_mode: SearchMode
    took_ms: float
    hits: int
    max_score: float
    error: Optional[str] = None


class StrategyComparison(BaseModel):
    query: Optional[str] = None
    strategies: List[StrategyResult]
    ranking: List[str]
    recommended: str


class AdvancedSearchResponse(BaseModel):
    analysis: QueryAnalysis
    query_type: QueryType
    search_mode: SearchMode
    explanation: str
    performance_hints: List[str] = Field(default_factory=list)
    query: Dict[str, Any]
    results: SearchResponse


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


class SuggestRequest(BaseModel):
    q: str = Field(..., min_length=1, max_length=200)
    types: List[SuggestionType] = Field(default_factory=lambda: [SuggestionType.PRODUCTS])
    limit: int = Field(5, ge=1, le=20)
    fuzzy: bool = True
    fuzziness: str = "AUTO"
    spell_check: bool = False
    user_id: Optional[str] = None
    session_id: Optional[str] = None


class ProductSuggestion(BaseModel):
    text: str
    product_id: Optional[str] = None
    score: float = 0
    title: Optional[str] = None
    price: Optional[float] = None
    image: Optional[str] = None
    in_stock: Optional[bool] = None
    category: Optional[EntityRef] = None
    brand: Optional[EntityRef] = None


class CategorySuggestion(BaseModel):
    text: str
    category_id: Optional[str] = None
    name: Optional[str] = None
    path: str = ""
    level: int = 0
    product_count: int = 0


class BrandSuggestion(BaseModel):
    text: str
    brand_id: Optional[str] = None
    name: Optional[str] = None
    logo: Optional[str] = None
    product_count: int = 0
    is_featured: bool = False


class QuerySuggestion(BaseModel):
    text: str
    frequency: int = 0
    result_count: int = 0
    last_searched: Optional[str] = None


class SpellCorrection(BaseModel):
    original: str
    suggested: str
    confidence: float = 0
    frequency: int = 0


class SuggestResponse(BaseModel):
    query: str
    products: List[ProductSuggestion] = Field(default_factory=list)
    categories: List[CategorySuggestion] = Field(default_factory=list)
    brands: List[BrandSuggestion] = Field(default_factory=list)
    queries: List[QuerySuggestion] = Field(default_factory=list)
    corrections: List[SpellCorrection] = Field(default_factory=list)
    total_suggestions: int = 0
    took_ms: float = 0
    from_cache: bool = False


class AutocompleteSuggestion(BaseModel):
    text: str
    score: float = 0
    data: Dict[str, Any] = Field(default_factory=dict)


class AutocompleteResponse(BaseModel):
    query: str
    suggestions: List[AutocompleteSuggestion] = Field(default_factory=list)
    total: int = 0
    took_ms: float = 0
    from_cache: bool = False
