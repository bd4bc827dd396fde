"""Query analysis, validation and strategy comparison."""

import pytest
from conftest import FakeConnection, search_response

from catalog_search.analyzer import (
    DEFAULT_STRATEGY,
    STRATEGIES,
    analyze_query,
    compare_strategies,
    explain,
    optimize_request,
    performance_hints,
    validate_and_optimize,
)
from catalog_search.errors import BackendConnectionError
from catalog_search.models import QueryType, SearchMode, SearchRequest


@pytest.mark.parametrize(
    "text,complexity,query_type,mode",
    [
        ("gaming laptop", "low", QueryType.MULTI_MATCH, SearchMode.STANDARD),
        ("laptop", "low", QueryType.PREFIX, SearchMode.STANDARD),
        ("cheap gaming laptop", "medium", QueryType.MULTI_MATCH, SearchMode.STANDARD),
        ('"red running shoes"', "medium", QueryType.PHRASE, SearchMode.STRICT),
        ("+laptop -refurbished", "high", QueryType.BOOLEAN, SearchMode.RELAXED),
        ("laptop AND mouse", "high", QueryType.BOOLEAN, SearchMode.RELAXED),
        ("lap*", "high", QueryType.WILDCARD, SearchMode.RELAXED),
        ("a b c d e f", "high", QueryType.MULTI_MATCH, SearchMode.RELAXED),
    ],
)
def test_analyze_query(text, complexity, query_type, mode):
    analysis = analyze_query(text)

    assert analysis.estimated_complexity == complexity
    assert analysis.recommended_query_type is query_type
    assert analysis.recommended_search_mode is mode


def test_hyphenated_words_are_not_boolean_operators():
    analysis = analyze_query("t-shirt")

    assert not analysis.has_boolean_operators
    assert analysis.recommended_query_type is QueryType.PREFIX


def test_empty_query_has_default_analysis():
    analysis = analyze_query("")

    assert analysis.term_count == 0
    assert analysis.recommended_query_type is QueryType.MULTI_MATCH


def test_optimize_fills_only_missing_strategy_and_mode():
    filled = optimize_request(SearchRequest(q="laptop"))
    kept = optimize_request(SearchRequest(q="laptop", query_type=QueryType.FUZZY, search_mode=SearchMode.STRICT))

    assert (filled.query_type, filled.search_mode, filled.fuzzy) == (QueryType.PREFIX, SearchMode.STANDARD, True)
    assert (kept.query_type, kept.search_mode) == (QueryType.FUZZY, SearchMode.STRICT)


def test_validation_errors_for_out_of_range_values():
    report = validate_and_optimize(SearchRequest(q="x" * 1001, proximity=11, minimum_should_match=5))

    assert not report.is_valid
    assert len(report.errors) == 3


def test_fuzzy_phrase_is_disabled_with_warning():
    report = validate_and_optimize(SearchRequest(q="usb cable", query_type=QueryType.PHRASE, fuzzy=True))

    assert report.is_valid
    assert report.optimized_request.fuzzy is False
    assert any("phrase" in w for w in report.warnings)


def test_empty_query_with_specific_strategy_resets_to_multi_match():
    report = validate_and_optimize(SearchRequest(query_type=QueryType.FUZZY, limit=60, proximity=2))

    assert report.optimized_request.query_type is QueryType.MULTI_MATCH
    assert len(report.warnings) == 3


def test_explanation_and_hints():
    request = SearchRequest(q="+laptop -refurbished lap*", fuzzy=True, limit=60)
    analysis = analyze_query(request.q)

    text = explain(analysis, request)
    hints = performance_hints(analysis, request)

    assert text.startswith("Query complexity: high")
    assert "boolean" in text
    assert "Use pagination for large result sets" in hints
    assert any("Wildcard" in h for h in hints)


def _strategy_handler(outcomes):
    """One outcome per strategy, in STRATEGIES order, repeating across runs."""
    calls = {"n": 0}

    def handler(operation, params):
        outcome = outcomes[calls["n"] % len(outcomes)]
        calls["n"] += 1
        return outcome

    return handler


OUTCOMES = [
    search_response([{"_id": "1", "_score": 5.0, "_source": {}}], total=12, took=3),
    search_response([{"_id": "1", "_score": 8.0, "_source": {}}], total=4, took=5),
    BackendConnectionError("node dropped"),
    search_response([{"_id": "1", "_score": 8.0, "_source": {}}], total=2, took=2),
    search_response([], total=0, took=1),
    search_response([{"_id": "1", "_score": 5.0, "_source": {}}], total=12, took=3),
]


@pytest.mark.asyncio
async def test_compare_ranks_by_score_then_latency_then_fixed_order(config):
    connection = FakeConnection(_strategy_handler(OUTCOMES))

    comparison = await compare_strategies(connection, SearchRequest(q="gaming laptop", limit=50, facets=True), config)

    assert [s.name for s in comparison.strategies] == [name for name, _, _ in STRATEGIES]
    assert comparison.ranking == [
        "Phrase Search",
        "Strict Multi-Match",
        "Standard Multi-Match",
        "Boolean Search",
        "Relaxed Multi-Match",
        "Fuzzy Search",
    ]
    assert comparison.recommended == "Phrase Search"
    failed = comparison.strategies[2]
    assert (failed.took_ms, failed.hits, failed.error) == (-1, 0, "node dropped")
    for body in connection.bodies():
        assert body["size"] == 5
        assert body["_source"] == ["id", "title"]
        assert "aggs" not in body


@pytest.mark.asyncio
async def test_compare_is_idempotent_for_fixed_backend_state(config):
    connection = FakeConnection(_strategy_handler(OUTCOMES))
    request = SearchRequest(q="gaming laptop")

    first = await compare_strategies(connection, request, config)
    second = await compare_strategies(connection, request, config)

    assert first == second


@pytest.mark.asyncio
async def test_compare_recommends_default_when_nothing_matches(config):
    connection = FakeConnection(lambda operation, params: BackendConnectionError("down"))

    comparison = await compare_strategies(connection, SearchRequest(q="gaming laptop"), config)

    assert comparison.recommended == DEFAULT_STRATEGY
    assert all(s.error == "down" for s in comparison.strategies)
