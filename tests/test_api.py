"""HTTP surface: routing, parameter parsing and the error envelope."""

import pytest
from conftest import FakeConnection, FakeElasticsearch, RecordingSleep, product_hit, search_response
from fastapi.testclient import TestClient

from catalog_search import main
from catalog_search.aggregations import AggregationEngine
from catalog_search.cache import InMemoryCache
from catalog_search.connection import ConnectionManager
from catalog_search.main import app, get_connection, get_search_service, get_suggestion_engine
from catalog_search.search_service import SearchOrchestrator
from catalog_search.suggestions import SuggestionEngine


def products(operation, params):
    body = params.get("body") or {}
    if "suggest" in body:
        return {"suggest": {"product_suggest": [{"text": "lap", "options": [{"text": "Laptop", "_score": 2.0, "_source": {"id": "p1"}}]}]}}
    return search_response(
        [product_hit("p1", "Laptop Pro 14", 2.5)],
        aggregations={"price_ranges": {"buckets": [{"key": "0-25", "to": 25.0, "doc_count": 0}, {"key": "25-50", "from": 25.0, "to": 50.0, "doc_count": 1}]}},
    )


@pytest.fixture
def connection():
    return FakeConnection(products)


@pytest.fixture
def client(connection, make_service, config):
    app.dependency_overrides[get_search_service] = lambda: make_service(connection)
    app.dependency_overrides[get_suggestion_engine] = lambda: SuggestionEngine(connection, InMemoryCache(), config)
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_get_search_parses_csv_filters(client, connection):
    response = client.get("/search", params={"q": "laptop", "category": "c1, c2", "brand": "b1", "in_stock": "true"})

    assert response.status_code == 200
    data = response.json()
    assert data["hits"]["products"][0]["id"] == "p1"
    assert data["query_info"]["filters_applied"] == ["category", "brand", "stock"]
    filters = connection.bodies()[0]["query"]["function_score"]["query"]["bool"]["filter"]
    assert filters


def test_post_search_accepts_json_body(client):
    response = client.post("/search", json={"q": "laptop", "category": ["c1"], "limit": 5})

    assert response.status_code == 200
    assert response.json()["pagination"]["per_page"] == 5


def test_out_of_range_limit_is_rejected(client):
    response = client.get("/search", params={"q": "laptop", "limit": 500})

    assert response.status_code == 422


def test_invalid_strategy_options_use_error_envelope(client):
    response = client.post("/search", json={"q": "usb cable", "proximity": 20})

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["type"] == "validation_error"
    assert error["status"] == 400
    assert error["errors"]


def test_unavailable_backend_returns_503(client, config, catalog):
    manager = ConnectionManager(FakeElasticsearch(), config, sleep=RecordingSleep())
    app.dependency_overrides[get_search_service] = lambda: SearchOrchestrator(manager, AggregationEngine(catalog), config=config)

    response = client.get("/search", params={"q": "laptop"})

    assert response.status_code == 503
    assert response.json()["error"]["type"] == "backend_unavailable"
    assert response.json()["error"]["status"] == 503


def test_facets_serialize_range_bounds_as_from(client):
    response = client.post("/search/facets", json={"q": "laptop"})

    assert response.status_code == 200
    ranges = response.json()["facets"]["price_ranges"]
    assert ranges[1]["from"] == 25.0
    assert ranges[1]["label"] == "$25 - $50"
    assert "from_" not in ranges[1]


def test_validate_reports_errors_without_searching(client, connection):
    response = client.post("/query/validate", json={"q": "laptop", "price_min": 100, "price_max": 10})

    assert response.status_code == 200
    assert response.json()["is_valid"] is False
    assert connection.calls == []


def test_analyze_endpoint(client):
    response = client.get("/query/analyze", params={"q": '"red shoes"'})

    assert response.status_code == 200
    assert response.json()["is_phrase"] is True
    assert response.json()["recommended_query_type"] == "phrase"


def test_suggest_splits_types(client):
    response = client.get("/suggest", params={"q": "lap", "types": "products"})

    assert response.status_code == 200
    data = response.json()
    assert data["products"][0]["text"] == "Laptop"
    assert data["total_suggestions"] == 1


def test_suggest_rejects_unknown_type(client):
    response = client.get("/suggest", params={"q": "lap", "types": "products,planets"})

    assert response.status_code == 422


def test_autocomplete_size_is_bounded(client):
    assert client.get("/autocomplete", params={"q": "lap", "size": 50}).status_code == 422


def test_health_and_connection_status(config):
    manager = ConnectionManager(FakeElasticsearch({"cluster.health": {"status": "yellow"}}), config, sleep=RecordingSleep())
    app.dependency_overrides[get_connection] = lambda: manager
    try:
        client = TestClient(app)
        health = client.get("/health").json()
        status = client.get("/connection/status").json()
    finally:
        app.dependency_overrides.clear()

    assert health["status"] == "degraded"
    assert health["connection"] is True
    assert health["index"] == config.products_index
    assert status["status"] == "degraded"
    assert status["cluster_status"] == "yellow"


def test_serve_runs_the_app_under_uvicorn(monkeypatch):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))

    main.serve()

    target, kwargs = calls[0]
    assert target == "catalog_search.main:app"
    assert kwargs["port"] == main.settings.api_port
