"""Connection lifecycle, health mapping and retry policy."""

from dataclasses import replace

import pytest
from conftest import FakeElasticsearch, RecordingSleep, api_error, search_response
from elasticsearch import ConnectionError as ESConnectionError
from elasticsearch import ConnectionTimeout

from catalog_search.connection import (
    ConnectionManager,
    ConnectionState,
    ConnectionStatus,
    HealthStatus,
    is_retryable,
    is_transport_failure,
    wrap_error,
)
from catalog_search.errors import BackendConnectionError, BackendQueryError, BackendStartupError


def manager_for(es, config, sleep=None):
    return ConnectionManager(es, config, sleep=sleep or RecordingSleep())


@pytest.mark.asyncio
async def test_startup_gives_up_after_max_attempts_with_increasing_capped_delays(config):
    es = FakeElasticsearch({"ping": ESConnectionError("connection refused")})
    sleep = RecordingSleep()
    manager = manager_for(es, config, sleep)

    with pytest.raises(BackendStartupError):
        await manager.start(monitor=False)

    assert es.count("ping") == 3
    assert sleep.delays == [1.0, 2.0]
    assert all(a < b for a, b in zip(sleep.delays, sleep.delays[1:]))
    assert all(d <= config.retry_max_delay for d in sleep.delays)
    assert manager.state.status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_false_ping_counts_as_a_failed_attempt(config):
    es = FakeElasticsearch({"ping": False})
    manager = manager_for(es, config)

    with pytest.raises(BackendStartupError):
        await manager.start(monitor=False)

    assert es.count("ping") == 3


@pytest.mark.asyncio
async def test_non_retryable_startup_error_fails_immediately(config):
    es = FakeElasticsearch({"ping": api_error(401, "security_exception", "unauthorized")})
    sleep = RecordingSleep()
    manager = manager_for(es, config, sleep)

    with pytest.raises(BackendStartupError):
        await manager.start(monitor=False)

    assert es.count("ping") == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_startup_recovers_after_transient_failure(config):
    es = FakeElasticsearch({"ping": [ConnectionTimeout("timed out"), True]})
    manager = manager_for(es, config)

    state = await manager.start(monitor=False)

    assert state.status is ConnectionStatus.CONNECTED
    assert state.health is HealthStatus.HEALTHY
    assert state.last_health_check is not None


def test_backoff_is_capped(config):
    manager = manager_for(FakeElasticsearch(), replace(config, retry_max_delay=5.0))

    assert [manager.backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "cluster,status,health",
    [
        ("green", ConnectionStatus.CONNECTED, HealthStatus.HEALTHY),
        ("yellow", ConnectionStatus.DEGRADED, HealthStatus.DEGRADED),
        ("red", ConnectionStatus.DEGRADED, HealthStatus.UNHEALTHY),
    ],
)
async def test_cluster_color_maps_to_health(config, cluster, status, health):
    es = FakeElasticsearch({"cluster.health": {"status": cluster}})
    manager = manager_for(es, config)

    await manager.start(monitor=False)

    assert manager.state.status is status
    assert manager.state.health is health
    assert manager.state.accepts_queries is (health is not HealthStatus.UNHEALTHY)


@pytest.mark.asyncio
async def test_execute_retries_transient_errors_then_succeeds(config):
    es = FakeElasticsearch({"search": [ConnectionTimeout("timed out"), search_response(took=4)]})
    sleep = RecordingSleep()
    manager = manager_for(es, config, sleep)
    await manager.start(monitor=False)

    result = await manager.execute("search", {"index": "products", "body": {}})

    assert result["took"] == 4
    assert es.count("search") == 2
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_execute_never_retries_query_errors(config):
    es = FakeElasticsearch({"search": api_error(400, "parsing_exception", "unknown query [matchx]")})
    manager = manager_for(es, config)
    await manager.start(monitor=False)

    with pytest.raises(BackendQueryError) as excinfo:
        await manager.execute("search", {"index": "products", "body": {}})

    assert es.count("search") == 1
    assert excinfo.value.error_type == "parsing_exception"
    assert excinfo.value.reason == "unknown query [matchx]"
    assert excinfo.value.status == 400
    assert excinfo.value.root_cause[0]["type"] == "parsing_exception"
    assert manager.state.status is ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_execute_gives_up_and_marks_disconnected(config):
    es = FakeElasticsearch({"search": ESConnectionError("connection reset")})
    sleep = RecordingSleep()
    manager = manager_for(es, config, sleep)
    await manager.start(monitor=False)

    with pytest.raises(BackendConnectionError):
        await manager.execute("search", {"index": "products", "body": {}})

    assert es.count("search") == 3
    assert sleep.delays == [1.0, 2.0]
    assert manager.state.status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_api_error_responses_leave_the_connection_up(config):
    es = FakeElasticsearch({"search": [api_error(503, "unavailable_shards_exception", "no shards"), search_response(took=2)]})
    manager = manager_for(es, config)
    await manager.start(monitor=False)

    with pytest.raises(BackendConnectionError):
        await manager.execute("search", {"index": "products", "body": {}})

    assert manager.state.status is ConnectionStatus.CONNECTED
    assert (await manager.execute("search", {"index": "products", "body": {}}))["took"] == 2


@pytest.mark.asyncio
async def test_best_effort_calls_do_not_mark_backend_unavailable(config):
    es = FakeElasticsearch({"index": ESConnectionError("connection reset")})
    manager = manager_for(es, config)
    await manager.start(monitor=False)

    with pytest.raises(BackendConnectionError):
        await manager.execute("index", {"index": "search_analytics", "document": {}}, attempts=1, mark_unavailable=False)

    assert manager.state.status is ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_execute_fails_fast_when_disconnected(config):
    es = FakeElasticsearch()
    manager = manager_for(es, config)

    with pytest.raises(BackendConnectionError) as excinfo:
        await manager.execute("search", {"index": "products"})

    assert excinfo.value.error_type == "backend_unavailable"
    assert es.count("search") == 0


@pytest.mark.asyncio
async def test_execute_rejects_unknown_operations(config):
    manager = manager_for(FakeElasticsearch(), config)
    await manager.start(monitor=False)

    with pytest.raises(BackendQueryError):
        await manager.execute("does.not.exist")


@pytest.mark.asyncio
async def test_poll_reconnects_a_disconnected_manager(config):
    es = FakeElasticsearch({"cluster.health": [RuntimeError("down"), {"status": "green"}]})
    manager = manager_for(es, config)
    await manager.start(monitor=False)
    assert manager.state.status is ConnectionStatus.DISCONNECTED

    state = await manager.poll_once()

    assert state.status is ConnectionStatus.CONNECTED
    assert manager.status()["connection"] is True


@pytest.mark.asyncio
async def test_index_health_reports_missing_index(config):
    es = FakeElasticsearch({"cluster.health": {"status": "green", "indices": {"products": {"status": "yellow"}}}})
    manager = manager_for(es, config)
    await manager.start(monitor=False)

    assert (await manager.index_health("products"))["status"] == "yellow"
    with pytest.raises(BackendQueryError):
        await manager.index_health("missing")


@pytest.mark.asyncio
async def test_close_disconnects_and_closes_client(config):
    es = FakeElasticsearch()
    manager = manager_for(es, config)
    await manager.start(monitor=False)

    await manager.close()

    assert es.closed
    assert manager.state.status is ConnectionStatus.DISCONNECTED


def test_transport_failures_are_told_apart_from_api_errors():
    assert is_transport_failure(ESConnectionError("refused"))
    assert is_transport_failure(ConnectionTimeout("t"))
    assert not is_transport_failure(api_error(503, "unavailable_shards_exception"))
    assert not is_transport_failure(api_error(500, "internal_error"))


def test_retryable_classification():
    assert is_retryable(ConnectionTimeout("t"))
    assert is_retryable(ESConnectionError("refused"))
    assert is_retryable(api_error(504, "gateway_timeout"))
    assert not is_retryable(api_error(400, "parsing_exception"))
    assert not is_retryable(api_error(404, "index_not_found_exception"))
    assert not is_retryable(ValueError("bad"))


def test_wrap_error_keeps_backend_details():
    error = wrap_error(api_error(404, "index_not_found_exception", "no such index [products]"))

    assert isinstance(error, BackendQueryError)
    assert error.to_dict()["type"] == "index_not_found_exception"
    assert error.to_dict()["status"] == 404


def test_state_snapshot_is_immutable():
    state = ConnectionState()

    with pytest.raises(Exception):
        state.status = ConnectionStatus.CONNECTED
    assert state.health is HealthStatus.UNHEALTHY
