"""Terminal client that reuses the in-process search logic."""
from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Iterable, List, Optional

from catalog_search.aggregations import AggregationEngine
from catalog_search.analyzer import analyze_query, explain, performance_hints
from catalog_search.catalog import ElasticsearchCatalogStore
from catalog_search.config import settings
from catalog_search.connection import ConnectionManager
from catalog_search.errors import SearchError
from catalog_search.es_client import get_client
from catalog_search.models import SearchRequest, SearchResponse, StrategyComparison
from catalog_search.search_service import SearchOrchestrator

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
GREEN = "\033[92m"
RED = "\033[91m"
RESET = "\033[0m"


async def open_service() -> SearchOrchestrator:
    connection = ConnectionManager(get_client())
    await connection.start(monitor=False)
    return SearchOrchestrator(connection, AggregationEngine(ElasticsearchCatalogStore(connection)))


async def run_queries(service: Optional[SearchOrchestrator], queries: List[str], args: argparse.Namespace) -> None:
    for query in queries:
        if service is None:
            print_analysis(query)
            continue
        request = SearchRequest(q=query, limit=args.limit, facets=args.facets)
        try:
            if args.compare:
                pretty_print_comparison(await service.compare(request))
            else:
                pretty_print_response(query, await service.search(request))
        except SearchError as exc:
            print(f"{RED}{exc.error_type}: {exc.reason}{RESET}")


def print_analysis(query: str) -> None:
    analysis = analyze_query(query)
    request = SearchRequest(q=query)
    print(f"Query: {query}")
    print(f"  {explain(analysis, request)}")
    print(
        f"  recommended: {analysis.recommended_query_type.value}/{analysis.recommended_search_mode.value} "
        f"complexity={analysis.estimated_complexity} terms={analysis.term_count}"
    )
    for hint in performance_hints(analysis, request):
        print(f"  hint: {hint}")


async def interactive_shell(service: Optional[SearchOrchestrator], args: argparse.Namespace) -> None:
    print("Interactive product search. Type 'exit' to quit.")
    while True:
        try:
            query = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            return
        if not query:
            continue
        if query.lower() in {"exit", "quit"}:
            return
        await run_queries(service, [query], args)


def pretty_print_response(query: str, response: SearchResponse) -> None:
    products = response.hits.products
    eta = response.eta_ms
    color = GREEN if eta < 200 else RED
    eta_label = f"{color}{eta:.1f} ms{RESET}"
    cached = " (cached)" if response.from_cache else ""
    print(
        f"Query: {query} | results: {response.hits.total.value} | "
        f"page {response.pagination.current_page}/{response.pagination.total_pages} | ETA: {eta_label}{cached}"
    )
    for idx, item in enumerate(products, start=1):
        score_repr = f"{item.score:.2f}" if isinstance(item.score, (int, float)) else "-"
        brand = item.brand.name if item.brand else "-"
        print(f"  {idx:02d}. score={score_repr} | {brand} | {item.price} | {item.title}")
    if response.facets and response.facets.brands:
        top = ", ".join(f"{b.name} ({b.count})" for b in response.facets.brands[:5])
        print(f"  brands: {top}")


def pretty_print_comparison(comparison: StrategyComparison) -> None:
    print(f"Query: {comparison.query} | recommended: {GREEN}{comparison.recommended}{RESET}")
    by_name = {result.name: result for result in comparison.strategies}
    for name in comparison.ranking:
        result = by_name[name]
        status = f"{RED}{result.error}{RESET}" if result.error else f"hits={result.hits} max_score={result.max_score:.2f}"
        print(f"  {name:<22} took={result.took_ms:.0f}ms {status}")


def batch_mode(file_path: Path) -> List[str]:
    with file_path.open("r", encoding="utf-8") as fh:
        return [line.strip() for line in fh if line.strip()]


async def run_session(args: argparse.Namespace) -> None:
    """One connection for the whole session; ``--analyze`` never connects."""
    service = None if args.analyze else await open_service()
    try:
        if args.batch:
            await run_queries(service, batch_mode(args.batch), args)
        elif args.query:
            await run_queries(service, [args.query], args)
        else:
            await interactive_shell(service, args)
    finally:
        if service is not None:
            await service.connection.close()


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="CLI client for the catalog search service")
    parser.add_argument("query", nargs="?", help="Query string. If omitted, starts REPL mode.")
    parser.add_argument("--batch", type=Path, help="File with queries to execute line by line")
    parser.add_argument("--limit", type=int, default=settings.default_page_size, help="Results per query")
    parser.add_argument("--facets", action="store_true", help="Include facet counts")
    parser.add_argument("--analyze", action="store_true", help="Only analyze the query, do not search")
    parser.add_argument("--compare", action="store_true", help="Compare search strategies for the query")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(level=args.log_level.upper(), format=LOG_FORMAT, force=True)
    logging.getLogger("elastic_transport").setLevel(args.log_level.upper())

    try:
        asyncio.run(run_session(args))
    except SearchError as exc:
        print(f"{RED}{exc.error_type}: {exc.reason}{RESET}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
