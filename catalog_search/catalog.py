"""Read-only catalog lookups used to enrich facet buckets.

Only batch lookups exist: callers pass every bucket id at once and get a
mapping back, so facet enrichment is one round trip per entity kind.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Protocol

from .config import Settings, settings as default_settings

if TYPE_CHECKING:
    from .connection import ConnectionManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    name: str
    slug: Optional[str] = None
    parent_id: Optional[str] = None
    path: Optional[str] = None
    level: int = 0
    logo: Optional[str] = None


class CatalogStore(Protocol):
    async def get_categories(self, ids: List[str]) -> Dict[str, CatalogEntry]: ...

    async def get_brands(self, ids: List[str]) -> Dict[str, CatalogEntry]: ...


def _entry_from_source(doc_id: str, source: dict) -> CatalogEntry:
    parent = source.get("parent")
    parent_id = source.get("parent_id") or (parent.get("id") if isinstance(parent, dict) else None)
    return CatalogEntry(
        id=str(source.get("id") or doc_id),
        name=source.get("name") or str(doc_id),
        slug=source.get("slug"),
        parent_id=parent_id,
        path=source.get("path"),
        level=int(source.get("level") or 0),
        logo=source.get("logo"),
    )


class ElasticsearchCatalogStore:
    """Looks categories/brands up in their own indices with a single ``mget``."""

    def __init__(self, connection: "ConnectionManager", config: Settings = default_settings) -> None:
        self._connection = connection
        self._settings = config

    async def _mget(self, index: str, ids: List[str]) -> Dict[str, CatalogEntry]:
        unique = sorted({str(i) for i in ids if i})
        if not unique:
            return {}
        response = await self._connection.execute(
            "mget",
            {"index": index, "ids": unique, "source_includes": ["id", "name", "slug", "parent_id", "parent", "path", "level", "logo"]},
            mark_unavailable=False,
        )
        entries: Dict[str, CatalogEntry] = {}
        for doc in response.get("docs", []):
            if not doc.get("found"):
                continue
            entry = _entry_from_source(doc["_id"], doc.get("_source") or {})
            entries[entry.id] = entry
        logger.debug("catalog lookup index=%s requested=%s found=%s", index, len(unique), len(entries))
        return entries

    async def get_categories(self, ids: List[str]) -> Dict[str, CatalogEntry]:
        return await self._mget(self._settings.categories_index, ids)

    async def get_brands(self, ids: List[str]) -> Dict[str, CatalogEntry]:
        return await self._mget(self._settings.brands_index, ids)


class InMemoryCatalogStore:
    def __init__(self, categories: Iterable[CatalogEntry] = (), brands: Iterable[CatalogEntry] = ()) -> None:
        self._categories = {entry.id: entry for entry in categories}
        self._brands = {entry.id: entry for entry in brands}

    async def get_categories(self, ids: List[str]) -> Dict[str, CatalogEntry]:
        return {i: self._categories[i] for i in ids if i in self._categories}

    async def get_brands(self, ids: List[str]) -> Dict[str, CatalogEntry]:
        return {i: self._brands[i] for i in ids if i in self._brands}
