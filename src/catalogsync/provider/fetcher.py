"""
Page fetchers: two catalog retrieval strategies behind one interface.

    page = await fetcher.fetch_page(cursor)
    page.items                -> List[CatalogItem]
    page.related_variations   -> List[CatalogVariation] (listing strategy only)
    page.cursor               -> next cursor, None when the catalog is exhausted

Neither fetcher retries on its own; transient failures are absorbed by
BackoffHTTPClient. Everything else is re-raised as CatalogFetchError.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from catalogsync.errors import CatalogFetchError, ConfigurationError, ProviderHTTPError
from catalogsync.models.integration import CATALOG_MODE_LISTING, CATALOG_MODE_SEARCH
from catalogsync.provider.client import CatalogProviderClient
from catalogsync.provider.normalizer import (
    OBJECT_TYPE_ITEM,
    OBJECT_TYPE_VARIATION,
    CatalogItem,
    CatalogVariation,
    clean,
    embedded_variations,
    normalize_item,
    normalize_variation,
)

logger = logging.getLogger(__name__)


@dataclass
class CatalogPage:
    items: List[CatalogItem] = field(default_factory=list)
    related_variations: List[CatalogVariation] = field(default_factory=list)
    cursor: Optional[str] = None


class PageFetcher(Protocol):
    async def fetch_page(self, cursor: Optional[str]) -> CatalogPage:
        ...


class ListingPageFetcher:
    """Bulk listing: ITEM and ITEM_VARIATION objects arrive mixed in one page."""

    def __init__(self, client: CatalogProviderClient):
        self.client = client

    async def fetch_page(self, cursor: Optional[str]) -> CatalogPage:
        try:
            data = await self.client.list_catalog(cursor)
        except ProviderHTTPError as exc:
            raise CatalogFetchError.from_http_error(exc) from exc

        page = CatalogPage(cursor=clean(data.get("cursor")))
        seen_variations = set()
        for obj in data.get("objects") or []:
            kind = obj.get("type")
            if kind == OBJECT_TYPE_ITEM:
                item = normalize_item(obj)
                if item is None:
                    continue
                page.items.append(item)
                for variation in embedded_variations(obj):
                    if variation.external_id not in seen_variations:
                        seen_variations.add(variation.external_id)
                        page.related_variations.append(variation)
            elif kind == OBJECT_TYPE_VARIATION:
                variation = normalize_variation(obj)
                if variation is not None and variation.external_id not in seen_variations:
                    seen_variations.add(variation.external_id)
                    page.related_variations.append(variation)

        logger.debug(
            "Listing page: %d items, %d variations, more=%s",
            len(page.items), len(page.related_variations), bool(page.cursor),
        )
        return page


class SearchPageFetcher:
    """Filtered search: parent items only; variations are resolved separately."""

    def __init__(self, client: CatalogProviderClient, page_size: int = 100):
        self.client = client
        self.page_size = page_size

    async def fetch_page(self, cursor: Optional[str]) -> CatalogPage:
        try:
            data = await self.client.search_items(cursor, limit=self.page_size)
        except ProviderHTTPError as exc:
            raise CatalogFetchError.from_http_error(exc) from exc

        items = []
        for obj in data.get("objects") or []:
            if obj.get("type", OBJECT_TYPE_ITEM) != OBJECT_TYPE_ITEM:
                continue
            item = normalize_item(obj)
            if item is not None:
                items.append(item)
        return CatalogPage(items=items, related_variations=[], cursor=clean(data.get("cursor")))


def build_page_fetcher(mode: str, client: CatalogProviderClient, page_size: int) -> PageFetcher:
    """Select the retrieval strategy configured on the integration."""
    if mode == CATALOG_MODE_LISTING:
        return ListingPageFetcher(client)
    if mode == CATALOG_MODE_SEARCH:
        return SearchPageFetcher(client, page_size=page_size)
    raise ConfigurationError(f"Unknown catalog mode: {mode!r}")
