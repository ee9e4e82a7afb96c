"""Variation resolver: attach child variations to the parent items of a page."""
import logging
from typing import Dict, Iterator, List, Sequence

from catalogsync.errors import CatalogFetchError, ProviderHTTPError
from catalogsync.provider.client import CatalogProviderClient
from catalogsync.provider.fetcher import CatalogPage
from catalogsync.provider.normalizer import (
    OBJECT_TYPE_VARIATION,
    CatalogItem,
    CatalogVariation,
    normalize_variation,
)

logger = logging.getLogger(__name__)


def chunked(values: Sequence[str], size: int) -> Iterator[List[str]]:
    """Yield consecutive slices of at most `size` values."""
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    for start in range(0, len(values), size):
        yield list(values[start:start + size])


def group_by_item(
    items: Sequence[CatalogItem], variations: Sequence[CatalogVariation]
) -> Dict[str, List[CatalogVariation]]:
    """
    Group variations under their parent item id.

    Within a group, variations follow the order the item lists them in;
    variations the item does not list keep their arrival order after those.
    """
    by_parent: Dict[str, List[CatalogVariation]] = {}
    for variation in variations:
        if variation.item_id:
            by_parent.setdefault(variation.item_id, []).append(variation)

    for item in items:
        group = by_parent.get(item.external_id)
        if not group or not item.variation_ids:
            continue
        rank = {vid: i for i, vid in enumerate(item.variation_ids)}
        group.sort(key=lambda v: rank.get(v.external_id, len(rank)))
    return by_parent


class VariationResolver:
    """
    Resolves the variations for a page of items.

    Listing pages carry the variations the provider put on the same page.
    Ids an item lists that are not among them (search pages, or a listing
    page that split an item from its variations) are retrieved in batches of
    at most `batch_size`. Variations whose parent item is not on the page
    are dropped with a warning.
    """

    def __init__(self, client: CatalogProviderClient, batch_size: int = 100):
        self.client = client
        self.batch_size = batch_size

    async def resolve(self, page: CatalogPage) -> Dict[str, List[CatalogVariation]]:
        present = {v.external_id for v in page.related_variations}
        wanted: List[str] = []
        parent_of: Dict[str, str] = {}
        for item in page.items:
            for vid in item.variation_ids:
                if vid not in present and vid not in parent_of:
                    parent_of[vid] = item.external_id
                    wanted.append(vid)

        fetched = await self._retrieve(wanted, parent_of) if wanted else []
        grouped = group_by_item(page.items, list(page.related_variations) + fetched)

        on_page = {item.external_id for item in page.items}
        for parent_id in [p for p in grouped if p not in on_page]:
            orphans = grouped.pop(parent_id)
            logger.warning(
                "Dropping %d variation(s) of item %s, which is not on this page: %s",
                len(orphans), parent_id, ", ".join(v.external_id for v in orphans),
            )
        return grouped

    async def _retrieve(
        self, wanted: List[str], parent_of: Dict[str, str]
    ) -> List[CatalogVariation]:
        fetched: List[CatalogVariation] = []
        for chunk in chunked(wanted, self.batch_size):
            try:
                objects = await self.client.batch_retrieve(chunk)
            except ProviderHTTPError as exc:
                raise CatalogFetchError.from_http_error(exc) from exc
            for obj in objects:
                if obj.get("type") != OBJECT_TYPE_VARIATION:
                    continue
                variation = normalize_variation(obj)
                if variation is not None:
                    if variation.item_id is None:
                        variation.item_id = parent_of.get(variation.external_id)
                    fetched.append(variation)

        logger.debug(
            "Resolved %d/%d variations in %d batch(es)",
            len(fetched), len(wanted), -(-len(wanted) // self.batch_size),
        )
        return fetched
