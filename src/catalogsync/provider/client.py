"""
Catalog provider API wrapper.

Thin async layer over BackoffHTTPClient exposing the provider endpoints the
import needs. Returns decoded JSON dicts; classification of failures is left
to BackoffHTTPClient (HTTP status) and the page fetchers (catalog semantics).
"""
from typing import Any, Dict, List, Optional, Sequence

from catalogsync.provider.http import BackoffHTTPClient

LIST_CATALOG_PATH = "/v2/catalog/list"
SEARCH_CATALOG_PATH = "/v2/catalog/search-catalog-objects"
BATCH_RETRIEVE_PATH = "/v2/catalog/batch-retrieve"
MERCHANT_ME_PATH = "/v2/merchants/me"
LOCATIONS_PATH = "/v2/locations"


class CatalogProviderClient:
    """Provider endpoints over a retrying HTTP client."""

    def __init__(self, http: BackoffHTTPClient):
        self.http = http

    async def list_catalog(
        self, cursor: Optional[str] = None, types: Sequence[str] = ("ITEM", "ITEM_VARIATION")
    ) -> Dict[str, Any]:
        """
        One page of the bulk listing endpoint (mixed object types).

        The list endpoint takes no page size; the provider fixes it server side,
        so import_page_size only applies to search_items.
        """
        params: Dict[str, Any] = {"types": ",".join(types)}
        if cursor:
            params["cursor"] = cursor
        resp = await self.http.call("GET", LIST_CATALOG_PATH, params=params, context="catalog list")
        return resp.json() or {}

    async def search_items(self, cursor: Optional[str] = None, limit: int = 100) -> Dict[str, Any]:
        """One page of ITEM objects from the search endpoint, without related objects."""
        body: Dict[str, Any] = {
            "object_types": ["ITEM"],
            "include_related_objects": False,
            "limit": limit,
        }
        if cursor:
            body["cursor"] = cursor
        resp = await self.http.call("POST", SEARCH_CATALOG_PATH, json=body, context="catalog search")
        return resp.json() or {}

    async def batch_retrieve(self, object_ids: List[str]) -> List[Dict[str, Any]]:
        """Retrieve catalog objects by id. Caller bounds the batch size."""
        resp = await self.http.call(
            "POST",
            BATCH_RETRIEVE_PATH,
            json={"object_ids": list(object_ids), "include_related_objects": False},
            context="catalog batch-retrieve",
        )
        return (resp.json() or {}).get("objects") or []

    async def retrieve_merchant(self) -> Dict[str, Any]:
        """Identity probe. Returns {merchant_id, business_name, country}."""
        resp = await self.http.call("GET", MERCHANT_ME_PATH, context="merchant identity")
        data = resp.json() or {}
        merchant = data.get("merchant") or (data.get("merchants") or [{}])[0]
        return {
            "merchant_id": merchant.get("id"),
            "business_name": merchant.get("business_name"),
            "country": merchant.get("country"),
        }

    async def list_locations(self) -> List[Dict[str, Any]]:
        resp = await self.http.call("GET", LOCATIONS_PATH, context="locations")
        return (resp.json() or {}).get("locations") or []

    async def aclose(self) -> None:
        await self.http.aclose()
