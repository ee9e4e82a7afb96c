"""
Capture real provider catalog responses and save them as test fixtures.

Run this script on a machine with a configured integration:

    python scripts/capture_fixtures.py INTEGRATION_ID [--limit 5]

Outputs (overwrite tests/fixtures/):
    catalog_list_page.json       — first page of GET /v2/catalog/list
    catalog_search_page.json     — first page of POST /v2/catalog/search-catalog-objects
    catalog_batch_retrieve.json  — variations of the first search page items

These fixtures are used by the normalizer and fetcher tests to ensure they
handle real API response schemas, not hand-crafted guesses.
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

# Allow running from repo root without installing the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from catalogsync.config import get_settings
from catalogsync.db.engine import get_engine
from catalogsync.errors import CatalogSyncError
from catalogsync.provider.credentials import CredentialStore
from catalogsync.provider.http import BackoffHTTPClient
from catalogsync.provider.normalizer import normalize_item


FIXTURES_DIR = Path(__file__).parent.parent / "tests" / "fixtures"


def _save(name: str, data: object) -> None:
    FIXTURES_DIR.mkdir(parents=True, exist_ok=True)
    path = FIXTURES_DIR / name
    path.write_text(json.dumps(data, indent=2, default=str))
    print(f"  ✅ Saved {path} ({path.stat().st_size} bytes)")


async def _capture(integration_id: int, limit: int) -> None:
    engine = get_engine()
    try:
        creds = CredentialStore(engine).get(integration_id)
    except CatalogSyncError as exc:
        print(f"❌ {exc}")
        sys.exit(1)

    settings = get_settings()
    http = BackoffHTTPClient(
        creds.base_url, creds.access_token, api_version=settings.provider_api_version
    )
    print(f"🔑 Connecting to {creds.base_url} ({creds.environment}, {creds.masked_token})\n")

    try:
        print("💾 Saving fixtures...")
        print("   Fetching catalog list...")
        listing = (await http.call(
            "GET", "/v2/catalog/list", params={"types": "ITEM,ITEM_VARIATION"}, context="list"
        )).json()
        _save("catalog_list_page.json", listing)

        print("   Fetching catalog search...")
        search = (await http.call(
            "POST",
            "/v2/catalog/search-catalog-objects",
            json={"object_types": ["ITEM"], "include_related_objects": False, "limit": limit},
            context="search",
        )).json()
        _save("catalog_search_page.json", search)

        ids = []
        for obj in search.get("objects") or []:
            ids.extend(normalize_item(obj).variation_ids)
        if ids:
            print(f"   Fetching {len(ids)} variations...")
            batch = (await http.call(
                "POST", "/v2/catalog/batch-retrieve", json={"object_ids": ids}, context="batch"
            )).json()
            _save("catalog_batch_retrieve.json", batch)
    finally:
        await http.aclose()

    print("\n⚠️  Check the saved files for merchant data before committing.\n")


def main() -> None:
    parser = argparse.ArgumentParser(description="Capture real provider catalog fixtures")
    parser.add_argument("integration_id", type=int)
    parser.add_argument("--limit", type=int, default=5, help="Items per search page")
    args = parser.parse_args()
    asyncio.run(_capture(args.integration_id, args.limit))


if __name__ == "__main__":
    main()
