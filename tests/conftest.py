"""Shared test fixtures."""
import json
from typing import Any, Dict, Generator, List, Optional

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from catalogsync.config import Settings
# Import all models so SQLModel.metadata knows about them
from catalogsync.models.import_run import ImportRun  # noqa: F401
from catalogsync.models.integration import CATALOG_MODE_SEARCH, Integration
from catalogsync.models.product import Product, ProductLink  # noqa: F401
from catalogsync.provider.credentials import encrypt_token

TEST_SECRET = "test-credentials-secret"
TEST_TOKEN = "EAAAl-test-access-token-1234"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    """Settings isolated from any .env file on the machine."""
    return Settings(_env_file=None, credentials_secret=TEST_SECRET)


def _make_integration(engine, **overrides) -> Integration:
    values = dict(
        name="Main store",
        source="SQUARE",
        catalog_mode=CATALOG_MODE_SEARCH,
        environment="PRODUCTION",
        encrypted_access_token=encrypt_token(TEST_TOKEN, TEST_SECRET),
    )
    values.update(overrides)
    with Session(engine) as s:
        integration = Integration(**values)
        s.add(integration)
        s.commit()
        s.refresh(integration)
        return integration


@pytest.fixture(name="integration")
def integration_fixture(engine) -> Integration:
    """A persisted search-mode integration with a valid encrypted token."""
    return _make_integration(engine)


@pytest.fixture(name="make_integration")
def make_integration_fixture(engine):
    """Factory for integrations with custom fields."""
    def make(**overrides) -> Integration:
        return _make_integration(engine, **overrides)
    return make


# ─── Fake provider ────────────────────────────────────────────────────────────

class FakeClock:
    """Monotonic clock that advances `step` seconds on every read."""

    def __init__(self, start: float = 0.0, step: float = 0.0):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


class FakeCatalogProvider:
    """
    In-memory catalog API served through httpx.MockTransport.

    Pages are keyed by the cursor that requests them (None for the first
    page). Responses queued per path in `queued` are served before the
    normal handling, e.g. to inject 429s.
    """

    def __init__(self):
        self.search_pages: Dict[Optional[str], Dict[str, Any]] = {}
        self.list_pages: Dict[Optional[str], Dict[str, Any]] = {}
        self.variations: Dict[str, Dict[str, Any]] = {}
        self.merchant = {"merchant": {"id": "MLR1", "business_name": "Corner Shop", "country": "US"}}
        self.locations = [{"id": "L1", "name": "Main", "status": "ACTIVE"}]
        self.queued: Dict[str, List[httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    # ── catalog builders ──

    def variation(
        self,
        variation_id: str,
        item_id: str,
        name: Optional[str] = None,
        sku: Optional[str] = None,
        upc: Optional[str] = None,
        price: Optional[int] = None,
    ) -> Dict[str, Any]:
        data: Dict[str, Any] = {"item_id": item_id}
        if name is not None:
            data["name"] = name
        if sku is not None:
            data["sku"] = sku
        if upc is not None:
            data["upc"] = upc
        if price is not None:
            data["price_money"] = {"amount": price, "currency": "USD"}
        obj = {"type": "ITEM_VARIATION", "id": variation_id, "item_variation_data": data}
        self.variations[variation_id] = obj
        return obj

    def item(self, item_id: str, name: str, variations=()) -> Dict[str, Any]:
        """ITEM object whose variations are listed by id only (search shape)."""
        return {
            "type": "ITEM",
            "id": item_id,
            "item_data": {"name": name, "variations": [{"id": v["id"]} for v in variations]},
        }

    def add_search_page(self, cursor: Optional[str], objects, next_cursor: Optional[str] = None) -> None:
        page: Dict[str, Any] = {"objects": list(objects)}
        if next_cursor:
            page["cursor"] = next_cursor
        self.search_pages[cursor] = page

    def add_list_page(self, cursor: Optional[str], objects, next_cursor: Optional[str] = None) -> None:
        page: Dict[str, Any] = {"objects": list(objects)}
        if next_cursor:
            page["cursor"] = next_cursor
        self.list_pages[cursor] = page

    def build_catalog(self, pages: int, items_per_page: int, cursor_prefix: str = "page-") -> None:
        """`pages` search pages of items with one variation each."""
        for p in range(1, pages + 1):
            objects = []
            for i in range(items_per_page):
                key = f"{p}-{i}"
                variation = self.variation(
                    f"V{key}", f"I{key}", name=f"Product {key}", sku=f"SKU-{key}",
                    upc=f"0001{p:03d}{i:03d}", price=100 * p + i,
                )
                objects.append(self.item(f"I{key}", f"Product {key}", [variation]))
            cursor = None if p == 1 else f"{cursor_prefix}{p}"
            next_cursor = f"{cursor_prefix}{p + 1}" if p < pages else None
            self.add_search_page(cursor, objects, next_cursor)

    # ── request inspection ──

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def search_cursors(self) -> List[Optional[str]]:
        return [
            json.loads(r.content or b"{}").get("cursor")
            for r in self.calls("/v2/catalog/search-catalog-objects")
        ]

    # ── transport ──

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        queued = self.queued.get(path)
        if queued:
            return queued.pop(0)

        if path == "/v2/merchants/me":
            return httpx.Response(200, json=self.merchant)
        if path == "/v2/locations":
            return httpx.Response(200, json={"locations": self.locations})
        if path == "/v2/catalog/search-catalog-objects":
            body = json.loads(request.content or b"{}")
            return self._page(self.search_pages, body.get("cursor"))
        if path == "/v2/catalog/list":
            return self._page(self.list_pages, request.url.params.get("cursor"))
        if path == "/v2/catalog/batch-retrieve":
            ids = json.loads(request.content or b"{}").get("object_ids") or []
            objects = [self.variations[i] for i in ids if i in self.variations]
            return httpx.Response(200, json={"objects": objects})
        return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND"}]})

    @staticmethod
    def _page(pages, cursor):
        page = pages.get(cursor)
        if page is None:
            return httpx.Response(400, json={"errors": [{"code": "INVALID_CURSOR", "detail": cursor}]})
        return httpx.Response(200, json=page)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture(name="provider")
def provider_fixture() -> FakeCatalogProvider:
    return FakeCatalogProvider()


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()
