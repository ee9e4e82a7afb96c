"""Local product records and their links to provider catalog objects."""
from datetime import datetime
from typing import Optional

from sqlalchemy import Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

SYNC_STATE_SYNCHRONIZED = "synchronized"

# Standalone items (no variation) are linked with this value instead of NULL,
# so the link unique constraint covers them too.
NO_VARIATION = ""


class Product(SQLModel, table=True):
    """
    The destination of catalog reconciliation.

    SKU and UPC are each unique across active products when non-null
    (NULLs never collide in a unique index).
    """

    __table_args__ = (
        Index(
            "uq_product_sku_active",
            "sku",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
        Index(
            "uq_product_upc_active",
            "upc",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    sku: Optional[str] = None
    upc: Optional[str] = None
    price_cents: Optional[int] = None  # minor units
    currency: Optional[str] = None
    origin: str = "LOCAL"  # "LOCAL" or the provider source, e.g. "SQUARE"
    sync_state: Optional[str] = None
    active: bool = True

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ProductLink(SQLModel, table=True):
    """Ties a Product to a provider (item, variation) pair, per integration."""

    __tablename__ = "product_link"
    __table_args__ = (
        UniqueConstraint(
            "integration_id",
            "source",
            "external_item_id",
            "external_variation_id",
            name="uq_product_link_external",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: int = Field(foreign_key="product.id", index=True)
    integration_id: int = Field(foreign_key="integration.id", index=True)
    source: str
    external_item_id: str
    external_variation_id: str = NO_VARIATION
    created_at: datetime = Field(default_factory=datetime.utcnow)
