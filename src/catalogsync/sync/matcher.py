"""
Record matcher: does an incoming (item, variation) pair already exist locally?

Precedence, first match wins:
  1. External link on (integration, source, item id, variation id-or-none)
  2. UPC equality among active products
  3. SKU equality among active products

Only non-empty trimmed values take part; a blank SKU never matches anything.
"""
from dataclasses import dataclass
from typing import Optional

from sqlmodel import Session, select

from catalogsync.models.product import NO_VARIATION, Product, ProductLink
from catalogsync.provider.normalizer import CatalogItem, CatalogVariation, clean

MATCHED_BY_LINK = "link"
MATCHED_BY_UPC = "upc"
MATCHED_BY_SKU = "sku"


@dataclass
class IncomingProduct:
    """The local-record view of one (item, variation) pair."""

    external_item_id: str
    external_variation_id: Optional[str]
    name: Optional[str]
    sku: Optional[str]
    upc: Optional[str]
    price: Optional[int]
    currency: Optional[str]

    @classmethod
    def from_pair(cls, item: CatalogItem, variation: Optional[CatalogVariation]) -> "IncomingProduct":
        """Variation values win over the item's; the name is inherited unless overridden."""
        if variation is None:
            return cls(
                external_item_id=item.external_id,
                external_variation_id=None,
                name=clean(item.name),
                sku=clean(item.sku),
                upc=clean(item.upc),
                price=item.price,
                currency=clean(item.currency),
            )
        has_own_price = variation.price is not None
        return cls(
            external_item_id=item.external_id,
            external_variation_id=variation.external_id,
            name=clean(variation.name) or clean(item.name),
            sku=clean(variation.sku) or clean(item.sku),
            upc=clean(variation.upc) or clean(item.upc),
            price=variation.price if has_own_price else item.price,
            currency=clean(variation.currency if has_own_price else item.currency),
        )


@dataclass
class MatchResult:
    product: Product
    matched_by: str


class RecordMatcher:
    """Finds the local Product an incoming pair corresponds to, if any."""

    def match(
        self,
        session: Session,
        integration_id: int,
        source: str,
        incoming: IncomingProduct,
    ) -> Optional[MatchResult]:
        product = self.find_by_link(
            session,
            integration_id,
            source,
            incoming.external_item_id,
            incoming.external_variation_id,
        )
        if product is not None:
            return MatchResult(product, MATCHED_BY_LINK)

        upc = clean(incoming.upc)
        if upc:
            product = session.exec(
                select(Product).where(Product.upc == upc, Product.active == True)  # noqa: E712
            ).first()
            if product is not None:
                return MatchResult(product, MATCHED_BY_UPC)

        sku = clean(incoming.sku)
        if sku:
            product = session.exec(
                select(Product).where(Product.sku == sku, Product.active == True)  # noqa: E712
            ).first()
            if product is not None:
                return MatchResult(product, MATCHED_BY_SKU)

        return None

    def find_by_link(
        self,
        session: Session,
        integration_id: int,
        source: str,
        external_item_id: str,
        external_variation_id: Optional[str],
    ) -> Optional[Product]:
        link = session.exec(
            select(ProductLink).where(
                ProductLink.integration_id == integration_id,
                ProductLink.source == source,
                ProductLink.external_item_id == external_item_id,
                ProductLink.external_variation_id == (external_variation_id or NO_VARIATION),
            )
        ).first()
        if link is None:
            return None
        return session.get(Product, link.product_id)
