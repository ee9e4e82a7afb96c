"""
Upsert engine: create new products or merge incoming values into existing ones.

Merge policy (non-destructive):
  - name:      overwritten when incoming is non-empty and the existing name is
               empty or strictly shorter (richer data wins)
  - sku, upc:  overwritten when incoming is non-empty and different
  - price:     filled in only when the existing price is empty; the currency
               travels with it

SKU/UPC uniqueness is enforced by the database. Conflicts are detected by
attempting the write and catching IntegrityError, never by locking:
  - create: a conflicting product is not created (no retry with a mutated UPC)
  - update: the write is retried without the conflicting field, so the
            product's other changes still land
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from catalogsync.models.product import SYNC_STATE_SYNCHRONIZED, Product
from catalogsync.provider.normalizer import clean
from catalogsync.sync.matcher import IncomingProduct

logger = logging.getLogger(__name__)

CONFLICT_UPC = "upc"
CONFLICT_SKU = "sku"

DEFAULT_PRODUCT_NAME = "Unnamed"


@dataclass
class UpsertResult:
    created: bool = False
    updated: bool = False
    product_id: Optional[int] = None
    conflicts: List[str] = field(default_factory=list)


def conflict_field(exc: IntegrityError) -> Optional[str]:
    """Which product unique key an IntegrityError violated ("upc", "sku"), if either."""
    message = str(exc.orig).lower()
    # Postgres reports the index name, SQLite reports table.column
    if "uq_product_upc" in message or "product.upc" in message:
        return CONFLICT_UPC
    if "uq_product_sku" in message or "product.sku" in message:
        return CONFLICT_SKU
    return None


def merge_fields(product: Product, incoming: IncomingProduct) -> Dict[str, Any]:
    """Return the column changes the merge policy allows. Empty dict = no-op."""
    changes: Dict[str, Any] = {}

    name = clean(incoming.name)
    existing_name = clean(product.name)
    if name and (not existing_name or len(name) > len(existing_name)):
        changes["name"] = name

    for column in ("sku", "upc"):
        value = clean(getattr(incoming, column))
        if value and value != clean(getattr(product, column)):
            changes[column] = value

    if incoming.price is not None and product.price_cents is None:
        changes["price_cents"] = incoming.price
        currency = clean(incoming.currency)
        if currency and not clean(product.currency):
            changes["currency"] = currency

    return changes


class ProductUpserter:
    """Applies create/update decisions for one provider source."""

    def __init__(self, source: str):
        self.source = source

    def create(self, session: Session, incoming: IncomingProduct) -> UpsertResult:
        product = Product(
            name=clean(incoming.name) or DEFAULT_PRODUCT_NAME,
            sku=clean(incoming.sku),
            upc=clean(incoming.upc),
            price_cents=incoming.price,
            currency=clean(incoming.currency),
            origin=self.source,
            sync_state=SYNC_STATE_SYNCHRONIZED,
        )
        session.add(product)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            conflict = conflict_field(exc)
            if conflict is None:
                raise
            logger.info(
                "Not creating product for %s/%s: %s %r already in use",
                incoming.external_item_id, incoming.external_variation_id,
                conflict, getattr(incoming, conflict),
            )
            return UpsertResult(conflicts=[conflict])

        session.refresh(product)
        return UpsertResult(created=True, product_id=product.id)

    def update(self, session: Session, product_id: int, incoming: IncomingProduct) -> UpsertResult:
        result = UpsertResult(product_id=product_id)
        dropped: List[str] = []

        while True:
            product = session.get(Product, product_id)
            if product is None:
                raise ValueError(f"Product {product_id} disappeared during update")

            changes = {
                k: v for k, v in merge_fields(product, incoming).items() if k not in dropped
            }
            if not changes:
                return result

            for column, value in changes.items():
                setattr(product, column, value)
            product.sync_state = SYNC_STATE_SYNCHRONIZED
            product.updated_at = datetime.utcnow()
            session.add(product)

            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                conflict = conflict_field(exc)
                if conflict is None or conflict in dropped:
                    raise
                logger.info(
                    "Product %s: %s %r already in use, retrying without it",
                    product_id, conflict, changes.get(conflict),
                )
                dropped.append(conflict)
                result.conflicts.append(conflict)
                continue

            result.updated = True
            return result
