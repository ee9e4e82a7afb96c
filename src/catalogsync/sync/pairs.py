"""
Per-pair reconciliation: matcher → upsert → link, for one (item, variation).

Each pair runs in its own session. Failures are reported on the outcome and
never raised, so one bad pair cannot abort the page.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from catalogsync.errors import ErrorCode
from catalogsync.provider.normalizer import CatalogItem, CatalogVariation
from catalogsync.sync.ledger import error_entry
from catalogsync.sync.links import LinkReconciler
from catalogsync.sync.matcher import MATCHED_BY_LINK, IncomingProduct, RecordMatcher
from catalogsync.sync.upsert import CONFLICT_UPC, ProductUpserter

logger = logging.getLogger(__name__)


@dataclass
class PairOutcome:
    created: bool = False
    updated: bool = False
    failed: bool = False
    product_id: Optional[int] = None
    matched_by: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)


def _conflict_code(conflict: str) -> ErrorCode:
    return ErrorCode.UPC_CONFLICT if conflict == CONFLICT_UPC else ErrorCode.SKU_CONFLICT


class PairProcessor:
    """Reconciles provider pairs for one integration into local products."""

    def __init__(
        self,
        engine,
        integration_id: int,
        source: str,
        matcher: Optional[RecordMatcher] = None,
        upserter: Optional[ProductUpserter] = None,
        links: Optional[LinkReconciler] = None,
    ):
        self.engine = engine
        self.integration_id = integration_id
        self.source = source
        self.matcher = matcher or RecordMatcher()
        self.upserter = upserter or ProductUpserter(source)
        self.links = links or LinkReconciler()

    def process(self, item: CatalogItem, variation: Optional[CatalogVariation]) -> PairOutcome:
        incoming = IncomingProduct.from_pair(item, variation)
        context = {
            "item_id": incoming.external_item_id,
            "variation_id": incoming.external_variation_id,
            "sku": incoming.sku,
            "upc": incoming.upc,
        }
        outcome = PairOutcome()

        try:
            with Session(self.engine) as s:
                match = self.matcher.match(s, self.integration_id, self.source, incoming)
                if match is None:
                    result = self.upserter.create(s, incoming)
                else:
                    outcome.matched_by = match.matched_by
                    result = self.upserter.update(s, match.product.id, incoming)

                for conflict in result.conflicts:
                    value = getattr(incoming, conflict)
                    outcome.errors.append(
                        error_entry(
                            _conflict_code(conflict),
                            f"{conflict.upper()} {value!r} already belongs to another product",
                            context,
                        )
                    )

                if result.product_id is None:
                    # creation abandoned on a unique conflict
                    outcome.failed = True
                    return outcome

                outcome.product_id = result.product_id
                outcome.created = result.created
                outcome.updated = result.updated

                if outcome.matched_by != MATCHED_BY_LINK:
                    self.links.ensure_link(
                        s,
                        result.product_id,
                        self.integration_id,
                        self.source,
                        incoming.external_item_id,
                        incoming.external_variation_id,
                    )
        except (SQLAlchemyError, ValueError) as exc:
            code = (
                ErrorCode.ITEM_UPSERT_FAILED
                if variation is None
                else ErrorCode.VARIATION_UPSERT_FAILED
            )
            logger.warning("Pair %s/%s failed: %s", context["item_id"], context["variation_id"], exc)
            outcome.failed = True
            outcome.errors.append(error_entry(code, str(exc), context))

        return outcome
