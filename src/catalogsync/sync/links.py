"""Link reconciler: idempotently record which provider object a product came from."""
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from catalogsync.models.product import NO_VARIATION, ProductLink

logger = logging.getLogger(__name__)


class LinkReconciler:
    """
    Inserts ProductLink rows. A unique violation means the link is already
    there, which counts as success.
    """

    def ensure_link(
        self,
        session: Session,
        product_id: int,
        integration_id: int,
        source: str,
        external_item_id: str,
        external_variation_id: Optional[str] = None,
    ) -> bool:
        """
        Returns:
            True if a new link was inserted, False if it already existed.
        """
        link = ProductLink(
            product_id=product_id,
            integration_id=integration_id,
            source=source,
            external_item_id=external_item_id,
            external_variation_id=external_variation_id or NO_VARIATION,
        )
        session.add(link)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info(
                "Link %s/%s/%s already present (integration %s); nothing to do",
                source, external_item_id, external_variation_id, integration_id,
            )
            return False
        return True
