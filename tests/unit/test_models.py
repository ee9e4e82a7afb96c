"""Tests for DB models."""
import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from catalogsync.models.import_run import ImportRun, RunStatus
from catalogsync.models.integration import CATALOG_MODE_SEARCH, Integration
from catalogsync.models.product import NO_VARIATION, Product, ProductLink


class TestIntegration:
    def test_defaults(self):
        integration = Integration(name="Shop")
        assert integration.source == "SQUARE"
        assert integration.catalog_mode == CATALOG_MODE_SEARCH
        assert integration.last_error is None


class TestImportRun:
    def test_defaults(self, test_session: Session, integration):
        run = ImportRun(integration_id=integration.id)
        test_session.add(run)
        test_session.commit()
        test_session.refresh(run)

        assert run.status == RunStatus.PENDING
        assert run.cursor is None
        assert run.errors == []
        assert run.errors_suppressed == 0
        assert not run.is_terminal

    def test_errors_round_trip_as_json(self, test_session: Session, integration):
        run = ImportRun(
            integration_id=integration.id,
            status=RunStatus.FAILED,
            errors=[{"code": "FETCH_FAILED", "message": "x", "context": {"cursor": "c"}}],
        )
        test_session.add(run)
        test_session.commit()

        stored = test_session.exec(select(ImportRun)).one()
        assert stored.errors[0]["context"] == {"cursor": "c"}
        assert stored.is_terminal

    def test_finished_runs_do_not_block_each_other(self, test_session: Session, integration):
        test_session.add(ImportRun(integration_id=integration.id, status=RunStatus.SUCCESS))
        test_session.add(ImportRun(integration_id=integration.id, status=RunStatus.FAILED))
        test_session.add(ImportRun(integration_id=integration.id, status=RunStatus.RUNNING))
        test_session.commit()
        assert len(test_session.exec(select(ImportRun)).all()) == 3


class TestProduct:
    def test_active_sku_unique(self, test_session: Session):
        test_session.add(Product(name="A", sku="S-1"))
        test_session.commit()
        test_session.add(Product(name="B", sku="S-1"))
        with pytest.raises(IntegrityError):
            test_session.commit()

    def test_null_upcs_do_not_collide(self, test_session: Session):
        test_session.add(Product(name="A"))
        test_session.add(Product(name="B"))
        test_session.commit()
        assert len(test_session.exec(select(Product)).all()) == 2

    def test_link_unique_per_external_pair(self, test_session: Session, integration):
        product = Product(name="A")
        test_session.add(product)
        test_session.commit()
        test_session.refresh(product)

        for _ in range(2):
            test_session.add(ProductLink(
                product_id=product.id,
                integration_id=integration.id,
                source="SQUARE",
                external_item_id="I1",
            ))
        with pytest.raises(IntegrityError):
            test_session.commit()

    def test_link_default_variation(self):
        link = ProductLink(product_id=1, integration_id=1, source="SQUARE", external_item_id="I1")
        assert link.external_variation_id == NO_VARIATION
