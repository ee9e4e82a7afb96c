"""Integration setup, status and connection-check routes."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, col, select

from catalogsync.api.deps import get_import_service
from catalogsync.config import get_settings
from catalogsync.db.engine import get_session
from catalogsync.errors import CredentialsError
from catalogsync.models.import_run import ACTIVE_STATUSES, ImportRun
from catalogsync.models.integration import (
    CATALOG_MODE_LISTING,
    CATALOG_MODE_SEARCH,
    Integration,
)
from catalogsync.provider.credentials import encrypt_token
from catalogsync.sync.import_service import CatalogImportService

router = APIRouter()


class IntegrationCreate(BaseModel):
    name: str
    access_token: str
    source: str = "SQUARE"
    catalog_mode: str = CATALOG_MODE_SEARCH
    environment: Optional[str] = None


class IntegrationStatus(BaseModel):
    id: int
    name: str
    source: str
    catalog_mode: str
    environment: Optional[str]
    last_error: Optional[str]
    last_success_at: Optional[datetime]
    active_run_id: Optional[int]


def _status(session: Session, integration: Integration) -> IntegrationStatus:
    active = session.exec(
        select(ImportRun).where(
            ImportRun.integration_id == integration.id,
            col(ImportRun.status).in_(ACTIVE_STATUSES),
        )
    ).first()
    return IntegrationStatus(
        id=integration.id,
        name=integration.name,
        source=integration.source,
        catalog_mode=integration.catalog_mode,
        environment=integration.environment,
        last_error=integration.last_error,
        last_success_at=integration.last_success_at,
        active_run_id=active.id if active else None,
    )


@router.post("/", status_code=201, response_model=IntegrationStatus)
def create_integration(
    request: IntegrationCreate,
    session: Session = Depends(get_session),
):
    """Register an integration; the access token is stored encrypted."""
    if request.catalog_mode not in (CATALOG_MODE_LISTING, CATALOG_MODE_SEARCH):
        raise HTTPException(status_code=422, detail=f"Unknown catalog mode {request.catalog_mode!r}")
    if not request.access_token.strip():
        raise HTTPException(status_code=422, detail="access_token must not be empty")

    try:
        ciphertext = encrypt_token(request.access_token.strip(), get_settings().credentials_secret)
    except CredentialsError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    integration = Integration(
        name=request.name,
        source=request.source.strip().upper(),
        catalog_mode=request.catalog_mode,
        environment=request.environment.strip().upper() if request.environment else None,
        encrypted_access_token=ciphertext,
    )
    session.add(integration)
    session.commit()
    session.refresh(integration)
    return _status(session, integration)


@router.get("/{integration_id}", response_model=IntegrationStatus)
def get_integration(integration_id: int, session: Session = Depends(get_session)):
    """Integration settings, last error and active run (never the token)."""
    integration = session.get(Integration, integration_id)
    if not integration:
        raise HTTPException(status_code=404, detail="Integration not found")
    return _status(session, integration)


@router.post("/{integration_id}/test-connection")
async def test_connection(
    integration_id: int,
    service: CatalogImportService = Depends(get_import_service),
):
    """Check the stored credentials against the provider's locations endpoint."""
    return await service.test_connection(integration_id)
