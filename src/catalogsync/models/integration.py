"""Provider integration model: one connected merchant catalog."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

CATALOG_MODE_LISTING = "listing"
CATALOG_MODE_SEARCH = "search"


class Integration(SQLModel, table=True):
    """A merchant's connection to an external catalog provider."""

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    source: str = Field(default="SQUARE", index=True)
    catalog_mode: str = CATALOG_MODE_SEARCH  # "listing" or "search"
    environment: Optional[str] = None  # "SANDBOX", "PRODUCTION"

    # Fernet ciphertext; decrypted on read by CredentialStore
    encrypted_access_token: Optional[str] = None

    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
