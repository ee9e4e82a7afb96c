"""
Decrypt-on-read credential store for provider integrations.

Access tokens are stored on the Integration row as Fernet ciphertext. The
Fernet key is derived from CREDENTIALS_SECRET with PBKDF2-SHA256, so the
plaintext token only exists in memory for the duration of an import.

The integration's environment tag selects the provider base URL:
    SANDBOX    -> provider_api_base_sandbox
    PRODUCTION -> provider_api_base_production
A missing environment is a configuration error when strict_environment is on.
"""
import base64
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlmodel import Session

from catalogsync.config import Settings, get_settings
from catalogsync.errors import CredentialsError
from catalogsync.models.integration import Integration

logger = logging.getLogger(__name__)

ENVIRONMENT_SANDBOX = "SANDBOX"
ENVIRONMENT_PRODUCTION = "PRODUCTION"

_KDF_SALT = b"catalogsync_provider_credentials_v1"
_KDF_ITERATIONS = 100000

# Derived keys, one per secret
_fernets: Dict[str, Fernet] = {}


def _get_fernet(secret: str) -> Fernet:
    if not secret:
        raise CredentialsError("CREDENTIALS_SECRET is not configured")
    fernet = _fernets.get(secret)
    if fernet is None:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_KDF_SALT,
            iterations=_KDF_ITERATIONS,
        )
        fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(secret.encode())))
        _fernets[secret] = fernet
    return fernet


def encrypt_token(plaintext: str, secret: str) -> str:
    return _get_fernet(secret).encrypt(plaintext.encode()).decode()


def decrypt_token(ciphertext: str, secret: str) -> str:
    try:
        return _get_fernet(secret).decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        raise CredentialsError(
            "Stored access token could not be decrypted (wrong secret or corrupted data)"
        ) from exc


def mask_token(token: str) -> str:
    """First and last four characters, for logs and connection checks."""
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}...{token[-4:]}"


@dataclass(frozen=True)
class ProviderCredentials:
    access_token: str
    environment: str
    base_url: str

    @property
    def masked_token(self) -> str:
        return mask_token(self.access_token)


class CredentialStore:
    """Resolves decrypted provider credentials for an integration."""

    def __init__(self, engine, settings: Optional[Settings] = None):
        self.engine = engine
        self.settings = settings or get_settings()

    def get(self, integration_id: int) -> ProviderCredentials:
        """
        Raises:
            CredentialsError: integration missing, token missing/empty, or
                environment missing/unknown.
        """
        with Session(self.engine) as s:
            integration = s.get(Integration, integration_id)
            if integration is None:
                raise CredentialsError(f"Integration {integration_id} not found")
            ciphertext = integration.encrypted_access_token
            environment = (integration.environment or "").strip().upper()

        if not ciphertext:
            raise CredentialsError(
                f"No access token stored for integration {integration_id}"
            )
        token = decrypt_token(ciphertext, self.settings.credentials_secret).strip()
        if not token:
            raise CredentialsError("Access token is empty after decryption")

        if not environment:
            if self.settings.strict_environment:
                raise CredentialsError(
                    f"Integration {integration_id} has no environment (SANDBOX/PRODUCTION)"
                )
            environment = ENVIRONMENT_PRODUCTION

        if environment == ENVIRONMENT_SANDBOX:
            base_url = self.settings.provider_api_base_sandbox
        elif environment == ENVIRONMENT_PRODUCTION:
            base_url = self.settings.provider_api_base_production
        else:
            raise CredentialsError(f"Unknown environment {environment!r}")

        logger.debug(
            "Resolved credentials for integration %s: %s %s",
            integration_id, environment, mask_token(token),
        )
        return ProviderCredentials(access_token=token, environment=environment, base_url=base_url)

    def store(self, integration_id: int, access_token: str, environment: Optional[str] = None) -> None:
        """Encrypt and save an access token (and optionally its environment)."""
        ciphertext = encrypt_token(access_token.strip(), self.settings.credentials_secret)
        with Session(self.engine) as s:
            integration = s.get(Integration, integration_id)
            if integration is None:
                raise CredentialsError(f"Integration {integration_id} not found")
            integration.encrypted_access_token = ciphertext
            if environment is not None:
                integration.environment = environment.strip().upper()
            s.add(integration)
            s.commit()
