"""
Error taxonomy for catalog imports.

Two layers:
  - ErrorCode: the codes written into an import run's error ledger.
  - Exception classes raised by the provider layer and the run ledger.

Fatal codes (CREDENTIALS, CATALOG_ACCESS, FETCH_FAILED) end the run as FAILED.
Per-pair codes are recorded and counted; the import moves on to the next pair.
"""
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    CREDENTIALS = "CREDENTIALS"
    CATALOG_ACCESS = "CATALOG_ACCESS"
    FETCH_FAILED = "FETCH_FAILED"
    ITEM_UPSERT_FAILED = "ITEM_UPSERT_FAILED"
    VARIATION_UPSERT_FAILED = "VARIATION_UPSERT_FAILED"
    UPC_CONFLICT = "UPC_CONFLICT"
    SKU_CONFLICT = "SKU_CONFLICT"
    ERROR_CAP_REACHED = "ERROR_CAP_REACHED"
    WATCHDOG_TIMEOUT = "WATCHDOG_TIMEOUT"
    INTERNAL = "INTERNAL"


# ── Base ──────────────────────────────────────────────────────────────────────

class CatalogSyncError(RuntimeError):
    """Base class for all catalogsync errors."""


class ConfigurationError(CatalogSyncError):
    """Raised when an integration or the app settings are misconfigured."""


class CredentialsError(CatalogSyncError):
    """Raised when an access token or environment cannot be resolved."""


# ── Provider HTTP ─────────────────────────────────────────────────────────────

class ProviderHTTPError(CatalogSyncError):
    """A non-retryable, non-2xx provider response. Carries the raw body."""

    def __init__(self, status_code: int, body: str, context: str = ""):
        self.status_code = status_code
        self.body = body
        self.context = context
        label = f"{context}: " if context else ""
        # truncate so one bad page doesn't flood the run ledger
        super().__init__(f"{label}HTTP {status_code} {body[:500]}")


class ProviderAuthError(ProviderHTTPError):
    """401: token missing, revoked, or for the wrong environment."""


class ProviderForbiddenError(ProviderHTTPError):
    """403: token lacks the required scope."""


class ProviderNotFoundError(ProviderHTTPError):
    """404: endpoint or object not available."""


class RetryBudgetExhausted(CatalogSyncError):
    """Raised instead of sleeping when a backoff delay would cross the deadline."""

    def __init__(self, status_code: Optional[int], attempts: int):
        self.status_code = status_code
        self.attempts = attempts
        super().__init__(
            f"Provider still failing (last status {status_code}) after "
            f"{attempts} attempts; time budget exhausted"
        )


class CatalogFetchError(CatalogSyncError):
    """A catalog page or variation batch could not be retrieved.

    kind is one of: "not_supported", "forbidden", "auth_failed", "generic".
    """

    NOT_SUPPORTED = "not_supported"
    FORBIDDEN = "forbidden"
    AUTH_FAILED = "auth_failed"
    GENERIC = "generic"

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(message)

    @classmethod
    def from_http_error(cls, exc: ProviderHTTPError) -> "CatalogFetchError":
        if isinstance(exc, ProviderNotFoundError):
            kind = cls.NOT_SUPPORTED
        elif isinstance(exc, ProviderForbiddenError):
            kind = cls.FORBIDDEN
        elif isinstance(exc, ProviderAuthError):
            kind = cls.AUTH_FAILED
        else:
            kind = cls.GENERIC
        return cls(kind, str(exc))


# ── Run ledger ────────────────────────────────────────────────────────────────

class RunNotFoundError(CatalogSyncError):
    """Raised when a run id does not exist."""


class RunInProgressError(CatalogSyncError):
    """Raised by start() when the integration already has a non-terminal run."""

    def __init__(self, integration_id: int, run_id: Optional[int]):
        self.integration_id = integration_id
        self.run_id = run_id
        super().__init__(
            f"Import already in progress for integration {integration_id} (run {run_id})"
        )


class RunStateError(CatalogSyncError):
    """Raised on a state transition the run's current status does not allow."""
