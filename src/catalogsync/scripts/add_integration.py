"""
Interactive setup for a provider integration.

Prompts for the integration name, catalog mode, environment and access token,
then stores the token encrypted with CREDENTIALS_SECRET. The plain token is
never written to disk.

Usage:
    python -m catalogsync add-integration
    python -m catalogsync.scripts.add_integration   (direct invocation)

Re-run with the same name to rotate the token.
"""
import getpass
import sys

from sqlmodel import Session, select

from catalogsync.config import get_settings
from catalogsync.db.engine import get_engine
from catalogsync.models.integration import (
    CATALOG_MODE_LISTING,
    CATALOG_MODE_SEARCH,
    Integration,
)
from catalogsync.provider.credentials import (
    ENVIRONMENT_PRODUCTION,
    ENVIRONMENT_SANDBOX,
    CredentialStore,
)


def run_add_integration() -> None:
    settings = get_settings()
    engine = get_engine()

    print("\nCatalog Sync: integration setup\n")
    if not settings.credentials_secret:
        print("Error: CREDENTIALS_SECRET is not set; tokens cannot be encrypted.")
        sys.exit(1)

    name = input("Integration name: ").strip()
    if not name:
        print("Error: name cannot be empty.")
        sys.exit(1)

    mode = input(f"Catalog mode [{CATALOG_MODE_SEARCH}/{CATALOG_MODE_LISTING}] ").strip().lower()
    mode = mode or CATALOG_MODE_SEARCH
    if mode not in (CATALOG_MODE_SEARCH, CATALOG_MODE_LISTING):
        print(f"Error: unknown catalog mode {mode!r}.")
        sys.exit(1)

    environment = input(
        f"Environment [{ENVIRONMENT_PRODUCTION}/{ENVIRONMENT_SANDBOX}] "
    ).strip().upper() or ENVIRONMENT_PRODUCTION
    if environment not in (ENVIRONMENT_PRODUCTION, ENVIRONMENT_SANDBOX):
        print(f"Error: unknown environment {environment!r}.")
        sys.exit(1)

    token = getpass.getpass("Access token: ").strip()
    if not token:
        print("Error: access token cannot be empty.")
        sys.exit(1)

    with Session(engine) as s:
        integration = s.exec(select(Integration).where(Integration.name == name)).first()
        if integration is not None:
            overwrite = input("An integration with this name exists. Replace its token? [y/N] ")
            if overwrite.strip().lower() != "y":
                print("Setup cancelled. Existing integration unchanged.")
                sys.exit(0)
        else:
            integration = Integration(name=name)
        integration.catalog_mode = mode
        s.add(integration)
        s.commit()
        s.refresh(integration)
        integration_id = integration.id

    CredentialStore(engine, settings).store(integration_id, token, environment)
    print(f"\nIntegration {integration_id} saved ({environment}, {mode}).")
    print(f"Check it with:  python -m catalogsync test-connection {integration_id}\n")


if __name__ == "__main__":
    run_add_integration()
