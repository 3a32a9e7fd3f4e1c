"""Credential acquisition for cloud providers.

The engine never reads secrets from its environment. Inside Azure it
authenticates with a managed identity; on a workstation it reuses the
signed-in Azure CLI session.

SECURITY INVARIANTS:
1. Service principal secrets and passwords must never be present in the environment
2. ManagedIdentityCredential is used whenever a managed identity is available
3. AzureCliCredential is the only fallback, for interactive use
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import AzureCliCredential, ManagedIdentityCredential

from .config import ConfigurationError

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

# Set by App Service, Container Apps, Functions and the IMDS sidecar
MANAGED_IDENTITY_ENV_VARS: tuple[str, ...] = ("IDENTITY_ENDPOINT", "MSI_ENDPOINT")

SECRETLESS_VIOLATION_MESSAGE = (
    "Refusing to start: {env_var} is set. Secret-based authentication is not "
    "supported. Remove credential variables and assign a managed identity, or "
    "sign in with 'az login' for interactive use."
)


class SecretlessViolationError(ConfigurationError):
    """Raised when a credential secret is present in the environment."""

    pass


def enforce_secretless_environment() -> None:
    """Fail if any credential secret is present in the environment.

    Raises:
        SecretlessViolationError: If a forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Credential secret detected in environment",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))


def get_credential(client_id: str | None = None) -> TokenCredential:
    """Return the credential for provider calls.

    Args:
        client_id: Client ID of a user-assigned managed identity. When None,
            the system-assigned identity is used inside Azure and the Azure
            CLI session elsewhere.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_environment()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    if any(os.environ.get(var) for var in MANAGED_IDENTITY_ENV_VARS):
        logger.info("Using system-assigned managed identity")
        return ManagedIdentityCredential()

    logger.info("Using Azure CLI credential")
    return AzureCliCredential()
