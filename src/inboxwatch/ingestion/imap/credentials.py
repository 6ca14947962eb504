"""IMAP credentials and OS keychain-backed credential storage.

The watcher only consumes ``ImapCredentials``; where they come from is the
host application's concern. ``KeyringCredentialStore`` is the reference
provider used by the CLI and keeps secrets in the operating system keychain
rather than in configuration files.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Protocol, runtime_checkable

import keyring
from keyring.errors import PasswordDeleteError
from pydantic import BaseModel, Field, SecretStr, field_validator

from inboxwatch.errors import MissingCredentialsError

logger = logging.getLogger(__name__)

DEFAULT_SECRETS_SERVICE = "inboxwatch"


class ImapCredentials(BaseModel):
    """Connection credentials for an IMAP account."""

    host: str = Field(..., description="IMAP hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAP port")
    username: str = Field(..., description="Login user name")
    secret: SecretStr = Field(..., description="Password or app password")
    tls_required: bool = Field(default=True, description="Connect over implicit TLS")

    @field_validator("host")
    @classmethod
    def _validate_host(cls, value: str) -> str:  # type: ignore[override]
        value = value.strip()
        if not value or " " in value:
            raise ValueError("host must be a valid hostname")
        return value

    def serialize(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "secret": self.secret.get_secret_value(),
            "tls_required": self.tls_required,
        }


@runtime_checkable
class CredentialProvider(Protocol):
    """Supplies credentials for a named mailbox account."""

    def load(self, name: str) -> ImapCredentials:
        ...


@dataclass
class KeyringCredentialStore:
    """Stores ``ImapCredentials`` as JSON entries in the OS keychain."""

    service_name: str = DEFAULT_SECRETS_SERVICE
    keyring_module: Any = field(default=keyring)

    def save(self, name: str, credentials: ImapCredentials) -> None:
        self.keyring_module.set_password(
            self.service_name, name, json.dumps(credentials.serialize())
        )
        logger.info(
            "Stored IMAP credentials",
            extra={"credential_name": name, "host": credentials.host},
        )

    def load(self, name: str) -> ImapCredentials:
        payload = self.keyring_module.get_password(self.service_name, name)
        if payload is None:
            raise MissingCredentialsError(
                f"No credentials stored under '{name}'",
                details={"credential_name": name},
            )
        return ImapCredentials.model_validate(json.loads(payload))

    def delete(self, name: str) -> bool:
        try:
            self.keyring_module.delete_password(self.service_name, name)
        except PasswordDeleteError:
            return False
        return True


__all__ = [
    "CredentialProvider",
    "ImapCredentials",
    "KeyringCredentialStore",
]
