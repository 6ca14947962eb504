"""Tests for IMAP credentials and keychain storage."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from inboxwatch.errors import MissingCredentialsError
from inboxwatch.ingestion.imap.credentials import (
    CredentialProvider,
    ImapCredentials,
    KeyringCredentialStore,
)

from tests.ingestion.imap.conftest import InMemoryKeyring


def test_credentials_hide_secret(credentials: ImapCredentials):
    assert "app-password" not in repr(credentials)
    assert credentials.serialize()["secret"] == "app-password"


def test_host_is_trimmed():
    creds = ImapCredentials(host="  imap.example.com ", username="me", secret="x")
    assert creds.host == "imap.example.com"


@pytest.mark.parametrize("host", ["", "imap example.com"])
def test_invalid_host_rejected(host):
    with pytest.raises(ValidationError):
        ImapCredentials(host=host, username="me", secret="x")


def test_keyring_round_trip(credentials: ImapCredentials):
    backend = InMemoryKeyring()
    store = KeyringCredentialStore(keyring_module=backend)

    store.save("work", credentials)

    assert isinstance(store, CredentialProvider)
    assert ("inboxwatch", "work") in backend.entries
    assert store.load("work") == credentials


def test_missing_credentials_raise():
    store = KeyringCredentialStore(keyring_module=InMemoryKeyring())

    with pytest.raises(MissingCredentialsError) as exc_info:
        store.load("nobody")

    assert exc_info.value.details == {"credential_name": "nobody"}


def test_delete_reports_missing_entry():
    store = KeyringCredentialStore(keyring_module=InMemoryKeyring())
    assert store.delete("nobody") is False
