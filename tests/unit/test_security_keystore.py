"""
Unit tests for the keystore module.
"""

import base64
import hashlib

import pytest
from unittest.mock import MagicMock, patch
from keyring.errors import KeyringError

from treecrypt.core.exceptions import BackendInvalidStateError, BackendUnavailableError
from treecrypt.security import keystore
from treecrypt.security.crypto import generate_data_key
from treecrypt.security.keystore import KeyringMasterKey


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture
def mock_keyring_lib():
    """Patches the keyring module within treecrypt.security.keystore."""
    with patch("treecrypt.security.keystore.keyring", autospec=True) as mock_lib:
        yield mock_lib


@pytest.fixture
def memory_keyring(mock_keyring_lib):
    """A dict-backed keyring so wrap/unwrap see real stored secrets."""
    store = {}
    mock_keyring_lib.set_password.side_effect = lambda s, a, p: store.__setitem__((s, a), p)
    mock_keyring_lib.get_password.side_effect = lambda s, a: store.get((s, a))
    mock_keyring_lib.delete_password.side_effect = lambda s, a: store.pop((s, a))
    return store


def backend_named(name, priority=1):
    backend = MagicMock()
    backend.__class__.__name__ = name
    backend.priority = priority
    return backend


# ==============================================================================
# Tests: Save / load / delete
# ==============================================================================

def test_save_key_encodes_and_stores(mock_keyring_lib):
    key_bytes = b"\x01\x02\x03\x04"

    keystore.save_key("treecrypt_test", "alice", key_bytes)

    called_service, called_account, called_secret = mock_keyring_lib.set_password.call_args[0]
    assert called_service == "treecrypt_test"
    assert called_account == "alice"
    # Secret must be base64 string, not bytes
    assert called_secret == base64.b64encode(key_bytes).decode("ascii")


def test_load_key_returns_bytes(mock_keyring_lib):
    mock_keyring_lib.get_password.return_value = base64.b64encode(b"secret_bytes").decode("ascii")
    assert keystore.load_key("svc", "usr") == b"secret_bytes"


def test_load_key_returns_none_if_missing(mock_keyring_lib):
    mock_keyring_lib.get_password.return_value = None
    assert keystore.load_key("svc", "usr") is None


def test_load_key_returns_none_on_corrupt_data(mock_keyring_lib):
    mock_keyring_lib.get_password.return_value = "NotValidBase64!!!"
    assert keystore.load_key("svc", "usr") is None


def test_delete_key_calls_backend(mock_keyring_lib):
    keystore.delete_key("svc", "usr")
    mock_keyring_lib.delete_password.assert_called_once_with("svc", "usr")


# ==============================================================================
# Tests: Backend Assessment (assess_keyring_backend)
# ==============================================================================

def test_assess_backend_handles_exception(mock_keyring_lib):
    mock_keyring_lib.get_keyring.side_effect = KeyringError("DBus error")

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "failed to get keyring backend" in msg


def test_assess_backend_insecure_names(mock_keyring_lib):
    mock_keyring_lib.get_keyring.return_value = backend_named("PlaintextKeyring")

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "insecure backend detected" in msg


def test_assess_backend_low_priority(mock_keyring_lib):
    mock_keyring_lib.get_keyring.return_value = backend_named("SomeGenericBackend", priority=0)

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "no suitable secure keyring backend" in msg


@pytest.mark.parametrize("name", ["KeychainKeyring", "WinVaultKeyring", "SecretServiceKeyring", "KWallet"])
def test_assess_backend_secure_names(mock_keyring_lib, name):
    mock_keyring_lib.get_keyring.return_value = backend_named(name)

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is True
    assert "looks acceptable" in msg


def test_assess_backend_unknown_but_high_priority(mock_keyring_lib):
    mock_keyring_lib.get_keyring.return_value = backend_named("SuperSecureHardwareKeyring", priority=5)

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is True
    assert "treat with caution" in msg


# ==============================================================================
# Tests: Local key provisioning (create_local_key)
# ==============================================================================

def test_create_local_key_stores_random_key(mock_keyring_lib, memory_keyring):
    mock_keyring_lib.get_keyring.return_value = backend_named("KeychainKeyring")

    key = keystore.create_local_key("treecrypt", "dev")

    assert isinstance(key, KeyringMasterKey)
    assert key.identifier == "treecrypt/dev"
    stored = base64.b64decode(memory_keyring[("treecrypt", "dev")])
    assert len(stored) == keystore.LOCAL_KEY_SIZE


def test_create_local_key_refuses_insecure_backend(mock_keyring_lib, memory_keyring):
    mock_keyring_lib.get_keyring.return_value = backend_named("PlaintextKeyring")

    with pytest.raises(BackendInvalidStateError, match="force=True"):
        keystore.create_local_key("treecrypt", "dev")
    assert memory_keyring == {}

    keystore.create_local_key("treecrypt", "dev", force=True)
    assert ("treecrypt", "dev") in memory_keyring


def test_create_local_key_backend_failure(mock_keyring_lib):
    mock_keyring_lib.set_password.side_effect = KeyringError("locked")

    with pytest.raises(BackendUnavailableError, match="could not store key"):
        keystore.create_local_key("treecrypt", "dev", force=True)


# ==============================================================================
# Tests: KeyringMasterKey
# ==============================================================================

def test_wrap_unwrap_roundtrip(memory_keyring):
    keystore.save_key("treecrypt", "dev", hashlib.sha256(b"local").digest())
    key = KeyringMasterKey(service="treecrypt", account="dev")
    data_key = generate_data_key()

    blob = key.wrap(data_key)
    assert blob != data_key
    assert key.unwrap(blob) == data_key


def test_unwrap_with_other_local_key_is_invalid_state(memory_keyring):
    keystore.save_key("treecrypt", "a", hashlib.sha256(b"a").digest())
    keystore.save_key("treecrypt", "b", hashlib.sha256(b"b").digest())
    blob = KeyringMasterKey(service="treecrypt", account="a").wrap(generate_data_key())

    with pytest.raises(BackendInvalidStateError, match="not wrapped by this local key"):
        KeyringMasterKey(service="treecrypt", account="b").unwrap(blob)


def test_missing_local_key_is_invalid_state(memory_keyring):
    with pytest.raises(BackendInvalidStateError, match="no usable key"):
        KeyringMasterKey(service="treecrypt", account="nobody").wrap(generate_data_key())


def test_keyring_failure_is_unavailable(mock_keyring_lib):
    mock_keyring_lib.get_password.side_effect = KeyringError("no backend")

    with pytest.raises(BackendUnavailableError) as excinfo:
        KeyringMasterKey(service="treecrypt", account="dev").unwrap(b"x" * 40)
    assert excinfo.value.key_id == "treecrypt/dev"


def test_to_map_from_map_roundtrip():
    key = KeyringMasterKey(service="treecrypt", account="dev", encrypted_key=b"\x00" * 40)
    entry = key.to_map()

    assert list(entry) == ["service", "account", "enc", "created_at"]
    restored = KeyringMasterKey.from_map(entry)
    assert restored.service == "treecrypt"
    assert restored.account == "dev"
    assert restored.encrypted_key == b"\x00" * 40
    assert restored.creation_date == key.creation_date
