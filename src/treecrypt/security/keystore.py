"""OS keystore master keys.

A random 32-byte local key is kept in the OS keystore (via `keyring`,
base64-encoded) under a service/account pair. The document data key is
wrapped with RFC 3394 AES key wrap under a KEK derived from that local key.
Useful for developer machines and tests where no cloud KMS or gpg is around;
do not assume keyring provides hardware-backed security on all platforms.
"""
from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import keyring
from cryptography.hazmat.primitives.keywrap import InvalidUnwrap
from keyring.errors import KeyringError

from treecrypt.core.exceptions import BackendInvalidStateError, BackendUnavailableError
from .crypto import unwrap_data_key, wrap_data_key
from .masterkey import MasterKey, format_timestamp, parse_timestamp, register_master_key, require_str


logger = logging.getLogger(__name__)

LOCAL_KEY_SIZE = 32


def save_key(service: str, account: str, key_bytes: bytes) -> None:
    """Persist binary key_bytes in the OS keystore under (service, account)."""
    secret = base64.b64encode(key_bytes).decode("ascii")
    keyring.set_password(service, account, secret)


def load_key(service: str, account: str) -> Optional[bytes]:
    """Load a persisted key from the OS keystore; returns raw bytes or None."""
    secret = keyring.get_password(service, account)
    if secret is None:
        return None
    try:
        return base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        return None


def delete_key(service: str, account: str) -> None:
    """Remove the key from the OS keystore."""
    keyring.delete_password(service, account)


def assess_keyring_backend() -> tuple[bool, str]:
    """Return (is_secure, message) describing the current keyring backend.

    Heuristics are used because the `keyring` package exposes different backends
    across platforms.
    """
    try:
        backend = keyring.get_keyring()
    except KeyringError as e:
        return False, f"failed to get keyring backend: {e}"

    name = backend.__class__.__name__
    priority = getattr(backend, "priority", None)

    insecure_indicators = ("Plaintext", "Uncrypted", "Simple", "File")
    if any(tok in name for tok in insecure_indicators):
        return False, f"insecure backend detected: {name}"

    if priority is not None and priority <= 0:
        return False, f"no suitable secure keyring backend available (priority={priority}, backend={name})"

    if "Win" in name or "Keychain" in name or "SecretService" in name or "KWallet" in name:
        return True, f"backend looks acceptable: {name} (priority={priority})"

    return True, f"unknown backend '{name}', treat with caution (priority={priority})"


def create_local_key(service: str, account: str, force: bool = False) -> "KeyringMasterKey":
    """Provision a new local key in the OS keystore and return a master key for it.

    Refuses to write to a backend that looks insecure unless force=True.
    """
    if not force:
        secure, msg = assess_keyring_backend()
        if not secure:
            raise BackendInvalidStateError(
                f"refusing to store a key in the OS keystore: {msg}; pass force=True to override",
                key_id=f"{service}/{account}",
            )
    try:
        save_key(service, account, os.urandom(LOCAL_KEY_SIZE))
    except KeyringError as e:
        raise BackendUnavailableError(f"could not store key: {e}", key_id=f"{service}/{account}") from e
    logger.info("created local key %s/%s", service, account)
    return KeyringMasterKey(service=service, account=account)


@register_master_key
@dataclass
class KeyringMasterKey(MasterKey):
    kind = "keyring"

    service: str = ""
    account: str = ""

    @property
    def identifier(self) -> str:
        return f"{self.service}/{self.account}"

    def _local_key(self) -> bytes:
        try:
            secret = load_key(self.service, self.account)
        except KeyringError as e:
            raise BackendUnavailableError(f"keyring backend failed: {e}", key_id=self.identifier) from e
        if secret is None:
            raise BackendInvalidStateError("no usable key stored in the OS keystore", key_id=self.identifier)
        return secret

    def wrap(self, data_key: bytes) -> bytes:
        return wrap_data_key(self._local_key(), data_key)

    def unwrap(self, blob: bytes) -> bytes:
        try:
            return unwrap_data_key(self._local_key(), blob)
        except InvalidUnwrap as e:
            raise BackendInvalidStateError(
                "stored data key was not wrapped by this local key", key_id=self.identifier
            ) from e
        except ValueError as e:
            raise BackendInvalidStateError(f"wrapped data key is malformed: {e}", key_id=self.identifier) from e

    def to_map(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "account": self.account,
            "enc": self.blob_to_text(self.encrypted_key),
            "created_at": format_timestamp(self.creation_date),
        }

    @classmethod
    def from_map(cls, entry: Dict[str, Any]) -> "KeyringMasterKey":
        service = require_str(entry, "service", cls.kind)
        account = require_str(entry, "account", cls.kind)
        enc = require_str(entry, "enc", cls.kind)
        created = parse_timestamp(require_str(entry, "created_at", cls.kind))
        return cls(
            service=service,
            account=account,
            encrypted_key=cls.text_to_blob(enc),
            creation_date=created,
        )
