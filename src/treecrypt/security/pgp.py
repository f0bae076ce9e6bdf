"""PGP master keys backed by the local gpg binary through python-gnupg."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import gnupg

from treecrypt.core.exceptions import (
    BackendDeniedError,
    BackendInvalidStateError,
    BackendUnavailableError,
    MalformedKeyEntryError,
)
from .masterkey import MasterKey, format_timestamp, parse_timestamp, register_master_key, require_str


logger = logging.getLogger(__name__)

_DENIED_STATUSES = ("bad passphrase", "missing passphrase", "need passphrase")
_INVALID_STATE_STATUSES = (
    "invalid recipient",
    "key expired",
    "key revoked",
    "no public key",
    "no secret key",
    "decryption failed",
    "no data was provided",
)

_gpg_instances: Dict[Optional[str], gnupg.GPG] = {}
_gpg_lock = threading.Lock()


def get_gpg(gnupghome: Optional[str] = None) -> gnupg.GPG:
    """Shared GPG handle per home directory."""
    with _gpg_lock:
        gpg = _gpg_instances.get(gnupghome)
        if gpg is None:
            gpg = gnupg.GPG(gnupghome=gnupghome)
            _gpg_instances[gnupghome] = gpg
        return gpg


def classify_status(status: Optional[str], stderr: str, key_id: str):
    text = (status or "").lower()
    if any(s in text for s in _DENIED_STATUSES):
        return BackendDeniedError(f"gpg refused: {status}", key_id=key_id)
    if any(s in text for s in _INVALID_STATE_STATUSES):
        return BackendInvalidStateError(f"gpg key unusable: {status}", key_id=key_id)
    detail = status
    if not detail:
        lines = (stderr or "").strip().splitlines()
        detail = lines[-1] if lines else "unknown error"
    return BackendUnavailableError(f"gpg failed: {detail}", key_id=key_id)


@register_master_key
@dataclass
class PGPMasterKey(MasterKey):
    kind = "pgp"

    fingerprint: str = ""
    gnupghome: Optional[str] = None

    @property
    def identifier(self) -> str:
        return self.fingerprint

    def _gpg(self) -> gnupg.GPG:
        try:
            return get_gpg(self.gnupghome)
        except (OSError, ValueError, RuntimeError) as e:
            raise BackendUnavailableError(f"gpg is not usable: {e}", key_id=self.fingerprint) from e

    def wrap(self, data_key: bytes) -> bytes:
        gpg = self._gpg()
        logger.debug("encrypting data key to pgp key %s", self.fingerprint)
        result = gpg.encrypt(data_key, [self.fingerprint], armor=True, always_trust=True)
        if not result.ok:
            raise classify_status(result.status, getattr(result, "stderr", ""), self.fingerprint)
        return result.data

    def unwrap(self, blob: bytes) -> bytes:
        gpg = self._gpg()
        logger.debug("decrypting data key with pgp key %s", self.fingerprint)
        result = gpg.decrypt(blob)
        if not result.ok:
            raise classify_status(result.status, getattr(result, "stderr", ""), self.fingerprint)
        return result.data

    # armored messages are already text, keep them readable in the document

    def blob_to_text(self, blob: bytes) -> str:
        return blob.decode("ascii")

    @classmethod
    def text_to_blob(cls, text: str) -> bytes:
        try:
            return text.encode("ascii")
        except UnicodeEncodeError as e:
            raise MalformedKeyEntryError(f"pgp entry 'enc' is not an armored message: {e}") from e

    def to_map(self) -> Dict[str, Any]:
        return {
            "fp": self.fingerprint,
            "enc": self.blob_to_text(self.encrypted_key),
            "created_at": format_timestamp(self.creation_date),
        }

    @classmethod
    def from_map(cls, entry: Dict[str, Any]) -> "PGPMasterKey":
        fp = require_str(entry, "fp", cls.kind)
        enc = require_str(entry, "enc", cls.kind)
        created = parse_timestamp(require_str(entry, "created_at", cls.kind))
        return cls(fingerprint=fp, encrypted_key=cls.text_to_blob(enc), creation_date=created)
