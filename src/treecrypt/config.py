"""Runtime settings read from environment variables.

- TREECRYPT_UNENCRYPTED_SUFFIX   key suffix left in plaintext (default ``_unencrypted``)
- TREECRYPT_KMS_ARNS             comma separated KMS key ARNs; ``arn+role_arn`` assumes a role
- TREECRYPT_PGP_FINGERPRINTS     comma separated PGP fingerprints
- TREECRYPT_KEYRING_KEYS         comma separated ``service/account`` OS keystore entries
- TREECRYPT_MAX_WORKERS          threads used for backend calls (default 4)
- TREECRYPT_BACKEND_TIMEOUT      seconds to wait for one backend call (default: no limit)
- TREECRYPT_GNUPGHOME            gpg home directory
- TREECRYPT_LOG_LEVEL            logging level name (default INFO)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import List, Mapping, Optional, Tuple

from treecrypt.core.engine import TreeEncryptor
from treecrypt.core.metadata import DEFAULT_UNENCRYPTED_SUFFIX, KeySource, Metadata
from treecrypt.security.keystore import KeyringMasterKey
from treecrypt.security.kms import KMSMasterKey
from treecrypt.security.pgp import PGPMasterKey


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class Settings:
    unencrypted_suffix: str = DEFAULT_UNENCRYPTED_SUFFIX
    kms_arns: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    pgp_fingerprints: List[str] = field(default_factory=list)
    keyring_keys: List[Tuple[str, str]] = field(default_factory=list)
    max_workers: int = 4
    backend_timeout: Optional[float] = None
    gnupghome: Optional[str] = None
    log_level: str = "INFO"

    def key_sources(self) -> List[KeySource]:
        """Configured master keys grouped by kind (kms, pgp, keyring); empty kinds are left out."""
        sources = []
        if self.kms_arns:
            sources.append(KeySource("kms", [
                KMSMasterKey(arn=arn, role=role, timeout=self.backend_timeout)
                for arn, role in self.kms_arns
            ]))
        if self.pgp_fingerprints:
            sources.append(KeySource("pgp", [
                PGPMasterKey(fingerprint=fp, gnupghome=self.gnupghome)
                for fp in self.pgp_fingerprints
            ]))
        if self.keyring_keys:
            sources.append(KeySource("keyring", [
                KeyringMasterKey(service=service, account=account)
                for service, account in self.keyring_keys
            ]))
        return sources

    def apply(self, metadata: Metadata) -> Metadata:
        """Copy of loaded metadata whose keys carry the local backend options.

        Persisted key entries only hold identifiers, so the gpg home and the
        KMS client timeout have to be set again before decrypting.
        """
        sources = []
        for source in metadata.key_sources:
            keys = []
            for key in source.keys:
                if key.kind == "kms":
                    key = replace(key, timeout=self.backend_timeout)
                elif key.kind == "pgp":
                    key = replace(key, gnupghome=self.gnupghome)
                keys.append(key)
            sources.append(KeySource(source.name, keys))
        return replace(metadata, key_sources=sources)

    def encryptor(self) -> TreeEncryptor:
        return TreeEncryptor(max_workers=self.max_workers, backend_timeout=self.backend_timeout)


def load_settings(environ: Mapping[str, str] = os.environ) -> Settings:
    """Build Settings from the environment; ValueError on malformed values."""
    kms = []
    for entry in _split(environ.get("TREECRYPT_KMS_ARNS")):
        arn, _, role = entry.partition("+")
        kms.append((arn, role or None))

    keyring_keys = []
    for entry in _split(environ.get("TREECRYPT_KEYRING_KEYS")):
        service, sep, account = entry.partition("/")
        if not sep or not service or not account:
            raise ValueError(f"TREECRYPT_KEYRING_KEYS entry must be service/account, got {entry!r}")
        keyring_keys.append((service, account))

    try:
        max_workers = int(environ.get("TREECRYPT_MAX_WORKERS", "4"))
    except ValueError as e:
        raise ValueError(f"TREECRYPT_MAX_WORKERS must be an integer: {e}") from e
    if max_workers < 1:
        raise ValueError("TREECRYPT_MAX_WORKERS must be at least 1")

    timeout = environ.get("TREECRYPT_BACKEND_TIMEOUT")
    try:
        backend_timeout = float(timeout) if timeout else None
    except ValueError as e:
        raise ValueError(f"TREECRYPT_BACKEND_TIMEOUT must be a number: {e}") from e

    return Settings(
        unencrypted_suffix=environ.get("TREECRYPT_UNENCRYPTED_SUFFIX", DEFAULT_UNENCRYPTED_SUFFIX),
        kms_arns=kms,
        pgp_fingerprints=_split(environ.get("TREECRYPT_PGP_FINGERPRINTS")),
        keyring_keys=keyring_keys,
        max_workers=max_workers,
        backend_timeout=backend_timeout,
        gnupghome=environ.get("TREECRYPT_GNUPGHOME") or None,
        log_level=environ.get("TREECRYPT_LOG_LEVEL", "INFO"),
    )
