"""Whole-document helpers: store -> engine -> store."""

from __future__ import annotations

import threading
from typing import Optional, Sequence

from treecrypt.config import Settings
from treecrypt.stores.base import Store
from .engine import DecryptResult, TreeEncryptor
from .metadata import DEFAULT_UNENCRYPTED_SUFFIX, KeySource, Metadata


def _resolve(
    store: Store,
    text: str,
    encryptor: Optional[TreeEncryptor],
    settings: Optional[Settings],
) -> tuple[TreeEncryptor, Metadata]:
    # keys loaded from metadata get the configured backend options back
    metadata = store.load_metadata(text)
    if settings is not None:
        metadata = settings.apply(metadata)
        encryptor = encryptor or settings.encryptor()
    return encryptor or TreeEncryptor(), metadata


def encrypt_text(
    text: str,
    store: Store,
    key_sources: Sequence[KeySource],
    unencrypted_suffix: str = DEFAULT_UNENCRYPTED_SUFFIX,
    encryptor: Optional[TreeEncryptor] = None,
    cancel: Optional[threading.Event] = None,
) -> str:
    """Encrypt a plaintext document and return it with its metadata block."""
    encryptor = encryptor or TreeEncryptor()
    tree = store.load(text)
    result = encryptor.encrypt(tree, key_sources, unencrypted_suffix, cancel=cancel)
    return store.dump_with_metadata(result.tree, result.metadata)


def decrypt_text(
    text: str,
    store: Store,
    encryptor: Optional[TreeEncryptor] = None,
    insecure: bool = False,
    cancel: Optional[threading.Event] = None,
    settings: Optional[Settings] = None,
) -> str:
    """Decrypt an encrypted document and return plaintext without metadata."""
    result = decrypt_document(text, store, encryptor, insecure, cancel, settings)
    return store.dump(result.tree)


def decrypt_document(
    text: str,
    store: Store,
    encryptor: Optional[TreeEncryptor] = None,
    insecure: bool = False,
    cancel: Optional[threading.Event] = None,
    settings: Optional[Settings] = None,
) -> DecryptResult:
    encryptor, metadata = _resolve(store, text, encryptor, settings)
    tree = store.load(text)
    return encryptor.decrypt(tree, metadata, insecure=insecure, cancel=cancel)


def rotate_text(
    text: str,
    store: Store,
    key_sources: Optional[Sequence[KeySource]] = None,
    encryptor: Optional[TreeEncryptor] = None,
    cancel: Optional[threading.Event] = None,
    settings: Optional[Settings] = None,
) -> str:
    """Re-encrypt a document under a fresh data key, keeping its keys unless key_sources is given."""
    encryptor, metadata = _resolve(store, text, encryptor, settings)
    tree = store.load(text)
    result = encryptor.rotate(tree, metadata, key_sources, cancel=cancel)
    return store.dump_with_metadata(result.tree, result.metadata)
