"""Shared fixtures: an in-process master key backend that needs no network."""

import hashlib
import os
import time
from dataclasses import dataclass
from typing import Any, Dict

import pytest
from cryptography.hazmat.primitives.keywrap import InvalidUnwrap

from treecrypt.core.exceptions import BackendInvalidStateError, BackendUnavailableError
from treecrypt.core.tree import TreeBranch
from treecrypt.security.crypto import unwrap_data_key, wrap_data_key
from treecrypt.security.masterkey import (
    MasterKey,
    format_timestamp,
    parse_timestamp,
    register_master_key,
    require_str,
)


@register_master_key
@dataclass
class FakeMasterKey(MasterKey):
    """Wraps with AES key wrap under a secret derived from its name."""

    kind = "fake"

    name: str = ""
    fail_wrap: bool = False
    fail_unwrap: bool = False
    garbage_unwrap: bool = False
    delay: float = 0.0

    @property
    def identifier(self) -> str:
        return f"fake:{self.name}"

    def _secret(self) -> bytes:
        return hashlib.sha256(self.name.encode("utf-8")).digest()

    def wrap(self, data_key: bytes) -> bytes:
        if self.delay:
            time.sleep(self.delay)
        if self.fail_wrap:
            raise BackendUnavailableError("simulated outage", key_id=self.identifier)
        return wrap_data_key(self._secret(), data_key)

    def unwrap(self, blob: bytes) -> bytes:
        if self.delay:
            time.sleep(self.delay)
        if self.fail_unwrap:
            raise BackendUnavailableError("simulated outage", key_id=self.identifier)
        if self.garbage_unwrap:
            return os.urandom(32)
        try:
            return unwrap_data_key(self._secret(), blob)
        except InvalidUnwrap as e:
            raise BackendInvalidStateError("wrong key", key_id=self.identifier) from e

    def to_map(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "enc": self.blob_to_text(self.encrypted_key),
            "created_at": format_timestamp(self.creation_date),
        }

    @classmethod
    def from_map(cls, entry: Dict[str, Any]) -> "FakeMasterKey":
        return cls(
            name=require_str(entry, "name", cls.kind),
            encrypted_key=cls.text_to_blob(require_str(entry, "enc", cls.kind)),
            creation_date=parse_timestamp(require_str(entry, "created_at", cls.kind)),
        )


@pytest.fixture
def fake_key():
    """The FakeMasterKey class; call it to build keys."""
    return FakeMasterKey


@pytest.fixture
def sample_tree():
    """Returns the prod-db example document."""
    return TreeBranch.from_pairs([
        ("name", "prod-db"),
        ("password", "s3cr3t"),
        ("password_unencrypted", "hint"),
        ("replicas", 3),
    ])


@pytest.fixture
def nested_tree():
    """Returns a document with every scalar type, nesting and lists."""
    return TreeBranch.from_pairs([
        ("service", "api"),
        ("enabled", True),
        ("ratio", 0.25),
        ("port", 8443),
        ("nothing", None),
        ("numeric_string", "42"),
        ("db", TreeBranch.from_pairs([
            ("user", "admin"),
            ("hosts", ["a.internal", "b.internal", 5432]),
            ("opts", TreeBranch.from_pairs([("ssl", False), ("comment_unencrypted", "ask ops")])),
        ])),
        ("matrix", [[1, 2], [TreeBranch.from_pairs([("k", "v")])]]),
    ])
