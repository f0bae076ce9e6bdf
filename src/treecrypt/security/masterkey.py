"""
Master key abstraction.

A master key wraps and unwraps the document data key through some key
management backend. Every variant has the same capability set:

- wrap(data_key) -> backend-native blob
- unwrap(blob) -> data key
- to_map() / from_map() for the persisted metadata entry

Variants are selected by their ``kind`` discriminant (the key source name in
metadata), never by inspecting Python types.
"""

from __future__ import annotations

import base64
import binascii
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Optional, Type

from treecrypt.core.exceptions import MalformedKeyEntryError, MalformedTimestampError


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utcnow() -> datetime:
    # whole seconds so the persisted form round-trips exactly
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise MalformedTimestampError(f"timestamp must be a string, got {type(value).__name__}")
    try:
        parsed = datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError as e:
        raise MalformedTimestampError(f"could not parse timestamp {value!r}: {e}") from e
    return parsed.replace(tzinfo=timezone.utc)


@dataclass
class MasterKey(ABC):
    """Base class for all master key variants."""

    kind: ClassVar[str] = ""

    encrypted_key: bytes = field(default=b"", repr=False)
    creation_date: datetime = field(default_factory=utcnow)

    @property
    @abstractmethod
    def identifier(self) -> str:
        """Human readable id used in logs and error messages."""

    @abstractmethod
    def wrap(self, data_key: bytes) -> bytes:
        """Encrypt the data key, returning the backend-native blob."""

    @abstractmethod
    def unwrap(self, blob: bytes) -> bytes:
        """Decrypt a blob produced by wrap."""

    @abstractmethod
    def to_map(self) -> Dict[str, Any]:
        """Ordered dict of exactly the persisted fields."""

    @classmethod
    @abstractmethod
    def from_map(cls, entry: Dict[str, Any]) -> "MasterKey":
        """Rebuild a key from its persisted entry (MalformedKeyEntryError on bad input)."""

    def with_encrypted_key(self, blob: bytes, creation_date: Optional[datetime] = None) -> "MasterKey":
        """Copy of this key carrying a freshly wrapped blob."""
        return replace(self, encrypted_key=blob, creation_date=creation_date or utcnow())

    def decrypt_data_key(self) -> bytes:
        if not self.encrypted_key:
            raise MalformedKeyEntryError(f"{self.identifier}: no wrapped data key stored")
        return self.unwrap(self.encrypted_key)

    # blob <-> persisted text, base64 unless a backend has its own text form

    def blob_to_text(self, blob: bytes) -> str:
        return base64.b64encode(blob).decode("ascii")

    @classmethod
    def text_to_blob(cls, text: str) -> bytes:
        try:
            return base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedKeyEntryError(f"{cls.kind} entry has an invalid 'enc' value: {e}") from e


def require_str(entry: Dict[str, Any], name: str, kind: str, optional: bool = False) -> Optional[str]:
    """Fetch a string field from a persisted key entry."""
    if not isinstance(entry, dict):
        raise MalformedKeyEntryError(f"{kind} entry must be a mapping, got {type(entry).__name__}")
    value = entry.get(name)
    if value is None:
        if optional:
            return None
        raise MalformedKeyEntryError(f"{kind} entry is missing required field {name!r}")
    if not isinstance(value, str):
        raise MalformedKeyEntryError(
            f"{kind} entry field {name!r} must be a string, got {type(value).__name__}"
        )
    return value


MASTER_KEY_KINDS: Dict[str, Type[MasterKey]] = {}


def register_master_key(cls: Type[MasterKey]) -> Type[MasterKey]:
    """Class decorator adding a variant to the kind registry."""
    if not cls.kind:
        raise ValueError(f"{cls.__name__} has no kind")
    MASTER_KEY_KINDS[cls.kind] = cls
    return cls


def master_key_class(kind: str) -> Optional[Type[MasterKey]]:
    return MASTER_KEY_KINDS.get(kind)
