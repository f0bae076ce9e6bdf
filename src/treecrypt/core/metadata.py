"""
Metadata envelope stored next to an encrypted tree

Layout of the persisted map (embedded under METADATA_KEY by the stores):

    version: "1.0"
    unencrypted_suffix: _unencrypted
    lastmodified: 2026-01-01T00:00:00Z
    mac: ENC[AES256_GCM,...]
    kms: [{arn, role?, enc, created_at}, ...]
    pgp: [{fp, enc, created_at}, ...]
    keyring: [{service, account, enc, created_at}, ...]

Each key source kind is a top-level list keyed by its name, so new kinds can be
added without touching existing ones.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Tuple

from treecrypt.security.masterkey import (
    MasterKey,
    format_timestamp,
    master_key_class,
    parse_timestamp,
    utcnow,
)
from .exceptions import MalformedKeyEntryError, MalformedMetadataError, MalformedTimestampError


logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0"
DEFAULT_UNENCRYPTED_SUFFIX = "_unencrypted"
METADATA_KEY = "treecrypt"

_RESERVED_FIELDS = ("version", "unencrypted_suffix", "lastmodified", "mac")


@dataclass
class KeySource:
    # a named group of master keys of one backend kind ("kms", "pgp", ...)
    name: str
    keys: List[MasterKey] = field(default_factory=list)

    def to_list(self) -> List[Dict[str, Any]]:
        return [key.to_map() for key in self.keys]


@dataclass
class Metadata:
    key_sources: List[KeySource] = field(default_factory=list)
    unencrypted_suffix: str = DEFAULT_UNENCRYPTED_SUFFIX
    last_modified: datetime = field(default_factory=utcnow)
    mac: str = ""
    version: str = FORMAT_VERSION

    def all_keys(self) -> Iterator[Tuple[KeySource, MasterKey]]:
        """Every master key, in persisted source order then key order."""
        for source in self.key_sources:
            for key in source.keys:
                yield source, key

    @property
    def lastmodified_text(self) -> str:
        return format_timestamp(self.last_modified)

    def to_map(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "version": self.version,
            "unencrypted_suffix": self.unencrypted_suffix,
            "lastmodified": self.lastmodified_text,
            "mac": self.mac,
        }
        for source in self.key_sources:
            out[source.name] = source.to_list()
        return out

    @classmethod
    def from_map(cls, data: Any) -> "Metadata":
        """Build Metadata from its persisted map.

        Required fields missing -> MalformedMetadataError. A bad lastmodified
        raises MalformedTimestampError. A bad key entry is logged and skipped,
        which may leave its source with no keys.
        """
        if not isinstance(data, dict):
            raise MalformedMetadataError("metadata block is missing or not a mapping")
        for name in ("version", "lastmodified", "mac"):
            if not isinstance(data.get(name), str):
                raise MalformedMetadataError(f"metadata field {name!r} is missing or not a string")
        suffix = data.get("unencrypted_suffix", DEFAULT_UNENCRYPTED_SUFFIX)
        if not isinstance(suffix, str):
            raise MalformedMetadataError("metadata field 'unencrypted_suffix' must be a string")

        metadata = cls(
            unencrypted_suffix=suffix,
            last_modified=parse_timestamp(data["lastmodified"]),
            mac=data["mac"],
            version=data["version"],
        )

        for name, entries in data.items():
            if name in _RESERVED_FIELDS:
                continue
            key_cls = master_key_class(name)
            if key_cls is None:
                logger.warning("ignoring unknown key source %r in metadata", name)
                continue
            if not isinstance(entries, list):
                logger.warning("key source %r is not a list, ignoring it", name)
                continue
            source = KeySource(name=name)
            for index, entry in enumerate(entries):
                try:
                    source.keys.append(key_cls.from_map(entry))
                except (MalformedKeyEntryError, MalformedTimestampError) as e:
                    logger.warning("skipping %s key entry #%d: %s", name, index, e)
            if not source.keys and entries:
                logger.warning("key source %r has no usable keys left", name)
            metadata.key_sources.append(source)
        return metadata
