"""
Unit tests for the metadata envelope.
"""

import logging
from datetime import datetime, timezone

import pytest

from treecrypt.core.exceptions import MalformedMetadataError, MalformedTimestampError
from treecrypt.core.metadata import FORMAT_VERSION, KeySource, Metadata


STAMP = datetime(2026, 5, 6, 7, 8, 9, tzinfo=timezone.utc)


@pytest.fixture
def metadata(fake_key):
    return Metadata(
        key_sources=[
            KeySource("fake", [
                fake_key(name="k1", encrypted_key=b"one", creation_date=STAMP),
                fake_key(name="k2", encrypted_key=b"two", creation_date=STAMP),
            ]),
        ],
        unencrypted_suffix="_plain",
        last_modified=STAMP,
        mac="ENC[AES256_GCM,data:AA==,iv:AA==,tag:AA==,type:str]",
    )


def fake_entry(name, enc="b25l", created_at="2026-05-06T07:08:09Z"):
    return {"name": name, "enc": enc, "created_at": created_at}


def base_map(**extra):
    data = {
        "version": FORMAT_VERSION,
        "unencrypted_suffix": "_unencrypted",
        "lastmodified": "2026-05-06T07:08:09Z",
        "mac": "ENC[...]",
    }
    data.update(extra)
    return data


# ==============================================================================
# Tests: to_map
# ==============================================================================

def test_to_map_layout(metadata):
    data = metadata.to_map()

    assert list(data) == ["version", "unencrypted_suffix", "lastmodified", "mac", "fake"]
    assert data["version"] == "1.0"
    assert data["unencrypted_suffix"] == "_plain"
    assert data["lastmodified"] == "2026-05-06T07:08:09Z"
    assert [e["name"] for e in data["fake"]] == ["k1", "k2"]


def test_roundtrip_preserves_fields(metadata):
    restored = Metadata.from_map(metadata.to_map())

    assert restored.unencrypted_suffix == "_plain"
    assert restored.last_modified == STAMP
    assert restored.mac == metadata.mac
    assert restored.version == FORMAT_VERSION
    keys = [key for _, key in restored.all_keys()]
    assert [k.name for k in keys] == ["k1", "k2"]
    assert [k.encrypted_key for k in keys] == [b"one", b"two"]


def test_all_keys_follows_source_order(fake_key):
    metadata = Metadata(key_sources=[
        KeySource("fake", [fake_key(name="a")]),
        KeySource("fake", [fake_key(name="b"), fake_key(name="c")]),
    ])
    assert [(s.name, k.name) for s, k in metadata.all_keys()] == [("fake", "a"), ("fake", "b"), ("fake", "c")]


# ==============================================================================
# Tests: from_map validation
# ==============================================================================

@pytest.mark.parametrize("missing", ["version", "lastmodified", "mac"])
def test_missing_required_field(missing):
    data = base_map()
    del data[missing]
    with pytest.raises(MalformedMetadataError, match=missing):
        Metadata.from_map(data)


def test_suffix_defaults_when_absent():
    data = base_map()
    del data["unencrypted_suffix"]
    assert Metadata.from_map(data).unencrypted_suffix == "_unencrypted"


def test_non_string_suffix_is_rejected():
    with pytest.raises(MalformedMetadataError, match="unencrypted_suffix"):
        Metadata.from_map(base_map(unencrypted_suffix=5))


def test_not_a_mapping():
    with pytest.raises(MalformedMetadataError):
        Metadata.from_map(["version"])


def test_bad_lastmodified():
    with pytest.raises(MalformedTimestampError):
        Metadata.from_map(base_map(lastmodified="May 6th"))


def test_malformed_entry_is_skipped(caplog):
    data = base_map(fake=[
        fake_entry("good"),
        {"enc": "b25l", "created_at": "2026-05-06T07:08:09Z"},
        fake_entry("bad-date", created_at="never"),
    ])

    with caplog.at_level(logging.WARNING):
        metadata = Metadata.from_map(data)

    assert [k.name for _, k in metadata.all_keys()] == ["good"]
    assert "skipping fake key entry #1" in caplog.text
    assert "skipping fake key entry #2" in caplog.text


def test_source_with_only_bad_entries_is_kept_empty(caplog):
    with caplog.at_level(logging.WARNING):
        metadata = Metadata.from_map(base_map(fake=[{"name": 1}]))

    assert len(metadata.key_sources) == 1
    assert metadata.key_sources[0].keys == []
    assert "no usable keys" in caplog.text


def test_unknown_source_is_ignored(caplog):
    with caplog.at_level(logging.WARNING):
        metadata = Metadata.from_map(base_map(hsm=[{"slot": 1}], fake=[fake_entry("k")]))

    assert [s.name for s in metadata.key_sources] == ["fake"]
    assert "unknown key source 'hsm'" in caplog.text


def test_non_list_source_is_ignored(caplog):
    with caplog.at_level(logging.WARNING):
        metadata = Metadata.from_map(base_map(fake={"name": "k"}))
    assert metadata.key_sources == []
    assert "is not a list" in caplog.text
