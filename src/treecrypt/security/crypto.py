"""AEAD primitives for tree leaves, the document MAC and local key wrapping.

Leaf envelope (string form, stored in place of the plaintext value):

    ENC[AES256_GCM,data:<b64>,iv:<b64>,tag:<b64>,type:<scalar tag>]

- data: AES-256-GCM ciphertext without the tag
- iv: 12-byte random nonce, fresh per value
- tag: 16-byte GCM tag
- type: ScalarType tag so decryption restores the original Python type

The additional authenticated data is the leaf's rendered path, so a ciphertext
only authenticates at the path it was produced for.
"""
import base64
import binascii
import hashlib
import os
import re
from typing import Any, Iterable, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.keywrap import aes_key_unwrap, aes_key_wrap

from treecrypt.core.exceptions import IntegrityCheckFailedError
from treecrypt.core.tree import ScalarType


DATA_KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
CIPHER_NAME = "AES256_GCM"

_ENVELOPE_RE = re.compile(
    r"^ENC\[(?P<cipher>[A-Z0-9_]+),data:(?P<data>[A-Za-z0-9+/=]*),"
    r"iv:(?P<iv>[A-Za-z0-9+/=]+),tag:(?P<tag>[A-Za-z0-9+/=]+),type:(?P<type>[a-z]+)\]$"
)


def generate_data_key() -> bytes:
    return os.urandom(DATA_KEY_SIZE)


def derive_kek(secret: bytes, info: bytes = b"treecrypt-kek") -> bytes:
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=info)
    return hkdf.derive(secret)


def wrap_data_key(secret: bytes, data_key: bytes) -> bytes:
    kek = derive_kek(secret)
    return aes_key_wrap(kek, data_key)


def unwrap_data_key(secret: bytes, wrapped: bytes) -> bytes:
    kek = derive_kek(secret)
    return aes_key_unwrap(kek, wrapped)


# ----------------------------------------------------------------------
# Scalar serialization
# ----------------------------------------------------------------------

def serialize_scalar(value: Any) -> Tuple[bytes, ScalarType]:
    stype = ScalarType.of(value)
    if stype is ScalarType.STRING:
        raw = value.encode("utf-8")
    elif stype is ScalarType.BOOLEAN:
        raw = b"True" if value else b"False"
    elif stype is ScalarType.FLOAT:
        raw = repr(value).encode("ascii")
    elif stype is ScalarType.INTEGER:
        raw = str(value).encode("ascii")
    else:
        raw = b""
    return raw, stype


def deserialize_scalar(raw: bytes, stype: ScalarType) -> Any:
    try:
        text = raw.decode("utf-8")
        if stype is ScalarType.STRING:
            return text
        if stype is ScalarType.INTEGER:
            return int(text)
        if stype is ScalarType.FLOAT:
            return float(text)
        if stype is ScalarType.BOOLEAN:
            if text not in ("True", "False"):
                raise ValueError(f"invalid boolean {text!r}")
            return text == "True"
        if raw:
            raise ValueError("null value with a payload")
        return None
    except ValueError as e:
        raise IntegrityCheckFailedError(f"decrypted value does not match its type tag: {e}") from e


# ----------------------------------------------------------------------
# Envelopes
# ----------------------------------------------------------------------

def is_envelope(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("ENC[") and value.endswith("]")


def encrypt_value(value: Any, data_key: bytes, aad: str) -> str:
    """Encrypt a scalar and return its string envelope."""
    raw, stype = serialize_scalar(value)
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(data_key).encrypt(nonce, raw, aad.encode("utf-8"))
    ct, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return "ENC[{},data:{},iv:{},tag:{},type:{}]".format(
        CIPHER_NAME,
        base64.b64encode(ct).decode("ascii"),
        base64.b64encode(nonce).decode("ascii"),
        base64.b64encode(tag).decode("ascii"),
        stype.value,
    )


def parse_envelope(envelope: str) -> Tuple[bytes, bytes, bytes, ScalarType]:
    """Split an envelope into (ciphertext, nonce, tag, type).

    Raises IntegrityCheckFailedError when the envelope is malformed.
    """
    m = _ENVELOPE_RE.match(envelope) if isinstance(envelope, str) else None
    if m is None or m.group("cipher") != CIPHER_NAME:
        raise IntegrityCheckFailedError("malformed encrypted value")
    try:
        ct = base64.b64decode(m.group("data"), validate=True)
        nonce = base64.b64decode(m.group("iv"), validate=True)
        tag = base64.b64decode(m.group("tag"), validate=True)
        stype = ScalarType(m.group("type"))
    except (binascii.Error, ValueError) as e:
        raise IntegrityCheckFailedError(f"malformed encrypted value: {e}") from e
    if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
        raise IntegrityCheckFailedError("malformed encrypted value (bad iv or tag length)")
    return ct, nonce, tag, stype


def decrypt_value(envelope: str, data_key: bytes, aad: str) -> Any:
    """Decrypt an envelope produced by encrypt_value.

    Raises cryptography's InvalidTag when the ciphertext does not authenticate
    under ``data_key`` and ``aad``; the caller decides what that means.
    """
    ct, nonce, tag, stype = parse_envelope(envelope)
    raw = AESGCM(data_key).decrypt(nonce, ct + tag, aad.encode("utf-8"))
    return deserialize_scalar(raw, stype)


def authenticates(envelope: str, data_key: bytes, aad: str) -> bool:
    """True if the envelope authenticates under data_key and aad."""
    try:
        ct, nonce, tag, _ = parse_envelope(envelope)
        AESGCM(data_key).decrypt(nonce, ct + tag, aad.encode("utf-8"))
    except (InvalidTag, IntegrityCheckFailedError):
        return False
    return True


# ----------------------------------------------------------------------
# Document MAC
# ----------------------------------------------------------------------

def compute_mac(values: Iterable[Any]) -> str:
    """SHA-512 over all plaintext leaves in traversal order, upper-case hex.

    Each leaf is fed as a length-prefixed ``type:value`` record so neither a
    type change nor a shift of bytes between neighbouring leaves goes unnoticed.
    """
    h = hashlib.sha512()
    for value in values:
        raw, stype = serialize_scalar(value)
        record = stype.value.encode("ascii") + b":" + raw
        h.update(len(record).to_bytes(8, "big"))
        h.update(record)
    return h.hexdigest().upper()
