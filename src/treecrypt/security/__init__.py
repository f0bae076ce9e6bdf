"""Security helpers: data keys, leaf envelopes and the master key backends.

This package provides:
- AES-256-GCM leaf envelopes bound to the leaf path
- the document MAC digest
- master key variants (AWS KMS, PGP, OS keystore) behind one interface

Importing the package registers every master key kind.
"""

from .crypto import (
    generate_data_key,
    encrypt_value,
    decrypt_value,
    is_envelope,
    compute_mac,
)
from .masterkey import MasterKey, MASTER_KEY_KINDS, register_master_key, master_key_class
from .kms import KMSMasterKey
from .pgp import PGPMasterKey
from .keystore import KeyringMasterKey, create_local_key, save_key, load_key, delete_key

__all__ = [
    "generate_data_key",
    "encrypt_value",
    "decrypt_value",
    "is_envelope",
    "compute_mac",
    "MasterKey",
    "MASTER_KEY_KINDS",
    "register_master_key",
    "master_key_class",
    "KMSMasterKey",
    "PGPMasterKey",
    "KeyringMasterKey",
    "create_local_key",
    "save_key",
    "load_key",
    "delete_key",
]
