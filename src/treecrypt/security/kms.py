"""AWS KMS master keys.

Wraps the data key with KMS Encrypt/Decrypt. When a role is set, credentials
are obtained with STS AssumeRole first. Clients are cached per (region, role)
and rebuilt when assumed-role credentials near expiry. boto3 clients are safe
to share between threads, the session that creates them is not, so creation
happens under a lock.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from treecrypt.core.exceptions import (
    BackendDeniedError,
    BackendInvalidStateError,
    BackendUnavailableError,
    MalformedKeyEntryError,
)
from .masterkey import MasterKey, format_timestamp, parse_timestamp, register_master_key, require_str


logger = logging.getLogger(__name__)

ROLE_SESSION_NAME = "treecrypt"

_DENIED_CODES = {"AccessDeniedException", "AccessDenied", "KMSAccessDeniedException"}
_INVALID_STATE_CODES = {
    "DisabledException",
    "NotFoundException",
    "KMSInvalidStateException",
    "InvalidCiphertextException",
    "IncorrectKeyException",
    "InvalidKeyUsageException",
    "InvalidArnException",
}

_clients: Dict[Tuple[str, Optional[str], Optional[float]], Tuple[Any, Optional[datetime]]] = {}
_clients_lock = threading.Lock()

# assumed-role clients are rebuilt this long before their credentials expire
CREDENTIAL_REFRESH_MARGIN = timedelta(minutes=5)


def region_from_arn(arn: str) -> str:
    # arn:aws:kms:<region>:<account>:key/<id>
    parts = arn.split(":")
    if len(parts) < 6 or parts[0] != "arn" or not parts[3]:
        raise MalformedKeyEntryError(f"not a KMS key ARN: {arn!r}")
    return parts[3]


def _client_config(timeout: Optional[float]) -> Config:
    if timeout is None:
        return Config(retries={"max_attempts": 3, "mode": "standard"})
    return Config(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"max_attempts": 3, "mode": "standard"},
    )


def get_kms_client(region: str, role: Optional[str] = None, timeout: Optional[float] = None):
    """Return a cached KMS client for region, assuming role if given.

    Clients built from assumed-role credentials are replaced once those
    credentials are about to expire.
    """
    cache_key = (region, role, timeout)
    with _clients_lock:
        cached = _clients.get(cache_key)
        if cached is not None:
            client, expires = cached
            if expires is None or datetime.now(timezone.utc) < expires - CREDENTIAL_REFRESH_MARGIN:
                return client
            logger.debug("credentials for role %s expire at %s, assuming it again", role, expires)
        config = _client_config(timeout)
        expires = None
        if role:
            sts = boto3.client("sts", region_name=region, config=config)
            creds = sts.assume_role(RoleArn=role, RoleSessionName=ROLE_SESSION_NAME)["Credentials"]
            client = boto3.client(
                "kms",
                region_name=region,
                aws_access_key_id=creds["AccessKeyId"],
                aws_secret_access_key=creds["SecretAccessKey"],
                aws_session_token=creds["SessionToken"],
                config=config,
            )
            expires = _expiration(creds.get("Expiration"))
        else:
            client = boto3.client("kms", region_name=region, config=config)
        _clients[cache_key] = (client, expires)
        return client


def _expiration(value: Any) -> Optional[datetime]:
    # boto3 parses Expiration into an aware datetime
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def clear_client_cache() -> None:
    with _clients_lock:
        _clients.clear()


def classify_error(error: Exception, key_id: str):
    """Map a botocore exception onto the backend error taxonomy."""
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        message = error.response.get("Error", {}).get("Message", "") or str(error)
        if code in _DENIED_CODES:
            return BackendDeniedError(f"access denied ({code}): {message}", key_id=key_id)
        if code in _INVALID_STATE_CODES:
            return BackendInvalidStateError(f"key unusable ({code}): {message}", key_id=key_id)
        return BackendUnavailableError(f"KMS call failed ({code}): {message}", key_id=key_id)
    return BackendUnavailableError(f"could not reach KMS: {error}", key_id=key_id)


@register_master_key
@dataclass
class KMSMasterKey(MasterKey):
    kind = "kms"

    arn: str = ""
    role: Optional[str] = None
    timeout: Optional[float] = None

    @property
    def identifier(self) -> str:
        return self.arn

    def _client(self):
        return get_kms_client(region_from_arn(self.arn), self.role, self.timeout)

    def wrap(self, data_key: bytes) -> bytes:
        logger.debug("encrypting data key with KMS key %s", self.arn)
        try:
            response = self._client().encrypt(KeyId=self.arn, Plaintext=data_key)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, self.arn) from e
        return response["CiphertextBlob"]

    def unwrap(self, blob: bytes) -> bytes:
        logger.debug("decrypting data key with KMS key %s", self.arn)
        try:
            response = self._client().decrypt(CiphertextBlob=blob, KeyId=self.arn)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, self.arn) from e
        return response["Plaintext"]

    def to_map(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"arn": self.arn}
        if self.role:
            out["role"] = self.role
        out["enc"] = self.blob_to_text(self.encrypted_key)
        out["created_at"] = format_timestamp(self.creation_date)
        return out

    @classmethod
    def from_map(cls, entry: Dict[str, Any]) -> "KMSMasterKey":
        arn = require_str(entry, "arn", cls.kind)
        enc = require_str(entry, "enc", cls.kind)
        role = require_str(entry, "role", cls.kind, optional=True)
        created = parse_timestamp(require_str(entry, "created_at", cls.kind))
        return cls(
            arn=arn,
            role=role or None,
            encrypted_key=cls.text_to_blob(enc),
            creation_date=created,
        )
