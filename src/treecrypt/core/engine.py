"""
Tree encryption engine

Encrypt:
  1. generate one random data key
  2. wrap it under every master key (concurrently); failures are collected per
     key, only a total failure aborts
  3. encrypt every leaf not excluded by the unencrypted suffix, binding the
     ciphertext to the leaf path through the AEAD additional data
  4. MAC all plaintext leaves in traversal order, encrypt the MAC

Decrypt is the mirror: recover the data key from the first master key that
unwraps, decrypt leaves at their current path, recompute and compare the MAC.

Trees are never modified in place; each call returns a fresh tree, so a failed
or cancelled call leaves the caller's tree as it was.
"""

from __future__ import annotations

import hmac
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from cryptography.exceptions import InvalidTag

from treecrypt.security import crypto
from treecrypt.security.masterkey import MasterKey, format_timestamp, utcnow
from .exceptions import (
    BackendUnavailableError,
    CancelledError,
    IntegrityCheckFailedError,
    IntegrityComputationFailedError,
    InvalidDataKeyError,
    NoKeyAvailableError,
    PathBindingViolationError,
    TreeCryptError,
)
from .metadata import DEFAULT_UNENCRYPTED_SUFFIX, KeySource, Metadata
from .tree import TreeBranch, TreePath, last_key, map_leaves, render_path, validate_tree, walk_leaves


logger = logging.getLogger(__name__)

# how often waiting threads look at the cancellation token
_POLL_INTERVAL = 0.05


@dataclass
class KeyOutcome:
    # result of one wrap/unwrap attempt; exactly one of result/error is set
    source: str
    key: MasterKey
    result: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class EncryptResult:
    tree: TreeBranch
    metadata: Metadata
    failures: List[KeyOutcome] = field(default_factory=list)


@dataclass
class DecryptResult:
    tree: TreeBranch
    key_source: str
    key_id: str
    mac_verified: bool = True


def is_unencrypted(path: TreePath, suffix: str) -> bool:
    key = last_key(path)
    return bool(suffix) and key is not None and key.endswith(suffix)


class TreeEncryptor:
    """Encrypts and decrypts trees under a set of master keys.

    max_workers bounds the thread pool used for backend calls.
    backend_timeout (seconds) bounds each wrap/unwrap call; a key that does not
    answer in time counts as unavailable.
    """

    def __init__(self, max_workers: int = 4, backend_timeout: Optional[float] = None):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self.backend_timeout = backend_timeout

    # ------------------------------------------------------------------
    # Backend calls
    # ------------------------------------------------------------------

    def _run_key_calls(
        self,
        jobs: Sequence[Tuple[str, MasterKey]],
        call: Callable[[MasterKey], Any],
        cancel: Optional[threading.Event],
        stop_on_success: bool,
    ) -> List[KeyOutcome]:
        """Run call(key) for every job on the pool, one result slot per job.

        With stop_on_success the first successful completion ends the run and
        outstanding attempts are cancelled; their late results are dropped.
        """
        outcomes: List[Optional[KeyOutcome]] = [None] * len(jobs)
        if not jobs:
            return []
        deadline = None if self.backend_timeout is None else time.monotonic() + self.backend_timeout

        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="treecrypt-key")
        try:
            futures: Dict[Future, int] = {
                executor.submit(call, key): index for index, (_, key) in enumerate(jobs)
            }
            pending = set(futures)
            while pending:
                if cancel is not None and cancel.is_set():
                    raise CancelledError("operation cancelled while waiting on key backends")
                timeout = _POLL_INTERVAL
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    timeout = min(timeout, remaining)
                done, pending = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=futures.get):
                    index = futures[future]
                    source, key = jobs[index]
                    try:
                        outcomes[index] = KeyOutcome(source, key, result=future.result())
                    except TreeCryptError as e:
                        outcomes[index] = KeyOutcome(source, key, error=e)
                    except Exception as e:
                        # a backend that fails to classify its own error still only loses its key
                        outcomes[index] = KeyOutcome(source, key, error=_unexpected_error(key, e))
                    if stop_on_success and outcomes[index].ok:
                        return [o for o in outcomes if o is not None]
            for future in pending:
                index = futures[future]
                source, key = jobs[index]
                outcomes[index] = KeyOutcome(
                    source, key, error=_timeout_error(key, self.backend_timeout)
                )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return [o for o in outcomes if o is not None]

    def wrap_data_key(
        self,
        data_key: bytes,
        key_sources: Sequence[KeySource],
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[List[KeySource], List[KeyOutcome]]:
        """Wrap data_key under every key. Returns (wrapped sources, failures)."""
        jobs = [(source.name, key) for source in key_sources for key in source.keys]
        outcomes = self._run_key_calls(jobs, lambda key: key.wrap(data_key), cancel, stop_on_success=False)

        # every slot is filled when not stopping early, so outcomes line up with jobs
        owners = [index for index, source in enumerate(key_sources) for _ in source.keys]
        wrapped: List[List[MasterKey]] = [[] for _ in key_sources]
        failures = []
        now = utcnow()
        for owner, outcome in zip(owners, outcomes):
            if outcome.ok:
                wrapped[owner].append(outcome.key.with_encrypted_key(outcome.result, now))
            else:
                logger.warning("could not wrap data key with %s key %s: %s",
                               outcome.source, outcome.key.identifier, outcome.error)
                failures.append(outcome)
        sources = [KeySource(name=source.name, keys=keys) for source, keys in zip(key_sources, wrapped)]
        if not any(source.keys for source in sources):
            last = failures[-1].error if failures else None
            raise NoKeyAvailableError("data key could not be wrapped by any master key") from last
        return sources, failures

    def recover_data_key(
        self,
        metadata: Metadata,
        cancel: Optional[threading.Event] = None,
    ) -> KeyOutcome:
        """Unwrap the data key with the first master key that succeeds."""
        jobs = [(source.name, key) for source, key in metadata.all_keys()]
        if not jobs:
            raise NoKeyAvailableError("document metadata lists no usable master keys")
        outcomes = self._run_key_calls(jobs, lambda key: key.decrypt_data_key(), cancel, stop_on_success=True)
        for outcome in outcomes:
            if outcome.ok:
                logger.info("recovered data key with %s key %s", outcome.source, outcome.key.identifier)
                return outcome
        last = None
        for outcome in outcomes:
            logger.warning("could not unwrap data key with %s key %s: %s",
                           outcome.source, outcome.key.identifier, outcome.error)
            last = outcome.error
        raise NoKeyAvailableError("data key could not be recovered with any master key") from last

    # ------------------------------------------------------------------
    # Encrypt
    # ------------------------------------------------------------------

    def encrypt(
        self,
        tree: TreeBranch,
        key_sources: Sequence[KeySource],
        unencrypted_suffix: str = DEFAULT_UNENCRYPTED_SUFFIX,
        cancel: Optional[threading.Event] = None,
    ) -> EncryptResult:
        """Encrypt a plaintext tree, returning the ciphertext tree and its metadata."""
        validate_tree(tree)
        data_key = crypto.generate_data_key()
        sources, failures = self.wrap_data_key(data_key, key_sources, cancel)

        def encrypt_leaf(path: TreePath, value: Any) -> Any:
            _check_cancel(cancel)
            if is_unencrypted(path, unencrypted_suffix):
                return value
            return crypto.encrypt_value(value, data_key, render_path(path))

        encrypted = map_leaves(tree, encrypt_leaf)

        last_modified = utcnow()
        try:
            mac = crypto.compute_mac(value for _, value in walk_leaves(tree))
            mac_envelope = crypto.encrypt_value(mac, data_key, format_timestamp(last_modified))
        except (TreeCryptError, ValueError, TypeError) as e:
            raise IntegrityComputationFailedError(f"could not compute document MAC: {e}") from e

        metadata = Metadata(
            key_sources=sources,
            unencrypted_suffix=unencrypted_suffix,
            last_modified=last_modified,
            mac=mac_envelope,
        )
        return EncryptResult(tree=encrypted, metadata=metadata, failures=failures)

    # ------------------------------------------------------------------
    # Decrypt
    # ------------------------------------------------------------------

    def decrypt(
        self,
        tree: TreeBranch,
        metadata: Metadata,
        insecure: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> DecryptResult:
        """Decrypt a ciphertext tree and verify the document MAC.

        A MAC mismatch raises IntegrityCheckFailedError. Only with insecure=True
        is the unverified tree returned (with mac_verified=False).
        """
        outcome = self.recover_data_key(metadata, cancel)
        data_key = outcome.result
        if not isinstance(data_key, bytes) or len(data_key) != crypto.DATA_KEY_SIZE:
            raise InvalidDataKeyError(
                f"{outcome.key.identifier} returned a data key of the wrong size"
            )
        suffix = metadata.unencrypted_suffix

        stored_mac = self._decrypt_stored_mac(tree, metadata, data_key)

        leaves = list(walk_leaves(tree))

        def decrypt_leaf(path: TreePath, value: Any) -> Any:
            _check_cancel(cancel)
            if is_unencrypted(path, suffix):
                return value
            aad = render_path(path)
            if not crypto.is_envelope(value):
                raise IntegrityCheckFailedError(f"{aad}: value is not encrypted")
            try:
                return crypto.decrypt_value(value, data_key, aad)
            except InvalidTag:
                raise _leaf_failure(value, path, leaves, data_key) from None
            except IntegrityCheckFailedError as e:
                raise IntegrityCheckFailedError(f"{aad}: {e}") from e

        plaintext = map_leaves(tree, decrypt_leaf)

        computed = crypto.compute_mac(value for _, value in walk_leaves(plaintext))
        if not hmac.compare_digest(computed.encode("ascii"), stored_mac.encode("utf-8")):
            if not insecure:
                raise IntegrityCheckFailedError("document MAC does not match its content")
            logger.warning("MAC mismatch ignored, returning unverified document (insecure mode)")
            return DecryptResult(plaintext, outcome.source, outcome.key.identifier, mac_verified=False)
        return DecryptResult(plaintext, outcome.source, outcome.key.identifier)

    def _decrypt_stored_mac(self, tree: TreeBranch, metadata: Metadata, data_key: bytes) -> str:
        """Decrypt the stored MAC envelope.

        If it does not authenticate, the recovered key is judged by the leaves:
        when some leaf authenticates the key is right and the MAC was altered.
        Only when encrypted leaves exist and none authenticates is the key
        itself judged wrong; with no encrypted leaves the MAC is blamed.
        """
        try:
            value = crypto.decrypt_value(metadata.mac, data_key, metadata.lastmodified_text)
        except IntegrityCheckFailedError as e:
            raise IntegrityCheckFailedError(f"stored MAC is malformed: {e}") from e
        except InvalidTag:
            if _key_fits_leaves(tree, data_key, metadata.unencrypted_suffix) is not False:
                raise IntegrityCheckFailedError("stored MAC does not authenticate") from None
            raise InvalidDataKeyError("recovered data key does not decrypt this document") from None
        if not isinstance(value, str):
            raise IntegrityCheckFailedError("stored MAC is not a string value")
        return value

    # ------------------------------------------------------------------
    # Rotate
    # ------------------------------------------------------------------

    def rotate(
        self,
        tree: TreeBranch,
        metadata: Metadata,
        key_sources: Optional[Sequence[KeySource]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> EncryptResult:
        """Re-encrypt a whole document under a fresh data key.

        key_sources defaults to the document's current master keys.
        """
        plain = self.decrypt(tree, metadata, cancel=cancel)
        if key_sources is None:
            key_sources = [
                KeySource(source.name, [key.with_encrypted_key(b"") for key in source.keys])
                for source in metadata.key_sources
            ]
        return self.encrypt(plain.tree, key_sources, metadata.unencrypted_suffix, cancel)


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise CancelledError("operation cancelled")


def _timeout_error(key: MasterKey, timeout: Optional[float]) -> Exception:
    return BackendUnavailableError(f"no answer within {timeout}s", key_id=key.identifier)


def _unexpected_error(key: MasterKey, error: Exception) -> Exception:
    wrapped = BackendUnavailableError(f"unexpected backend failure: {error!r}", key_id=key.identifier)
    wrapped.__cause__ = error
    return wrapped


def _key_fits_leaves(tree: TreeBranch, data_key: bytes, suffix: str) -> Optional[bool]:
    """True if some encrypted leaf authenticates, False if none does, None if there are none."""
    seen = False
    for path, value in walk_leaves(tree):
        if is_unencrypted(path, suffix) or not crypto.is_envelope(value):
            continue
        if crypto.authenticates(value, data_key, render_path(path)):
            return True
        seen = True
    return False if seen else None


def _leaf_failure(value: str, path: TreePath, leaves, data_key: bytes) -> Exception:
    """Explain why a leaf did not authenticate at its current path.

    If the ciphertext authenticates at some other path in the document it was
    moved there (path binding violation); otherwise it was altered.
    """
    here = render_path(path)
    for other_path, _ in leaves:
        if other_path == path:
            continue
        other = render_path(other_path)
        if crypto.authenticates(value, data_key, other):
            return PathBindingViolationError(
                f"{here}: value was encrypted for {other}", path=here, original_path=other
            )
    return IntegrityCheckFailedError(f"{here}: encrypted value does not authenticate")
