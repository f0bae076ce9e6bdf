"""
Exceptions for treecrypt
Everything derives from TreeCryptError so callers have one general error catcher.
Backend failures are classified at the master key boundary; transport errors never
get past it.
"""


class TreeCryptError(Exception):
    # general container for errors
    pass


class ParseError(TreeCryptError):
    # raised when a native document (yaml, json) cannot be parsed into a tree
    pass


class MalformedMetadataError(ParseError):
    # raised when the metadata block is missing or lacks a required field
    pass


class MalformedKeyEntryError(TreeCryptError):
    # raised when a persisted master key entry lacks a field or has the wrong type
    pass


class MalformedTimestampError(TreeCryptError):
    # raised when a persisted timestamp does not match TIMESTAMP_FORMAT
    pass


class BackendError(TreeCryptError):
    """Base for failures reported by a key management backend."""

    def __init__(self, message, key_id=None):
        super().__init__(message)
        self.key_id = key_id

    def __str__(self):
        msg = super().__str__()
        if self.key_id:
            return f"{self.key_id}: {msg}"
        return msg


class BackendUnavailableError(BackendError):
    # network, credential or timeout failure talking to the backend
    pass


class BackendDeniedError(BackendError):
    # the backend rejected the call because of its access policy
    pass


class BackendInvalidStateError(BackendError):
    # key disabled, missing, or the blob is not something the backend can use
    pass


class KeyAccessError(TreeCryptError):
    """The document could not be opened with the available keys.

    Remediation is about access: check credentials, key policies or rotate keys.
    """

    hint = "check access to the master keys listed in the document metadata"

    def __str__(self):
        return f"{super().__str__()} ({self.hint})"


class NoKeyAvailableError(KeyAccessError):
    # no master key could wrap (encrypt) or unwrap (decrypt) the data key
    pass


class InvalidDataKeyError(KeyAccessError):
    # a key unwrapped something, but it does not authenticate the document
    hint = "a master key returned a data key that does not match this document"


class TamperingError(TreeCryptError):
    """The document content does not authenticate.

    Remediation is about the data: the file was modified or corrupted and must be
    investigated, not re-keyed.
    """

    hint = "the document may have been tampered with or corrupted"

    def __str__(self):
        return f"{super().__str__()} ({self.hint})"


class IntegrityCheckFailedError(TamperingError):
    # leaf ciphertext or document MAC does not match
    pass


class PathBindingViolationError(TamperingError):
    # a leaf ciphertext was moved from the path it was encrypted under

    def __init__(self, message, path=None, original_path=None):
        super().__init__(message)
        self.path = path
        self.original_path = original_path


class IntegrityComputationFailedError(TreeCryptError):
    # the MAC could not be computed or encrypted while encrypting
    pass


class CancelledError(TreeCryptError):
    # the caller cancelled an in-flight operation
    pass
