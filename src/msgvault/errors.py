"""Exception taxonomy for the backup pipeline.

Record-level errors (MalformedRecord, RejectedRecord) are absorbed by the
pipeline. Source and batch errors end a cycle with a reason code.
StateStoreCorruption is fatal and halts every later cycle.
"""


class VaultError(Exception):
    """Base exception for all msgvault errors."""

    pass


class SourceUnavailable(VaultError):
    """
    The device inbox cannot be queried.

    Raised when:
    - The inbox database or export file is missing or unreadable
    - The platform query fails (permission revoked, schema mismatch)
    """

    pass


class MalformedRecord(VaultError):
    """A raw message lacks a required field and cannot be canonicalized."""

    def __init__(self, message: str, sequence_id: int, field: str):
        super().__init__(message)
        self.sequence_id = sequence_id
        self.field = field


class TransmitError(VaultError):
    """Error sending a batch to the remote backup service."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientTransmitError(TransmitError):
    """
    A send attempt failed in a way that may succeed on retry.

    Raised when:
    - The request times out or the connection drops
    - The server answers 5xx, 408, 425 or 429
    - A 2xx response body cannot be parsed
    """

    pass


class RejectedBatch(TransmitError):
    """The server refused the batch (4xx). Not retried."""

    pass


class RejectedRecord(VaultError):
    """The server refused a single record of an otherwise accepted batch."""

    def __init__(self, fingerprint: str, reason: str):
        super().__init__(f"Record {fingerprint} rejected: {reason}")
        self.fingerprint = fingerprint
        self.reason = reason


class StateStoreCorruption(VaultError):
    """
    The local sync state is unreadable or inconsistent.

    Cycles stop until the store is repaired; resetting it silently could
    cause lost or duplicated backups.
    """

    pass


class CycleInProgress(VaultError):
    """Another sync cycle already holds the run-lock for this device."""

    pass
