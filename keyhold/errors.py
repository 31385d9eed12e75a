"""
Error taxonomy for keyhold.

Every error raised by the daemon, the envelope codec and the registry
client derives from KeyholdError and carries an ErrorKind. The kind travels
over the daemon socket so the CLI can tell the classes apart.
"""

from enum import Enum
from typing import Any, List, Optional


class ErrorKind(str, Enum):
    """Classification of failures reported upward."""

    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    VALIDATION = "validation"
    PRECONDITION = "precondition"
    AGGREGATE = "aggregate"
    REFRESH = "refresh"
    INTERNAL = "internal"


class KeyholdError(Exception):
    """Base exception for keyhold errors."""

    kind: ErrorKind = ErrorKind.INTERNAL


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class TransportError(KeyholdError):
    """Socket or HTTP connection failure. Retryable by the caller."""

    kind = ErrorKind.TRANSPORT


class DaemonStartError(TransportError):
    """The daemon listener could not be brought up."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class SocketPathError(DaemonStartError):
    """Socket path could not be resolved or is unusable."""


class SocketPermissionError(DaemonStartError):
    """Permission denied while preparing or binding the socket."""


class SocketInUseError(DaemonStartError):
    """Another process is bound to the socket address."""


class ListenerClosedError(TransportError):
    """accept() was called on, or interrupted by, a closed listener."""


class PeerAuthorizationError(TransportError):
    """The connecting peer could not be verified or is not allowed."""


class RegistryTransportError(TransportError):
    """The registry could not be reached."""


class RegistryTimeoutError(RegistryTransportError):
    """The registry call exceeded its deadline."""


# ---------------------------------------------------------------------------
# Protocol / decode
# ---------------------------------------------------------------------------

class ProtocolError(KeyholdError):
    """Malformed or unsupported data. Fatal to the request only."""

    kind = ErrorKind.PROTOCOL


class DecodeError(ProtocolError):
    """An envelope could not be decoded."""


class UnsupportedVersionError(DecodeError):
    """Envelope version is not one this client understands."""

    def __init__(self, version):
        super().__init__(f"Unsupported envelope version: {version!r}")
        self.version = version


class UnsupportedEntityError(DecodeError):
    """No body schema exists for this (version, entity type) pair."""

    def __init__(self, version, entity_type):
        super().__init__(
            f"No schema for entity {entity_type!r} at version {version!r}"
        )
        self.version = version
        self.entity_type = entity_type


class MalformedEnvelopeError(DecodeError):
    """Envelope JSON or body did not match the schema."""

    def __init__(self, message: str, details: Optional[list] = None):
        super().__init__(message)
        self.details = details or []


class RegistryStatusError(ProtocolError):
    """The registry answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str, request_id: Optional[str] = None):
        super().__init__(f"Registry returned {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.request_id = request_id


class RegistryDecodeError(ProtocolError):
    """The registry response body could not be parsed."""


class FrameError(ProtocolError):
    """A daemon socket frame was malformed or oversized."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationReason(str, Enum):
    VERSION_MISMATCH = "version_mismatch"
    MISSING_BODY = "missing_body"
    MISSING_MASTER = "missing_master"
    UNKNOWN_ALGORITHM = "unknown_algorithm"
    EMPTY_MASTER_KEY = "empty_master_key"
    EMPTY_NAME = "empty_name"
    INVALID_LIFECYCLE = "invalid_lifecycle"


class EnvelopeValidationError(KeyholdError):
    """A decoded envelope failed the rules for its version.

    Records that fail validation must not be used. The message never
    includes secret material.
    """

    kind = ErrorKind.VALIDATION

    def __init__(self, reason: ValidationReason, message: str):
        super().__init__(message)
        self.reason = reason


class InviteLifecycleError(EnvelopeValidationError):
    """An invite transition was attempted out of order."""

    def __init__(self, message: str):
        super().__init__(ValidationReason.INVALID_LIFECYCLE, message)


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------

class PreconditionError(KeyholdError):
    """Operation attempted in a state that does not allow it. No I/O done."""

    kind = ErrorKind.PRECONDITION


class NotLoggedInError(PreconditionError):
    """An authenticated operation was attempted without a session."""

    def __init__(self, message: str = "No active session; log in first"):
        super().__init__(message)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

class FieldUpdateError(KeyholdError):
    """One or more concurrent field updates failed.

    ``failures`` lists every failed field in declared order; ``cause`` is the
    first of them. Simultaneous failures therefore collapse to the first
    declared field in the message, but none are lost.
    """

    kind = ErrorKind.AGGREGATE

    def __init__(self, failures: List[Any]):
        self.failures = list(failures)
        first = self.failures[0]
        self.cause = first.error
        fields = ", ".join(f.field for f in self.failures)
        super().__init__(f"Failed to update {fields}: {first.error}")


class ProfileRefreshError(KeyholdError):
    """Updates succeeded but the cached session could not be refreshed."""

    kind = ErrorKind.REFRESH

