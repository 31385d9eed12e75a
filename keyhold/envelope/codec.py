"""
Encode, decode and validate versioned envelopes.

Wire format of an envelope (JSON):

    {"id": str | null, "version": int, "body": {...} | null}

decode() only turns bytes into typed models; validate() applies the
per-entity rules. Callers outside this package should go through load(),
which does both, so an unvalidated envelope is never handed out.
"""

import json
import logging
from typing import Any, Callable, Dict, Mapping, Tuple, Type, Union

import pydantic
from pydantic import BaseModel

from keyhold.envelope.models import (
    CredentialBody,
    EntityType,
    Envelope,
    OrgInviteBody,
    SealedCredentialBody,
    UserBody,
)
from keyhold.errors import (
    EnvelopeValidationError,
    MalformedEnvelopeError,
    UnsupportedEntityError,
    UnsupportedVersionError,
    ValidationReason,
)

logger = logging.getLogger(__name__)

CURRENT_VERSION = 1

# Recognized master-key derivation algorithms
MASTER_KEY_ALGORITHMS = frozenset({"triplesec-v3"})

SCHEMAS: Dict[Tuple[int, EntityType], Type[BaseModel]] = {
    (1, EntityType.USER): UserBody,
    (1, EntityType.CREDENTIAL): CredentialBody,
    (1, EntityType.SEALED_CREDENTIAL): SealedCredentialBody,
    (1, EntityType.ORG_INVITE): OrgInviteBody,
}

SUPPORTED_VERSIONS = frozenset(version for version, _ in SCHEMAS)

RawEnvelope = Union[bytes, str, Mapping[str, Any]]


def _check_version(version: Any) -> int:
    # bool is an int subclass; True must not pass as version 1
    if isinstance(version, bool) or not isinstance(version, int):
        raise UnsupportedVersionError(version)
    if version not in SUPPORTED_VERSIONS:
        raise UnsupportedVersionError(version)
    return version


def _parse(raw: RawEnvelope) -> Mapping[str, Any]:
    if isinstance(raw, Mapping):
        return raw
    if not isinstance(raw, (str, bytes, bytearray)):
        raise MalformedEnvelopeError(f"Envelope must be JSON text or a mapping, got {type(raw).__name__}")
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedEnvelopeError(f"Envelope is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedEnvelopeError("Envelope must be a JSON object")
    return data


def decode(raw: RawEnvelope, declared_version: int, entity_type: Union[EntityType, str]) -> Envelope:
    """
    Decode raw envelope data into a typed Envelope.

    The version is checked before anything else, so an unknown version never
    reaches body construction.

    Args:
        raw: JSON bytes/str, or an already-parsed mapping
        declared_version: Version the caller expects this envelope to carry
        entity_type: Which body schema to apply

    Returns:
        Decoded (not yet validated) Envelope

    Raises:
        UnsupportedVersionError: declared or embedded version is unknown
        UnsupportedEntityError: no schema for (version, entity_type)
        MalformedEnvelopeError: bad JSON or body does not match the schema
    """
    version = _check_version(declared_version)

    try:
        entity = EntityType(entity_type)
    except ValueError:
        raise UnsupportedEntityError(version, entity_type) from None

    schema = SCHEMAS.get((version, entity))
    if schema is None:
        raise UnsupportedEntityError(version, entity)

    data = _parse(raw)

    embedded = _check_version(data["version"]) if "version" in data else version
    if embedded != version:
        raise MalformedEnvelopeError(
            f"Envelope declares version {embedded} but version {version} was expected"
        )

    envelope_id = data.get("id")
    if envelope_id is not None and not isinstance(envelope_id, str):
        raise MalformedEnvelopeError("Envelope id must be a string")

    body_data = data.get("body")
    body = None
    if body_data is not None:
        try:
            body = schema.model_validate(body_data)
        except pydantic.ValidationError as e:
            # Input values are left out; they may be secret
            details = e.errors(include_url=False, include_input=False, include_context=False)
            raise MalformedEnvelopeError(
                f"Invalid {entity.value} body ({e.error_count()} errors)",
                details=details,
            ) from None

    return Envelope(id=envelope_id, version=version, body=body)


def encode(envelope: Envelope) -> bytes:
    """Encode an envelope to compact JSON bytes."""
    _check_version(envelope.version)
    return envelope.model_dump_json().encode("utf-8")


def to_wire(envelope: Envelope) -> Dict[str, Any]:
    """JSON-compatible dict form, for embedding in request bodies."""
    _check_version(envelope.version)
    return envelope.model_dump(mode="json")


def _fail(reason: ValidationReason, message: str) -> EnvelopeValidationError:
    return EnvelopeValidationError(reason, message)


def _require_versioned_body(envelope: Envelope, expected) -> Any:
    if envelope.version != CURRENT_VERSION:
        raise _fail(
            ValidationReason.VERSION_MISMATCH,
            f"version must be {CURRENT_VERSION}, got {envelope.version}",
        )
    if envelope.body is None:
        raise _fail(ValidationReason.MISSING_BODY, "missing body")
    if not isinstance(envelope.body, expected):
        raise _fail(
            ValidationReason.MISSING_BODY,
            f"unexpected {type(envelope.body).__name__} body",
        )
    return envelope.body


def validate_user(envelope: Envelope) -> Envelope:
    """Check a user record before it is trusted (e.g. after login/signup)."""
    body: UserBody = _require_versioned_body(envelope, UserBody)

    if body.master is None:
        raise _fail(ValidationReason.MISSING_MASTER, "missing master key section")

    if body.master.alg not in MASTER_KEY_ALGORITHMS:
        raise _fail(
            ValidationReason.UNKNOWN_ALGORITHM,
            f"unknown master key algorithm: {body.master.alg}",
        )

    if len(body.master.value) == 0:
        raise _fail(ValidationReason.EMPTY_MASTER_KEY, "zero length master key found")

    return envelope


def _validate_credential(envelope: Envelope) -> Envelope:
    body = _require_versioned_body(envelope, (CredentialBody, SealedCredentialBody))
    if not body.name:
        raise _fail(ValidationReason.EMPTY_NAME, "credential name is empty")
    return envelope


def _validate_invite(envelope: Envelope) -> Envelope:
    body: OrgInviteBody = _require_versioned_body(envelope, OrgInviteBody)
    if body.accepted is not None and body.invitee_id is None:
        raise _fail(ValidationReason.INVALID_LIFECYCLE, "invite accepted without an invitee")
    if body.approved is not None and body.accepted is None:
        raise _fail(ValidationReason.INVALID_LIFECYCLE, "invite approved before it was accepted")
    if body.approved is not None and body.approver_id is None:
        raise _fail(ValidationReason.INVALID_LIFECYCLE, "invite approved without an approver")
    return envelope


_VALIDATORS: Dict[EntityType, Callable[[Envelope], Envelope]] = {
    EntityType.USER: validate_user,
    EntityType.CREDENTIAL: _validate_credential,
    EntityType.SEALED_CREDENTIAL: _validate_credential,
    EntityType.ORG_INVITE: _validate_invite,
}


def validate(envelope: Envelope) -> Envelope:
    """
    Validate an envelope against the rules for its entity and version.

    Returns the envelope unchanged on success.

    Raises:
        EnvelopeValidationError: with ``reason`` set to the first violated rule
    """
    if envelope.version != CURRENT_VERSION:
        raise _fail(
            ValidationReason.VERSION_MISMATCH,
            f"version must be {CURRENT_VERSION}, got {envelope.version}",
        )
    if envelope.body is None:
        raise _fail(ValidationReason.MISSING_BODY, "missing body")
    return _VALIDATORS[envelope.entity_type](envelope)


def load(raw: RawEnvelope, declared_version: int, entity_type: Union[EntityType, str]) -> Envelope:
    """Decode and validate. The only way envelopes leave this package."""
    envelope = decode(raw, declared_version, entity_type)
    try:
        return validate(envelope)
    except EnvelopeValidationError as e:
        logger.warning(
            "Rejected %s envelope %s: %s",
            envelope.entity_type.value if envelope.entity_type else entity_type,
            envelope.id or "<new>",
            e.reason.value,
        )
        raise
