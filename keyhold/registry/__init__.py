"""Registry request client for keyhold."""

from keyhold.registry.client import (
    REQUEST_ID_HEADER,
    Progress,
    ProgressEvent,
    RegistryClient,
    new_request_id,
)
from keyhold.registry.users import SignupRequest

__all__ = [
    "REQUEST_ID_HEADER",
    "Progress",
    "ProgressEvent",
    "RegistryClient",
    "SignupRequest",
    "new_request_id",
]
