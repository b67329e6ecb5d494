"""Remote access package.

Provides the persistent SSH session used to run Slurm commands on the login
node and the raw payload types those commands return. Normalisation into the
monitor's data model is handled by the parser modules.

Exports:
    SessionManager: SSH session with status reporting and reconnection.
    ConnectionState: Connection state reported to observers.
    types: Module containing Pydantic models for command payloads.
    Session errors: SessionError and its subclasses.
"""

from . import types
from .session import (
    CommandFailed,
    CommandTimeout,
    ConnectionState,
    ConnectTimeout,
    NoCredentialFound,
    NotConnected,
    SessionDisposed,
    SessionError,
    SessionManager,
    TransportError,
)

__all__ = [
    "CommandFailed",
    "CommandTimeout",
    "ConnectTimeout",
    "ConnectionState",
    "NoCredentialFound",
    "NotConnected",
    "SessionDisposed",
    "SessionError",
    "SessionManager",
    "TransportError",
    "types",
]
