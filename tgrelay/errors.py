from __future__ import annotations


class RelayError(Exception):
    """Base class for errors raised by the session manager."""


class InvalidSessionIdError(RelayError):
    """Raised when a caller-supplied session identifier cannot be used."""


class SessionNotFoundError(RelayError):
    """Raised when a session identifier is not present in the registry."""


class SessionNotConnectedError(RelayError):
    """Raised when an operation needs an open, authorized connection."""


class PasswordNotRequestedError(RelayError):
    """Raised when a password is submitted to a session that did not ask for one."""


class InvalidPasswordError(RelayError):
    """Raised when the second-factor password is rejected."""


class SendFailedError(RelayError):
    """Raised when the messaging library fails to deliver an outbound message."""


__all__ = [
    "RelayError",
    "InvalidSessionIdError",
    "SessionNotFoundError",
    "SessionNotConnectedError",
    "PasswordNotRequestedError",
    "InvalidPasswordError",
    "SendFailedError",
]
