"""
Exception types raised by the session and storage layers.

Per-operation protocol failures are not wrapped: handlers catch whatever the
Protocol Socket raises at the call site.
"""


class ChatwardenError(Exception):
    """Base class for chatwarden errors."""


class CredentialLoadError(ChatwardenError):
    """Credentials for a storage key could not be loaded; the attempt is aborted."""

    def __init__(self, storage_key: str, cause: Exception):
        super().__init__(f"Failed to load credentials for {storage_key}: {cause}")
        self.storage_key = storage_key
        self.cause = cause


class SessionTerminatedError(ChatwardenError):
    """A terminated session id was passed to create_session."""


class SessionNotFoundError(ChatwardenError):
    """No session exists for the given id or storage key."""
