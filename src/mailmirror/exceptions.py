"""Custom exceptions for mailmirror."""


class MailMirrorError(Exception):
    """Base exception for all mailmirror errors."""


class ConfigurationError(MailMirrorError):
    """Exception raised for configuration related errors."""


class ProviderError(MailMirrorError):
    """Base exception for remote provider failures."""


class NetworkError(ProviderError):
    """Transient network failure; retried with backoff, cursor is not advanced."""


class AuthError(ProviderError):
    """Authentication failure; pauses the account's sync until re-authentication."""


class CursorExpired(ProviderError):
    """The provider no longer accepts the stored cursor; a full resync is required."""


class StorageError(MailMirrorError):
    """A local store transaction was aborted and rolled back."""


class EmbeddingError(MailMirrorError):
    """Embedding computation failed; non-fatal and retried later."""


class ComposeError(MailMirrorError):
    """Exception raised when the compose provider fails."""


class SyncCancelled(MailMirrorError):
    """Raised at a sync checkpoint when the account's cycle has been cancelled."""
