"""Custom exceptions for Clinbox."""


class ClinboxError(Exception):
    """Base exception for all Clinbox errors."""


class RemoteError(ClinboxError):
    """A mailbox call failed (network, auth expiry, rate limit)."""


class AuthenticationError(RemoteError):
    """Failed to authenticate with Gmail API."""


class RateLimitError(RemoteError):
    """Gmail API rate limit exceeded."""


class ParseError(ClinboxError):
    """Failed to parse email MIME content."""


class AnalyzerError(ClinboxError):
    """AI analysis failed or timed out."""


class ComposerError(ClinboxError):
    """AI reply drafting failed or timed out."""


class StorageError(ClinboxError):
    """Local persistence failed."""


class CheckpointError(StorageError):
    """Failed to read or write the session checkpoint."""


class ConfigurationError(ClinboxError):
    """Required configuration is missing or invalid."""


class InvariantViolation(ClinboxError):
    """The queue/outcome consistency contract was broken. Not recoverable."""
