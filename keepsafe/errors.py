"""
Exception hierarchy for the backup engine.

Every error raised by keepsafe derives from KeepsafeError so callers can
treat "the operation did not complete" uniformly, while the subclasses keep
the failing stage distinguishable.
"""


class KeepsafeError(Exception):
    """Base exception for all keepsafe errors."""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(KeepsafeError):
    """Raised when a plan or artifact set is misconfigured."""
    pass


class OperationCancelled(KeepsafeError):
    """Raised when a running operation observes a cancellation request."""
    pass


# Sources

class SourceError(KeepsafeError):
    """Raised when source acquisition fails."""
    pass


class SourceNotFound(SourceError):
    """Raised when a file, directory or database source is missing."""
    pass


class DumpFailed(SourceError):
    """Raised when the external dump producer fails."""
    pass


# Archives

class CompressionError(KeepsafeError):
    """Raised when an archive cannot be built or read."""
    pass


class ArchiveBuildFailed(CompressionError):
    pass


class ArchiveReadFailed(CompressionError):
    pass


# Container codec

class CryptoError(KeepsafeError):
    """Raised by the encryption codec."""
    pass


class CorruptHeader(CryptoError):
    """Raised when the container header is missing, truncated or malformed."""
    pass


class UnsupportedContainerVersion(CorruptHeader):
    """Raised when the container was written by an unknown format version."""
    pass


class DecryptionFailed(CryptoError):
    """Raised when ciphertext cannot be decrypted (usually a wrong passphrase)."""
    pass


# Storage

class StorageError(KeepsafeError):
    """Raised when a storage operation fails."""
    pass


class UploadFailed(StorageError):
    pass


class DownloadFailed(StorageError):
    pass


class ListFailed(StorageError):
    pass


class DeleteFailed(StorageError):
    pass


# Manifest

class ManifestError(KeepsafeError):
    pass


class ManifestMissing(ManifestError):
    """Raised when an archive has no manifest entry."""
    pass


class ManifestInvalid(ManifestError):
    """Raised when the manifest entry cannot be parsed."""
    pass


# Chain resolution

class ChainResolutionError(KeepsafeError):
    pass


class ArtifactNotFound(ChainResolutionError):
    pass


class NoFullBackupFound(ChainResolutionError):
    pass


# Retention

class RetentionDeleteFailed(KeepsafeError):
    """Recorded (never raised) when retention could not delete one artifact."""

    def __init__(self, artifact_name: str, cause: Exception):
        self.artifact_name = artifact_name
        self.cause = cause
        super().__init__(
            f"Retention delete failed for '{artifact_name}': {cause}",
            {'artifact': artifact_name}
        )
