"""
Asset migration error types.

Per-asset errors (ContentStoreError, AssetTooLargeError) are recorded on that
asset's MigrationResult and never abort the batch. MigrationSubsystemError is
stage-fatal: the build that hit it fails.
"""


class MigrationError(Exception):
    """Base exception for all asset migration failures."""
    pass


class ContentStoreError(MigrationError):
    """Raised when the content store rejects or cannot persist a payload."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Content store failure for {key}: {reason}")


class TransientStoreError(ContentStoreError):
    """A content store failure worth retrying (rate limit, busy backend)."""
    pass


class AssetTooLargeError(MigrationError):
    """Raised when a payload exceeds the configured size cap."""

    def __init__(self, url: str, size_mb: float, max_size_mb: float):
        self.url = url
        self.size_mb = size_mb
        self.max_size_mb = max_size_mb
        super().__init__(f"{url} exceeds size cap ({size_mb:.1f}MB > {max_size_mb}MB)")


class MigrationSubsystemError(MigrationError):
    """Raised when migration as a whole is unusable (every transfer failed)."""

    def __init__(self, reason: str, failed: int = 0, total: int = 0):
        self.reason = reason
        self.failed = failed
        self.total = total
        super().__init__(f"Asset migration failed: {reason} ({failed}/{total} failed)")
