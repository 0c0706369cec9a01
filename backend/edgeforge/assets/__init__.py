"""
Asset identity and migration.

scan() finds every image reference in a page, migrate_all() moves each unique
resolved URL into a ContentStore, and replace_all_urls() rewrites the page to
the store's delivery URLs.
"""

from .errors import (
    MigrationError,
    ContentStoreError,
    TransientStoreError,
    AssetTooLargeError,
    MigrationSubsystemError,
)
from .models import (
    LocationType,
    MigrationStatus,
    SUCCESSFUL_STATUSES,
    ImageRecord,
    MigrationResult,
    record_id,
)
from .content_store import ContentStore, LocalContentStore, storage_key, variant_url, VARIANTS
from .scanner import SKIP_DOMAINS, parse_srcset, resolve_url, scan, should_skip
from .migrator import build_migration_retrying, migrate_all, unique_urls
from .replacer import ReplacementOutcome, apply_loading_priority, replace_all_urls

__all__ = [
    # Errors
    "MigrationError",
    "ContentStoreError",
    "TransientStoreError",
    "AssetTooLargeError",
    "MigrationSubsystemError",
    # Models
    "LocationType",
    "MigrationStatus",
    "SUCCESSFUL_STATUSES",
    "ImageRecord",
    "MigrationResult",
    "record_id",
    # Store
    "ContentStore",
    "LocalContentStore",
    "storage_key",
    "variant_url",
    "VARIANTS",
    # Scan / migrate / replace
    "SKIP_DOMAINS",
    "parse_srcset",
    "resolve_url",
    "scan",
    "should_skip",
    "build_migration_retrying",
    "migrate_all",
    "unique_urls",
    "ReplacementOutcome",
    "apply_loading_priority",
    "replace_all_urls",
]
