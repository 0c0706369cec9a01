"""
Settings resolution engine.

Merges defaults, a per-site sparse override and per-asset overrides
(matched by URL pattern) into one typed, frozen OptimizationSettings.
"""

from .errors import (
    SettingsError,
    SettingsFieldError,
    SettingsValidationError,
    SiteNotFoundError,
    HistoryEntryNotFoundError,
)
from .schema import OptimizationSettings, DEFAULT_SETTINGS, default_settings_dict
from .merge import (
    validate_override,
    resolve,
    merge_overrides,
    diff,
    count_leaves,
    compact_override,
)
from .patterns import AssetOverride, compile_url_pattern, matches_url, matching_overrides
from .cache import SettingsCache
from .service import SettingsService

__all__ = [
    # Errors
    "SettingsError",
    "SettingsFieldError",
    "SettingsValidationError",
    "SiteNotFoundError",
    "HistoryEntryNotFoundError",
    # Schema
    "OptimizationSettings",
    "DEFAULT_SETTINGS",
    "default_settings_dict",
    # Resolution
    "validate_override",
    "resolve",
    "merge_overrides",
    "diff",
    "count_leaves",
    "compact_override",
    # Patterns
    "AssetOverride",
    "compile_url_pattern",
    "matches_url",
    "matching_overrides",
    # Services
    "SettingsCache",
    "SettingsService",
]
