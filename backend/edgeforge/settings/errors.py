"""
Settings-specific error types.

All errors inherit from SettingsError for easy catching.
Validation errors carry EVERY offending path, never just the first.
"""

from dataclasses import dataclass
from typing import List


class SettingsError(Exception):
    """Base exception for all settings failures."""
    pass


@dataclass(frozen=True)
class SettingsFieldError:
    """One offending leaf in an override payload."""

    path: str
    message: str

    def to_dict(self) -> dict:
        return {"path": self.path, "message": self.message}


class SettingsValidationError(SettingsError):
    """Raised when an override payload has unknown keys or wrong-typed leaves."""

    def __init__(self, errors: List[SettingsFieldError]):
        self.errors = list(errors)
        paths = ", ".join(e.path for e in self.errors)
        super().__init__(f"Invalid settings override ({len(self.errors)} errors): {paths}")


class SiteNotFoundError(SettingsError):
    """Raised when settings are requested for an unknown site."""

    def __init__(self, site_id: str):
        self.site_id = site_id
        super().__init__(f"Site not found: {site_id}")


class HistoryEntryNotFoundError(SettingsError):
    """Raised when a rollback targets a history entry that does not exist."""

    def __init__(self, site_id: str, history_id: str):
        self.site_id = site_id
        self.history_id = history_id
        super().__init__(f"Settings history entry not found: site={site_id}, id={history_id}")
