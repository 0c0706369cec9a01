"""
Settings service: validated mutation, history and resolution per site.

RULES:
1. Every write is validated first; an invalid payload changes nothing
2. Every write preserves the previous override in history (append-only)
3. Rollback saves the CURRENT state before applying the old one
4. Every write invalidates the site's cache entries
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from .cache import SettingsCache
from .errors import HistoryEntryNotFoundError, SiteNotFoundError
from .merge import compact_override, count_leaves, diff, resolve, validate_override
from .patterns import AssetOverride, compile_url_pattern, matching_overrides
from .schema import OptimizationSettings

logger = logging.getLogger(__name__)


class SettingsService:
    """Reads and writes site settings through the persistence collaborator."""

    def __init__(self, persistence, cache: Optional[SettingsCache] = None):
        """
        Args:
            persistence: PersistenceManager (or any object with the same settings API)
            cache: Resolved-settings cache; a fresh one is created if omitted
        """
        self._persistence = persistence
        self.cache = cache if cache is not None else SettingsCache()

    def _require_site(self, site_id: str) -> Dict[str, Any]:
        site = self._persistence.get_site(site_id)
        if site is None:
            raise SiteNotFoundError(site_id)
        return site

    def get_site_settings(self, site_id: str) -> Dict[str, Any]:
        """Current sparse override for a site."""
        self._require_site(site_id)
        return self._persistence.get_site_settings(site_id)

    def asset_overrides(self, site_id: str) -> List[AssetOverride]:
        return [
            AssetOverride(
                id=row["id"],
                site_id=row["site_id"],
                url_pattern=row["url_pattern"],
                settings=row["settings"],
                position=row["position"],
            )
            for row in self._persistence.list_asset_overrides(site_id)
        ]

    def get_resolved(self, site_id: str, url: Optional[str] = None) -> OptimizationSettings:
        """
        Resolve settings for a site, optionally narrowed to one URL.

        Without a url, asset overrides are not applied.
        """
        cache_key = url or "*"
        cached = self.cache.get(site_id, cache_key)
        if cached is not None:
            return cached

        site_override = self.get_site_settings(site_id)
        asset_layers = []
        if url:
            asset_layers = [o.settings for o in matching_overrides(self.asset_overrides(site_id), url)]

        resolved = resolve(site_override, asset_layers)
        self.cache.put(site_id, resolved, cache_key)
        return resolved

    def update(self, site_id: str, override: Mapping[str, Any], changed_by: str = "user") -> Dict[str, Any]:
        """
        Replace a site's sparse override.

        Raises:
            SettingsValidationError: If the payload is invalid (nothing is written)
            SiteNotFoundError: If the site does not exist
        """
        self._require_site(site_id)
        validated = compact_override(validate_override(override))
        self._persistence.update_site_settings(site_id, validated, changed_by=changed_by)
        self.cache.invalidate(site_id)
        logger.info(f"[Settings] Site {site_id} settings updated by {changed_by} "
                    f"({count_leaves(diff(validated))} overrides)")
        return validated

    def reset(self, site_id: str, changed_by: str = "user") -> Dict[str, Any]:
        """Reset a site to defaults (the old override stays in history)."""
        return self.update(site_id, {}, changed_by=changed_by)

    def rollback(self, site_id: str, history_id: str) -> Dict[str, Any]:
        """
        Re-apply a previous override.

        The current override is written to history first (changed_by="rollback"),
        so no revision is ever lost.
        """
        self._require_site(site_id)
        entry = self._persistence.get_settings_history_entry(site_id, history_id)
        if entry is None:
            raise HistoryEntryNotFoundError(site_id, history_id)
        logger.info(f"[Settings] Site {site_id} rolling back to history entry {history_id}")
        return self.update(site_id, entry["settings"], changed_by="rollback")

    def history(self, site_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        self._require_site(site_id)
        return self._persistence.list_settings_history(site_id, limit=limit)

    def diff_for_site(self, site_id: str) -> Dict[str, Any]:
        tree = diff(self.get_site_settings(site_id))
        return {"diff": tree, "override_count": count_leaves(tree)}

    def add_asset_override(self, site_id: str, url_pattern: str, override: Mapping[str, Any]) -> AssetOverride:
        """
        Add an asset-level override after any existing ones.

        Malformed patterns are stored (they simply never match).
        """
        self._require_site(site_id)
        validated = validate_override(override)
        if compile_url_pattern(url_pattern) is None:
            logger.warning(f"[Settings] Asset override pattern {url_pattern!r} will never match")
        row = self._persistence.add_asset_override(site_id, url_pattern, validated)
        self.cache.invalidate(site_id)
        return AssetOverride(
            id=row["id"],
            site_id=site_id,
            url_pattern=url_pattern,
            settings=validated,
            position=row["position"],
        )
