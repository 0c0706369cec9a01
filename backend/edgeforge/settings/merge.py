"""
Settings resolution: sparse overrides -> resolved settings.

Resolution order (last writer wins PER LEAF, never per subtree):
    defaults -> site override -> matching asset overrides (declaration order)

Array leaves:
- A site override array REPLACES the default array
- Asset override arrays are APPENDED to the value resolved so far
  (order kept, exact duplicates dropped)

Because site arrays replace, feeding a resolved tree back in as a site
override reproduces it exactly: resolve(resolve(o)) == resolve(o).
"""

import copy
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from .errors import SettingsFieldError, SettingsValidationError
from .schema import OptimizationSettings, default_settings_dict

logger = logging.getLogger(__name__)

SparseOverride = Dict[str, Any]


def _apply(base: Dict[str, Any], override: Mapping[str, Any], append_arrays: bool) -> Dict[str, Any]:
    """Apply override onto base in place, leaf by leaf."""
    for key, value in override.items():
        current = base.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            _apply(current, value, append_arrays)
        elif append_arrays and isinstance(value, list) and isinstance(current, list):
            merged = list(current)
            for item in value:
                if item not in merged:
                    merged.append(copy.deepcopy(item))
            base[key] = merged
        else:
            base[key] = copy.deepcopy(value)
    return base


def _format_loc(loc: Sequence[Any]) -> str:
    return ".".join(str(part) for part in loc)


def field_errors_from(exc: ValidationError) -> List[SettingsFieldError]:
    """Flatten a pydantic ValidationError into one entry per offending path."""
    errors = []
    for err in exc.errors():
        errors.append(SettingsFieldError(path=_format_loc(err["loc"]), message=err["msg"]))
    return errors


def validate_override(data: Any) -> SparseOverride:
    """
    Validate a sparse override payload.

    Args:
        data: Candidate override (nested dict, only non-default leaves)

    Returns:
        A deep copy of the override

    Raises:
        SettingsValidationError: Listing every unknown key / wrong-typed leaf
    """
    if not isinstance(data, Mapping):
        raise SettingsValidationError([
            SettingsFieldError(path="", message="Override must be an object"),
        ])

    merged = _apply(default_settings_dict(), data, append_arrays=False)
    try:
        OptimizationSettings.model_validate(merged)
    except ValidationError as e:
        errors = field_errors_from(e)
        logger.debug(f"[Settings] Override rejected: {[err.path for err in errors]}")
        raise SettingsValidationError(errors) from e

    return copy.deepcopy(dict(data))


def resolve(
    site_override: Optional[Mapping[str, Any]] = None,
    asset_overrides: Iterable[Mapping[str, Any]] = (),
) -> OptimizationSettings:
    """
    Resolve sparse overrides into a complete settings tree.

    Args:
        site_override: Site-level sparse override (may be None/empty)
        asset_overrides: Already-matched asset-level overrides, in declaration order

    Returns:
        Frozen OptimizationSettings with every leaf populated

    Raises:
        SettingsValidationError: If the merged tree does not fit the schema
    """
    tree = default_settings_dict()
    _apply(tree, site_override or {}, append_arrays=False)
    for override in asset_overrides:
        _apply(tree, override, append_arrays=True)

    try:
        return OptimizationSettings.model_validate(tree)
    except ValidationError as e:
        raise SettingsValidationError(field_errors_from(e)) from e


def merge_overrides(first: Mapping[str, Any], second: Mapping[str, Any]) -> SparseOverride:
    """Merge two sparse overrides; `second` wins per leaf, arrays replace."""
    return _apply(copy.deepcopy(dict(first)), second, append_arrays=False)


def diff(override: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Mark which leaves of an override deviate from the defaults.

    Returns a tree with the same shape as the settings schema where every
    leaf is a bool (True = override sets a value different from the default).
    """
    return _diff_tree(default_settings_dict(), override or {})


def _diff_tree(defaults: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, default_value in defaults.items():
        value = override.get(key) if isinstance(override, Mapping) else None
        if isinstance(default_value, dict):
            result[key] = _diff_tree(default_value, value if isinstance(value, Mapping) else {})
        else:
            result[key] = isinstance(override, Mapping) and key in override and value != default_value
    return result


def count_leaves(diff_tree: Mapping[str, Any]) -> int:
    """Count True leaves in a diff tree (number of overridden settings)."""
    total = 0
    for value in diff_tree.values():
        if isinstance(value, Mapping):
            total += count_leaves(value)
        elif value is True:
            total += 1
    return total


def compact_override(override: Mapping[str, Any]) -> SparseOverride:
    """Drop leaves that equal their default, and sections left empty."""
    return _compact(default_settings_dict(), override)


def _compact(defaults: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in override.items():
        default_value = defaults.get(key)
        if isinstance(value, Mapping) and isinstance(default_value, dict):
            nested = _compact(default_value, value)
            if nested:
                result[key] = nested
        elif key not in defaults or value != default_value:
            result[key] = copy.deepcopy(value)
    return result
