"""
Site settings endpoints.

Every write is validated in full before anything is stored; a rejected
payload returns 400 with every offending dotted path.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict

from ..settings import (
    HistoryEntryNotFoundError,
    SettingsValidationError,
    SiteNotFoundError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sites/{site_id}/settings", tags=["settings"])


class UpdateSettingsRequest(BaseModel):
    """Replace the site's sparse override."""

    model_config = ConfigDict(extra="forbid")

    settings: Dict[str, Any]
    changed_by: str = "api"


class ResetSettingsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    changed_by: str = "api"


class RollbackRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    history_id: str


class AssetOverrideRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url_pattern: str
    settings: Dict[str, Any]


def validation_error(e: SettingsValidationError) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"message": str(e), "errors": [err.to_dict() for err in e.errors]},
    )


def _settings_view(service, site_id: str, url: Optional[str] = None) -> Dict[str, Any]:
    return {
        "site_id": site_id,
        "override": service.get_site_settings(site_id),
        "resolved": service.get_resolved(site_id, url).model_dump(mode="json"),
    }


@router.get("")
async def get_settings(site_id: str, request: Request, url: Optional[str] = None):
    """
    Get a site's sparse override and resolved settings.

    With ?url=, asset overrides matching that URL are applied too.
    """
    service = request.app.state.settings_service
    try:
        return _settings_view(service, site_id, url)
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("")
async def update_settings(site_id: str, body: UpdateSettingsRequest, request: Request):
    service = request.app.state.settings_service
    try:
        service.update(site_id, body.settings, changed_by=body.changed_by)
        return _settings_view(service, site_id)
    except SettingsValidationError as e:
        raise validation_error(e)
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/reset")
async def reset_settings(site_id: str, request: Request, body: Optional[ResetSettingsRequest] = None):
    service = request.app.state.settings_service
    try:
        service.reset(site_id, changed_by=body.changed_by if body else "api")
        return _settings_view(service, site_id)
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/diff")
async def get_settings_diff(site_id: str, request: Request):
    """Boolean tree of the leaves that deviate from defaults, plus their count."""
    service = request.app.state.settings_service
    try:
        return service.diff_for_site(site_id)
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/history")
async def get_settings_history(site_id: str, request: Request, limit: int = 50):
    service = request.app.state.settings_service
    try:
        return {"site_id": site_id, "history": service.history(site_id, limit=limit)}
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/rollback")
async def rollback_settings(site_id: str, body: RollbackRequest, request: Request):
    """
    Re-apply a history entry. The current override is kept in history.

    Raises:
        404: Unknown site or history entry
    """
    service = request.app.state.settings_service
    try:
        service.rollback(site_id, body.history_id)
        return _settings_view(service, site_id)
    except (SiteNotFoundError, HistoryEntryNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/asset-overrides")
async def list_asset_overrides(site_id: str, request: Request):
    service = request.app.state.settings_service
    if request.app.state.persistence.get_site(site_id) is None:
        raise HTTPException(status_code=404, detail=f"Site not found: {site_id}")
    return {"site_id": site_id, "overrides": [o.to_dict() for o in service.asset_overrides(site_id)]}


@router.post("/asset-overrides", status_code=201)
async def add_asset_override(site_id: str, body: AssetOverrideRequest, request: Request):
    service = request.app.state.settings_service
    try:
        override = service.add_asset_override(site_id, body.url_pattern, body.settings)
    except SettingsValidationError as e:
        raise validation_error(e)
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info(f"[Settings] Site {site_id} asset override added for {body.url_pattern!r}")
    return override.to_dict()
