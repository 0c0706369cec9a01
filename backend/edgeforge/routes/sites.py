"""
Site endpoints.

Deleting a site cancels its queued and running builds first: they end up
`failed` with "Site deleted" and the site's workspace is removed.
"""

import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict

from ..pipeline import WorkspaceBusyError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sites", tags=["sites"])


class CreateSiteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    url: str
    monitor_enabled: bool = False


@router.post("", status_code=201)
async def create_site(body: CreateSiteRequest, request: Request):
    site = request.app.state.persistence.create_site(
        body.name, body.url.rstrip("/"), monitor_enabled=body.monitor_enabled
    )
    logger.info(f"[Sites] Site {site['id']} created for {site['url']}")
    return site


@router.get("/{site_id}")
async def get_site(site_id: str, request: Request):
    site = request.app.state.persistence.get_site(site_id)
    if site is None:
        raise HTTPException(status_code=404, detail=f"Site not found: {site_id}")
    return site


@router.delete("/{site_id}")
def delete_site(site_id: str, request: Request):
    """
    Delete a site, cancelling its builds first.

    Runs in the threadpool: cancellation waits for running builds to stop.

    Returns:
        The cancellation summary (removed jobs, failed builds)
    """
    persistence = request.app.state.persistence
    if persistence.get_site(site_id) is None:
        raise HTTPException(status_code=404, detail=f"Site not found: {site_id}")

    summary = request.app.state.build_queue.cancel_site(site_id)
    persistence.delete_site(site_id)
    request.app.state.settings_service.cache.invalidate(site_id)
    logger.info(f"[Sites] Site {site_id} deleted")
    return summary


@router.delete("/{site_id}/workspace")
async def delete_workspace(site_id: str, request: Request):
    """
    Remove a site's workspace directory.

    Raises:
        404: Site not found
        409: A build currently holds the workspace
    """
    if request.app.state.persistence.get_site(site_id) is None:
        raise HTTPException(status_code=404, detail=f"Site not found: {site_id}")
    workspaces = request.app.state.workspaces
    if not workspaces.remove(site_id):
        e = WorkspaceBusyError(site_id, workspaces.holder(site_id) or "unknown")
        raise HTTPException(status_code=409, detail=str(e))
    return {"site_id": site_id, "removed": True}
