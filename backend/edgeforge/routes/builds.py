"""
Build endpoints: enqueue, inspect and read build logs.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from ..pipeline import BuildScope
from ..settings import SiteNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["builds"])


class CreateBuildRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scope: BuildScope = BuildScope.FULL
    pages: List[str] = Field(default_factory=list)


@router.post("/sites/{site_id}/builds", status_code=202)
async def create_build(site_id: str, request: Request, body: Optional[CreateBuildRequest] = None):
    """
    Queue a build for a site.

    Raises:
        400: Partial/single-page build without valid pages
        404: Site not found
    """
    body = body or CreateBuildRequest()
    build_queue = request.app.state.build_queue
    try:
        build = build_queue.enqueue_build(site_id, body.scope, body.pages)
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return build.to_dict()


@router.get("/sites/{site_id}/builds")
async def list_site_builds(site_id: str, request: Request):
    persistence = request.app.state.persistence
    return {"site_id": site_id, "builds": persistence.list_builds(site_id=site_id)}


@router.get("/builds/{build_id}")
async def get_build(build_id: str, request: Request):
    build = request.app.state.persistence.load_build(build_id)
    if build is None:
        raise HTTPException(status_code=404, detail=f"Build not found: {build_id}")
    return build


@router.get("/builds/{build_id}/logs")
async def get_build_logs(build_id: str, request: Request, after_seq: int = 0):
    """
    Build events with seq greater than after_seq, in order.

    Clients resume a dropped stream by passing the last seq they saw.
    """
    if request.app.state.persistence.load_build(build_id) is None:
        raise HTTPException(status_code=404, detail=f"Build not found: {build_id}")
    events = request.app.state.events.replay(build_id, after_seq)
    return {"build_id": build_id, "events": [event.to_dict() for event in events]}
