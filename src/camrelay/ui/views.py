"""HTML pages: feed index and single-feed viewer.

Templates are bundled in camrelay/templates. ``configure_templates()`` can
put a user directory in front of them; any page missing there falls back to
the bundled one.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from ..api.feeds import get_feed_runtime
from ..services.container import get_feeds_service
from ..services.feeds_service import FeedRuntime, FeedsService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ui"])

TEMPLATES_DIR = Path(__file__).parent.parent / "templates"

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


def configure_templates(template_dir: Optional[str] = None) -> Jinja2Templates:
    """Rebuild the template loader, searching ``template_dir`` first."""
    global templates
    directories = [str(TEMPLATES_DIR)]
    if template_dir:
        if not Path(template_dir).is_dir():
            logger.warning(f"Template directory not found, using bundled pages: {template_dir}")
        else:
            directories.insert(0, template_dir)
            logger.info(f"Templates: {template_dir} (bundled pages as fallback)")
    templates = Jinja2Templates(directory=directories)
    return templates


@router.get("/", response_class=HTMLResponse)
async def index(
    request: Request,
    service: FeedsService = Depends(get_feeds_service)
) -> HTMLResponse:
    """List every configured feed."""
    return templates.TemplateResponse(request, "index.html", {"feeds": service.list_feeds()})


@router.get("/{feed}", response_class=HTMLResponse)
@router.get("/{feed}/", response_class=HTMLResponse)
async def feed_page(
    request: Request,
    runtime: FeedRuntime = Depends(get_feed_runtime),
    service: FeedsService = Depends(get_feeds_service)
) -> HTMLResponse:
    """Viewer page for one feed."""
    return templates.TemplateResponse(
        request,
        "feed.html",
        {
            "name": runtime.name,
            "has_stream": runtime.config.has_output_process,
            "snapshot_seconds_interval": runtime.config.snapshot_seconds_interval,
            "motion": service.motion_status(runtime.name),
        }
    )
