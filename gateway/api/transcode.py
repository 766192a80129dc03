"""Transcode API endpoints.

Each endpoint validates its form or body fields, runs one engine job and
streams the result back. Errors are raised as ``GatewayError`` and rendered
by the handlers in ``gateway.main``.
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, File, Form, Request, UploadFile

from gateway.api.deps import Service
from gateway.exceptions import ValidationError
from gateway.middleware.request_context import get_request_context
from gateway.pipeline.builder import PipelineBuilder
from gateway.pipeline.requests import (
    ClipRequest,
    OverlayRequest,
    RemuxRequest,
    UploadSource,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _upload_source(video: Optional[UploadFile]) -> Optional[UploadSource]:
    if video is None or not video.filename:
        return None
    return UploadSource(filename=video.filename, content_type=video.content_type)


async def _read_field(request: Request, name: str) -> Any:
    """Read one field from a JSON object body or a form body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Request body is not valid JSON")
        return body.get(name) if isinstance(body, dict) else None

    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        value = form.get(name)
        return value if isinstance(value, str) else None
    return None


@router.post("/clip")
async def clip_video(
    request: Request,
    service: Service,
    video: Optional[UploadFile] = File(None),
    start: Optional[float] = Form(None),
    duration: Optional[float] = Form(None),
    format: str = Form("mp4"),
    reencode: bool = Form(True),
):
    """
    Cut ``duration`` seconds starting at ``start`` out of the uploaded video.

    Defaults: start 0, duration 5, mp4 output. With ``reencode=false`` the
    streams are copied, which is faster but cuts on keyframes.
    """
    context = get_request_context(request)
    job_request = ClipRequest(
        source=_upload_source(video),
        start_s=start,
        duration_s=duration,
        output_format=format,
        reencode=reencode,
    )
    return await service.execute(
        job_request,
        request_id=context.request_id,
        upload=video,
        is_disconnected=request.is_disconnected,
    )


@router.post("/mpd-to-mp4")
async def mpd_to_mp4(request: Request, service: Service):
    """Repackage a remote DASH/HLS manifest into a single mp4 without re-encoding."""
    context = get_request_context(request)
    url = await _read_field(request, "url")
    if url is not None and not isinstance(url, str):
        raise ValidationError("Field 'url' must be a string")

    job_request = RemuxRequest(source_url=url or "", output_format="mp4")
    return await service.execute(
        job_request,
        request_id=context.request_id,
        is_disconnected=request.is_disconnected,
    )


@router.post("/add-text-on-top")
async def add_text_on_top(
    request: Request,
    service: Service,
    video: Optional[UploadFile] = File(None),
    text: str = Form(""),
    box_color: Optional[str] = Form(None),
    box_height: Optional[int] = Form(None),
    font_color: Optional[str] = Form(None),
    font_size: Optional[int] = Form(None),
    position: str = Form("top"),
    download: bool = Form(False),
):
    """Draw a full-width filled box with centered text at the top (or bottom) of the video."""
    context = get_request_context(request)
    job_request = OverlayRequest(
        text=text,
        source=_upload_source(video),
        box_color=box_color,
        box_height=box_height,
        font_color=font_color,
        font_size=font_size,
        position=PipelineBuilder.parse_position(position),
    )
    return await service.execute(
        job_request,
        request_id=context.request_id,
        upload=video,
        is_disconnected=request.is_disconnected,
        attachment=download,
    )
