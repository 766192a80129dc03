"""Job requests, pipeline stages, and their translation to engine arguments.

Everything in this package is pure: no process is launched and no file is
touched. Validation and escaping of user-supplied values happens here so
that nothing downstream ever sees raw request text.
"""

from gateway.pipeline.builder import PipelineBuilder
from gateway.pipeline.command import render_command
from gateway.pipeline.requests import (
    ClipRequest,
    JobKind,
    JobRequest,
    OverlayPosition,
    OverlayRequest,
    RemuxRequest,
    UploadSource,
)
from gateway.pipeline.stages import PipelineSpec, Stage, StageKind

__all__ = [
    "ClipRequest",
    "JobKind",
    "JobRequest",
    "OverlayPosition",
    "OverlayRequest",
    "PipelineBuilder",
    "PipelineSpec",
    "RemuxRequest",
    "Stage",
    "StageKind",
    "UploadSource",
    "render_command",
]
