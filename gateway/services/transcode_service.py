"""Orchestrates one transcode request from validation to streamed response."""

import logging
from typing import Awaitable, Callable, Optional

from fastapi import UploadFile

from gateway.config import Settings, get_settings
from gateway.exceptions import MissingUploadError
from gateway.pipeline.builder import PipelineBuilder
from gateway.pipeline.requests import JobRequest, UploadSource
from gateway.pipeline.stages import PipelineSpec
from gateway.services.engine import EngineLocator
from gateway.services.job_runner import JobRunner
from gateway.services.manifest_probe import ManifestProbe
from gateway.services.result_streamer import ResultStreamer, WorkspaceStreamingResponse
from gateway.services.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


def download_name(spec: PipelineSpec, request_id: str) -> str:
    """Filename advertised for a job's output: ``<kind>_<request_id>.<ext>``."""
    return f"{spec.job_kind.value}_{request_id}.{spec.output_format}"


class TranscodeService:
    """Runs a request through builder, workspace, runner and streamer.

    Ordering guarantees:
    - validation happens before anything is allocated or launched
    - once a workspace is leased, every exit path releases it exactly once
    """

    def __init__(
        self,
        builder: PipelineBuilder,
        workspaces: WorkspaceManager,
        engine: EngineLocator,
        runner: JobRunner,
        streamer: ResultStreamer,
        probe: Optional[ManifestProbe] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.builder = builder
        self.workspaces = workspaces
        self.engine = engine
        self.runner = runner
        self.streamer = streamer
        self.probe = probe

    async def execute(
        self,
        job_request: JobRequest,
        *,
        request_id: str,
        upload: Optional[UploadFile] = None,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        attachment: bool = False,
    ) -> WorkspaceStreamingResponse:
        """Validate, run and stream a job.

        Raises:
            ValidationError: Invalid input (nothing allocated)
            EngineNotFoundError: No engine on this host (nothing allocated)
            SourceFetchError: Remote manifest unreachable (nothing allocated)
            EngineExecutionError: The engine failed
            JobCancelledError: The client went away
            JobTimeoutError: The job exceeded its time limit
        """
        spec = self.builder.build(job_request)
        if spec.needs_upload and (upload is None or not upload.filename):
            raise MissingUploadError()
        self.engine.require()

        if spec.source_url and self.probe is not None:
            await self.probe.check(spec.source_url, request_id=request_id)

        input_ext = "bin"
        source = getattr(job_request, "source", None)
        if isinstance(source, UploadSource) and source.extension:
            input_ext = source.extension

        token = self.workspaces.lease(
            request_id,
            has_upload=spec.needs_upload,
            output_ext=spec.output_format,
            input_ext=input_ext,
        )
        try:
            if spec.needs_upload:
                await self.workspaces.receive_upload(upload, token.workspace)
            outcome = await self.runner.run_to_completion(
                spec, token.workspace, is_disconnected=is_disconnected
            )
        except BaseException:
            await token.release_async()
            raise

        return await self.streamer.deliver(
            outcome,
            token,
            output_format=spec.output_format,
            filename=download_name(spec, request_id),
            attachment=attachment,
        )
