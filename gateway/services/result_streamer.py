"""Stream a finished job's output back to the client.

The workspace is released exactly once whichever way delivery ends:
complete transfer, client disconnect mid-stream, or a job that never
produced output.
"""

import logging
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from gateway.config import Settings, get_settings
from gateway.exceptions import (
    EngineExecutionError,
    GatewayError,
    JobCancelledError,
    JobTimeoutError,
    WorkspaceError,
)
from gateway.pipeline.formats import media_type_for
from gateway.services.job_runner import CancelReason, JobState, Outcome
from gateway.services.workspace import CleanupToken

logger = logging.getLogger(__name__)


class WorkspaceStreamingResponse(StreamingResponse):
    """Streams a workspace file and releases the workspace afterwards."""

    def __init__(
        self,
        path: Path,
        token: CleanupToken,
        *,
        chunk_size: int = 64 * 1024,
        **kwargs,
    ):
        self.path = path
        self.token = token
        self.chunk_size = chunk_size
        self.completed = False
        super().__init__(self._iter_file(), **kwargs)

    async def _iter_file(self) -> AsyncIterator[bytes]:
        with open(self.path, "rb") as fh:
            while True:
                chunk = await run_in_threadpool(fh.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk
        self.completed = True

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request_id = self.token.workspace.request_id
        try:
            await super().__call__(scope, receive, send)
        except (ClientDisconnect, OSError) as e:
            logger.info("[%s] Client disconnected during streaming: %s", request_id, e)
        finally:
            await self.token.release_async()
            if not self.completed:
                logger.info("[%s] Streaming aborted before completion", request_id)


class ResultStreamer:
    """Turns a job Outcome into a streaming response or a client error."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def error_for(self, outcome: Outcome) -> GatewayError:
        """Exception describing an unsuccessful outcome."""
        if outcome.state is JobState.CANCELLED:
            if outcome.reason == CancelReason.TIMEOUT.value:
                return JobTimeoutError()
            return JobCancelledError(f"Job cancelled: {outcome.reason}" if outcome.reason else None)
        diagnostic = outcome.diagnostic
        limit = self.settings.diagnostic_max_chars
        if limit > 0 and len(diagnostic) > limit:
            diagnostic = diagnostic[-limit:]
        return EngineExecutionError(diagnostic, return_code=outcome.return_code)

    async def deliver(
        self,
        outcome: Outcome,
        token: CleanupToken,
        *,
        output_format: str,
        filename: str,
        attachment: bool = False,
    ) -> WorkspaceStreamingResponse:
        """Build the response for a finished job.

        Args:
            outcome: Terminal outcome of the job
            token: Cleanup token of the job's workspace. Ownership passes to
                the response on success; on failure it is released here.
            output_format: Output extension, selects the content type
            filename: Name advertised in Content-Disposition
            attachment: Ask the client to download rather than display

        Raises:
            EngineExecutionError: If the job failed or produced no output
            JobCancelledError: If the job was cancelled
            JobTimeoutError: If the job hit its time limit
        """
        workspace = token.workspace
        if not outcome.succeeded:
            await token.release_async()
            raise self.error_for(outcome)

        try:
            size = workspace.output_path.stat().st_size
        except FileNotFoundError:
            size = 0
        except OSError as e:
            await token.release_async()
            raise WorkspaceError(f"Cannot read output: {e.strerror}") from e

        if size == 0:
            await token.release_async()
            raise EngineExecutionError("no output produced", return_code=outcome.return_code)

        disposition = "attachment" if attachment else "inline"
        logger.info("[%s] Streaming %s (%d bytes)", workspace.request_id, filename, size)
        return WorkspaceStreamingResponse(
            workspace.output_path,
            token,
            chunk_size=self.settings.stream_chunk_size,
            media_type=media_type_for(output_format),
            headers={
                "Content-Length": str(size),
                "Content-Disposition": f'{disposition}; filename="{filename}"',
            },
        )
