"""Run the media engine as a cancelable asyncio subprocess.

A ``Job`` is the runtime handle of one engine process and moves through
``STARTING -> RUNNING -> {COMPLETED | FAILED | CANCELLED}``. Its outcome is
published on a future (``Job.wait()``) and, together with progress events,
on per-subscriber queues (``JobRunner.run()``).
"""

import asyncio
import logging
import re
import shlex
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

from gateway.config import Settings, get_settings
from gateway.exceptions import EngineNotFoundError
from gateway.pipeline.command import render_command
from gateway.pipeline.stages import PipelineSpec, StageKind
from gateway.services.engine import EngineLocator
from gateway.services.workspace import Workspace

logger = logging.getLogger(__name__)

DURATION_PATTERN = re.compile(r"Duration: (\d{2}):(\d{2}):(\d{2}(?:\.\d+)?)")
# Single log lines longer than this are truncated before buffering
MAX_LINE_CHARS = 2000
# Per-subscriber event queue size; oldest events are dropped when full
EVENT_BUFFER = 256
STREAM_LIMIT = 1024 * 1024


class JobState(Enum):
    """Lifecycle states of an engine job."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.STARTING: frozenset({JobState.RUNNING, JobState.FAILED, JobState.CANCELLED}),
    JobState.RUNNING: frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}),
}


class CancelReason(str, Enum):
    """Why a job was cancelled."""

    CLIENT_DISCONNECTED = "client_disconnected"
    REQUEST_CANCELLED = "request_cancelled"
    TIMEOUT = "timeout"
    SHUTDOWN = "shutdown"
    REQUESTED = "requested"


@dataclass(frozen=True)
class ProgressEvent:
    """Something observed while the engine runs: a log line or a progress tick."""

    job_id: str
    state: JobState
    line: Optional[str] = None
    time_s: Optional[float] = None
    duration_s: Optional[float] = None

    @property
    def percent(self) -> Optional[float]:
        if self.time_s is None or not self.duration_s:
            return None
        return max(0.0, min(100.0, self.time_s / self.duration_s * 100))


@dataclass(frozen=True)
class Outcome:
    """Terminal result of a job."""

    job_id: str
    state: JobState
    return_code: Optional[int] = None
    diagnostic: str = ""
    reason: Optional[str] = None
    elapsed_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.COMPLETED


JobEvent = Union[ProgressEvent, Outcome]


def parse_duration(hours: str, minutes: str, seconds: str) -> float:
    """Convert ``HH``, ``MM``, ``SS.ms`` components to seconds."""
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


async def _read_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            # Line longer than the stream limit; the reader has discarded it.
            continue
        if not line:
            return
        yield line


class Job:
    """Runtime handle to one engine process."""

    def __init__(
        self,
        job_id: str,
        command: list[str],
        *,
        log_max_lines: int = 500,
        diagnostic_max_chars: int = 500,
        timeout_s: Optional[float] = None,
        terminate_grace_s: float = 5.0,
        expected_duration_s: Optional[float] = None,
        redact: tuple[str, ...] = (),
    ):
        self.id = job_id
        self.command = command
        self.state = JobState.STARTING
        self.log: deque[str] = deque(maxlen=log_max_lines)
        self.diagnostic_max_chars = diagnostic_max_chars
        self.timeout_s = timeout_s
        self.terminate_grace_s = terminate_grace_s
        self.expected_duration_s = expected_duration_s
        self.media_time_s: float = 0.0
        self.return_code: Optional[int] = None
        self.cancel_reason: Optional[str] = None

        self._redact = tuple(r for r in redact if r)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._outcome: Optional[asyncio.Future] = None
        self._kill_handle: Optional[asyncio.TimerHandle] = None
        self._launching = False
        self._subscribers: list[asyncio.Queue] = []
        self._started_at = time.monotonic()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def done(self) -> bool:
        return self.state.terminal

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)

    def _transition(self, new_state: JobState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS.get(self.state, frozenset()):
            raise RuntimeError(f"Invalid job transition: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _ensure_outcome(self) -> asyncio.Future:
        if self._outcome is None:
            self._outcome = asyncio.get_running_loop().create_future()
        return self._outcome

    def add_done_callback(self, callback: Callable[["Job"], None]) -> None:
        self._ensure_outcome().add_done_callback(lambda _: callback(self))

    def log_tail(self, max_chars: Optional[int] = None) -> str:
        """Last ``max_chars`` characters of the log, with workspace paths redacted."""
        limit = self.diagnostic_max_chars if max_chars is None else max_chars
        text = "\n".join(self.log)
        for secret in self._redact:
            text = text.replace(secret, "<workspace>")
        if limit > 0 and len(text) > limit:
            text = text[-limit:]
        return text.strip()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue:
        """Register a queue receiving every subsequent event, ending with the Outcome."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=EVENT_BUFFER)
        outcome = self._ensure_outcome()
        if outcome.done():
            queue.put_nowait(outcome.result())
        else:
            self._subscribers.append(queue)
        return queue

    async def iter_events(self, queue: asyncio.Queue) -> AsyncIterator[JobEvent]:
        try:
            while True:
                event = await queue.get()
                yield event
                if isinstance(event, Outcome):
                    return
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def _publish(self, event: JobEvent) -> None:
        for queue in self._subscribers:
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the engine process.

        ``STARTING`` ends as soon as the process exists and its invocation
        line has been recorded.

        Raises:
            EngineNotFoundError: If the engine binary does not exist
        """
        self._ensure_outcome()
        if self.done:
            return
        self._publish(ProgressEvent(self.id, JobState.STARTING))

        if self.cancel_reason is not None:
            self._finish(None)
            return

        self._launching = True
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as e:
            self.log.append(f"Engine not found: {self.command[0]}")
            self._finish(None)
            raise EngineNotFoundError(f"FFmpeg not found: {self.command[0]}") from e
        except OSError as e:
            self.log.append(f"Failed to launch engine: {e}")
            self._finish(None)
            return
        finally:
            self._launching = False

        logger.info("[%s] [FFmpeg] %s", self.id, self.command_line)
        self._transition(JobState.RUNNING)
        self._publish(ProgressEvent(self.id, JobState.RUNNING, line=self.command_line))
        self._supervisor = asyncio.create_task(self._supervise())
        if self.cancel_reason is not None:
            self._terminate()

    def cancel(self, reason: CancelReason | str = CancelReason.REQUESTED) -> bool:
        """Request cancellation, terminating the engine process.

        The process gets SIGTERM, then SIGKILL after ``terminate_grace_s``.

        Returns:
            False if the job had already finished
        """
        if self.done:
            return False
        if self.cancel_reason is None:
            self.cancel_reason = reason.value if isinstance(reason, CancelReason) else str(reason)
            logger.info("[%s] Cancelling job (%s)", self.id, self.cancel_reason)

        if self._process is None:
            # Not launched yet; start() picks the reason up once spawning ends.
            if not self._launching and self._outcome is not None:
                self._finish(None)
            return True

        self._terminate()
        return True

    def _terminate(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        if self._kill_handle is None:
            loop = asyncio.get_running_loop()
            self._kill_handle = loop.call_later(self.terminate_grace_s, self._kill)

    async def wait(self) -> Outcome:
        """Wait for the outcome. Cancelling the waiter does not cancel the job."""
        return await asyncio.shield(self._ensure_outcome())

    def _kill(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            logger.warning("[%s] Engine did not exit after SIGTERM, killing pid %s", self.id, process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def _supervise(self) -> None:
        process = self._process
        assert process is not None
        try:
            if self.timeout_s and self.timeout_s > 0:
                try:
                    await asyncio.wait_for(self._pump(), timeout=self.timeout_s)
                except asyncio.TimeoutError:
                    logger.warning("[%s] Job exceeded %.0fs, terminating", self.id, self.timeout_s)
                    self.cancel(CancelReason.TIMEOUT)
            else:
                await self._pump()
            return_code = await process.wait()
        except asyncio.CancelledError:
            if self.cancel_reason is None:
                self.cancel_reason = CancelReason.SHUTDOWN.value
            self._kill()
            self._finish(process.returncode)
            raise
        except Exception:
            logger.exception("[%s] Error while reading engine output", self.id)
            self._kill()
            return_code = await process.wait()
        self._finish(return_code)

    async def _pump(self) -> None:
        process = self._process
        assert process is not None and process.stderr is not None and process.stdout is not None
        await asyncio.gather(self._read_log(process.stderr), self._read_progress(process.stdout))

    async def _read_log(self, stream: asyncio.StreamReader) -> None:
        async for raw in _read_lines(stream):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            line = line[:MAX_LINE_CHARS]
            self.log.append(line)
            logger.debug("[%s] [FFmpeg] %s", self.id, line)

            if self.expected_duration_s is None:
                match = DURATION_PATTERN.search(line)
                if match:
                    self.expected_duration_s = parse_duration(*match.groups())

            self._publish(ProgressEvent(self.id, self.state, line=line))

    async def _read_progress(self, stream: asyncio.StreamReader) -> None:
        async for raw in _read_lines(stream):
            key, _, value = raw.decode("utf-8", errors="replace").strip().partition("=")
            # ffmpeg reports microseconds under both keys
            if key not in ("out_time_us", "out_time_ms"):
                continue
            try:
                self.media_time_s = int(value) / 1_000_000
            except ValueError:
                continue
            self._publish(
                ProgressEvent(
                    self.id,
                    self.state,
                    time_s=self.media_time_s,
                    duration_s=self.expected_duration_s,
                )
            )

    def _finish(self, return_code: Optional[int]) -> None:
        if self.done:
            return
        if self._kill_handle is not None:
            self._kill_handle.cancel()
            self._kill_handle = None

        self.return_code = return_code
        if self.cancel_reason is not None:
            state = JobState.CANCELLED
        elif return_code == 0:
            state = JobState.COMPLETED
        else:
            state = JobState.FAILED
        self._transition(state)

        elapsed_ms = int((time.monotonic() - self._started_at) * 1000)
        if state is JobState.COMPLETED:
            logger.info("[%s] Job completed in %dms", self.id, elapsed_ms)
        elif state is JobState.CANCELLED:
            logger.info("[%s] Job cancelled (%s) after %dms", self.id, self.cancel_reason, elapsed_ms)
        else:
            logger.error(
                "[%s] FFmpeg failed (rc=%s). stderr (last 2000): %s",
                self.id,
                return_code,
                self.log_tail(2000),
            )

        outcome = Outcome(
            job_id=self.id,
            state=state,
            return_code=return_code,
            diagnostic="" if state is JobState.COMPLETED else self.log_tail(),
            reason=self.cancel_reason,
            elapsed_ms=elapsed_ms,
        )
        future = self._ensure_outcome()
        if not future.done():
            future.set_result(outcome)
        self._publish(outcome)


class JobRunner:
    """Launches engine jobs and tracks the ones in flight.

    Each job owns its own process and workspace; the only shared state is
    the optional process-count ceiling (``max_concurrent_jobs``).
    """

    def __init__(self, engine: Optional[EngineLocator] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.engine = engine or EngineLocator(self.settings)
        limit = self.settings.max_concurrent_jobs
        self._slots: Optional[asyncio.Semaphore] = asyncio.Semaphore(limit) if limit > 0 else None
        self._jobs: dict[str, Job] = {}

    @property
    def active_jobs(self) -> int:
        return len(self._jobs)

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def create_job(self, spec: PipelineSpec, workspace: Workspace, *, job_id: Optional[str] = None) -> Job:
        """Build (but do not start) the job for a pipeline.

        Raises:
            EngineNotFoundError: If no engine is available
        """
        ffmpeg_path = self.engine.require()
        command = render_command(spec, workspace, ffmpeg_path)
        trim = spec.stage(StageKind.TRIM)
        settings = self.settings
        return Job(
            job_id or workspace.request_id,
            command,
            log_max_lines=settings.job_log_max_lines,
            diagnostic_max_chars=settings.diagnostic_max_chars,
            timeout_s=settings.job_timeout_s or None,
            terminate_grace_s=settings.terminate_grace_s,
            expected_duration_s=trim["duration_s"] if trim is not None else None,
            redact=(str(workspace.root),),
        )

    async def launch(self, job: Job) -> Job:
        """Start a job once a process slot is free."""
        if self._slots is not None:
            await self._slots.acquire()
        self._jobs[job.id] = job
        try:
            await job.start()
        except BaseException:
            self._release(job)
            raise
        job.add_done_callback(self._release)
        return job

    def _release(self, job: Job) -> None:
        if self._jobs.get(job.id) is job:
            del self._jobs[job.id]
            if self._slots is not None:
                self._slots.release()

    async def run(self, spec: PipelineSpec, workspace: Workspace) -> AsyncIterator[JobEvent]:
        """Run a pipeline, yielding progress events and finally its Outcome.

        Closing the iterator before the Outcome terminates the engine.
        """
        job = self.create_job(spec, workspace)
        queue = job.subscribe()
        try:
            await self.launch(job)
            async for event in job.iter_events(queue):
                yield event
        finally:
            if not job.done:
                job.cancel(CancelReason.REQUESTED)

    async def run_to_completion(
        self,
        spec: PipelineSpec,
        workspace: Workspace,
        *,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> Outcome:
        """Run a pipeline and return its Outcome.

        Args:
            spec: Built pipeline
            workspace: Workspace providing input/output paths
            is_disconnected: Polled while the job runs; when it returns True
                the job is cancelled

        Raises:
            EngineNotFoundError: If no engine is available
        """
        job = self.create_job(spec, workspace)
        logger.info("[%s] Running %s", job.id, spec.describe())
        watcher: Optional[asyncio.Task] = None
        try:
            await self.launch(job)
            if is_disconnected is not None and not job.done:
                watcher = asyncio.create_task(self._watch_disconnect(job, is_disconnected))
            return await job.wait()
        except asyncio.CancelledError:
            job.cancel(CancelReason.REQUEST_CANCELLED)
            raise
        finally:
            if watcher is not None:
                watcher.cancel()

    async def _watch_disconnect(self, job: Job, is_disconnected: Callable[[], Awaitable[bool]]) -> None:
        interval = self.settings.disconnect_poll_interval_s
        while not job.done:
            await asyncio.sleep(interval)
            if job.done:
                return
            try:
                gone = await is_disconnected()
            except Exception as e:
                logger.warning("[%s] Disconnect check failed, no longer watching: %s", job.id, e)
                return
            if gone:
                logger.info("[%s] Client disconnected, cancelling job", job.id)
                job.cancel(CancelReason.CLIENT_DISCONNECTED)
                return

    async def shutdown(self, timeout_s: float = 10.0) -> None:
        """Cancel every in-flight job and wait for the processes to exit."""
        jobs = list(self._jobs.values())
        if not jobs:
            return
        logger.info("Cancelling %d running job(s)", len(jobs))
        for job in jobs:
            job.cancel(CancelReason.SHUTDOWN)
        done, pending = await asyncio.wait([asyncio.ensure_future(job.wait()) for job in jobs], timeout=timeout_s)
        if pending:
            logger.warning("%d job(s) did not exit within %.0fs", len(pending), timeout_s)
