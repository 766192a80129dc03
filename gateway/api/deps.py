from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from gateway.config import get_settings
from gateway.pipeline.builder import PipelineBuilder
from gateway.services.engine import EngineLocator
from gateway.services.janitor import Janitor
from gateway.services.job_runner import JobRunner
from gateway.services.manifest_probe import ManifestProbe
from gateway.services.result_streamer import ResultStreamer
from gateway.services.transcode_service import TranscodeService
from gateway.services.workspace import WorkspaceManager


@lru_cache
def get_workspace_manager() -> WorkspaceManager:
    return WorkspaceManager(settings=get_settings())


@lru_cache
def get_engine_locator() -> EngineLocator:
    return EngineLocator(get_settings())


@lru_cache
def get_job_runner() -> JobRunner:
    return JobRunner(get_engine_locator(), get_settings())


@lru_cache
def get_janitor() -> Janitor:
    settings = get_settings()
    return Janitor(
        get_workspace_manager(),
        interval_s=settings.janitor_interval_s,
        max_age_s=settings.janitor_max_age_s,
    )


@lru_cache
def get_transcode_service() -> TranscodeService:
    settings = get_settings()
    probe = None
    if settings.manifest_probe_enabled:
        probe = ManifestProbe(timeout=settings.manifest_probe_timeout_s)
    return TranscodeService(
        builder=PipelineBuilder(settings),
        workspaces=get_workspace_manager(),
        engine=get_engine_locator(),
        runner=get_job_runner(),
        streamer=ResultStreamer(settings),
        probe=probe,
        settings=settings,
    )


def clear_service_caches() -> None:
    """Drop every cached service so the next call picks up fresh settings."""
    for getter in (
        get_workspace_manager,
        get_engine_locator,
        get_job_runner,
        get_janitor,
        get_transcode_service,
    ):
        getter.cache_clear()


Service = Annotated[TranscodeService, Depends(get_transcode_service)]
Runner = Annotated[JobRunner, Depends(get_job_runner)]
Engine = Annotated[EngineLocator, Depends(get_engine_locator)]
