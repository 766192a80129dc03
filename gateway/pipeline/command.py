"""Render a ``PipelineSpec`` into an ffmpeg argument vector."""

from typing import Protocol

from gateway.exceptions import MissingUploadError, ValidationError
from gateway.pipeline.formats import get_output_format
from gateway.pipeline.stages import EncodeMode, PipelineSpec, StageKind


class WorkspacePaths(Protocol):
    input_path: object
    output_path: object


def _seconds(value: float) -> str:
    return f"{value:.3f}"


def render_command(spec: PipelineSpec, workspace: WorkspacePaths, ffmpeg_path: str = "ffmpeg") -> list[str]:
    """Build the engine invocation for a pipeline.

    The result is an argv list handed straight to the process launcher;
    no shell is involved.

    Args:
        spec: Built pipeline
        workspace: Object providing ``input_path`` and ``output_path``
        ffmpeg_path: Engine binary

    Returns:
        Command as a list of arguments

    Raises:
        MissingUploadError: If the pipeline needs an uploaded input and the
            workspace has none
    """
    output = get_output_format(spec.output_format)

    cmd = [ffmpeg_path, "-hide_banner", "-nostdin", "-y"]

    trim = spec.stage(StageKind.TRIM)
    encode = spec.stage(StageKind.ENCODE)
    filter_graph = spec.stage(StageKind.FILTER_GRAPH)
    remux = spec.stage(StageKind.REMUX)

    copy_mode = encode is not None and encode["mode"] is EncodeMode.COPY

    # Input
    if remux is not None:
        cmd.extend(["-i", remux["source"]])
    else:
        if workspace.input_path is None:
            raise MissingUploadError()
        if trim is not None and copy_mode:
            # Stream copy: seek first (fast but may be imprecise)
            cmd.extend(["-ss", _seconds(trim["start_s"])])
            cmd.extend(["-i", str(workspace.input_path)])
        else:
            cmd.extend(["-i", str(workspace.input_path)])
            if trim is not None:
                cmd.extend(["-ss", _seconds(trim["start_s"])])

    if trim is not None:
        cmd.extend(["-t", _seconds(trim["duration_s"])])

    if filter_graph is not None:
        if not output.has_video:
            raise ValidationError(f"Format {output.extension} cannot carry a video filter")
        cmd.extend(["-vf", filter_graph["graph"]])

    # Streams
    if remux is not None:
        cmd.extend(["-c", "copy"])
        if output.muxer in ("mp4", "mov"):
            cmd.extend(["-bsf:a", "aac_adtstoasc"])
    elif copy_mode:
        cmd.extend(["-c", "copy", "-avoid_negative_ts", "make_zero"])
    else:
        cmd.extend(output.encode_args)

    # Machine-readable progress on stdout, plain log on stderr
    cmd.extend(["-progress", "pipe:1", "-nostats"])

    cmd.extend(output.muxer_args)
    cmd.extend(["-f", output.muxer, str(workspace.output_path)])
    return cmd
