"""Output container formats the engine can produce."""

from dataclasses import dataclass


@dataclass(frozen=True)
class OutputFormat:
    """Encoding and muxing arguments for one output container."""

    extension: str
    muxer: str
    media_type: str
    video_args: tuple[str, ...] = ()
    audio_args: tuple[str, ...] = ()
    muxer_args: tuple[str, ...] = ()
    # Whether the container can take arbitrary streams without re-encoding
    supports_copy: bool = True
    has_video: bool = True

    @property
    def encode_args(self) -> list[str]:
        return [*self.video_args, *self.audio_args]


_H264 = ("-c:v", "libx264", "-preset", "veryfast", "-crf", "23", "-pix_fmt", "yuv420p")
_AAC = ("-c:a", "aac", "-b:a", "192k")
_FASTSTART = ("-movflags", "+faststart")

OUTPUT_FORMATS: dict[str, OutputFormat] = {
    "mp4": OutputFormat(
        extension="mp4",
        muxer="mp4",
        media_type="video/mp4",
        video_args=_H264,
        audio_args=_AAC,
        muxer_args=_FASTSTART,
    ),
    "mov": OutputFormat(
        extension="mov",
        muxer="mov",
        media_type="video/quicktime",
        video_args=_H264,
        audio_args=_AAC,
        muxer_args=_FASTSTART,
    ),
    "mkv": OutputFormat(
        extension="mkv",
        muxer="matroska",
        media_type="video/x-matroska",
        video_args=_H264,
        audio_args=_AAC,
    ),
    "webm": OutputFormat(
        extension="webm",
        muxer="webm",
        media_type="video/webm",
        video_args=("-c:v", "libvpx-vp9", "-b:v", "0", "-crf", "32", "-deadline", "realtime", "-cpu-used", "8"),
        audio_args=("-c:a", "libopus", "-b:a", "128k"),
        supports_copy=False,
    ),
    "avi": OutputFormat(
        extension="avi",
        muxer="avi",
        media_type="video/x-msvideo",
        video_args=("-c:v", "mpeg4", "-q:v", "5"),
        audio_args=("-c:a", "libmp3lame", "-b:a", "192k"),
        supports_copy=False,
    ),
    "gif": OutputFormat(
        extension="gif",
        muxer="gif",
        media_type="image/gif",
        video_args=("-c:v", "gif"),
        audio_args=("-an",),
        supports_copy=False,
    ),
    "mp3": OutputFormat(
        extension="mp3",
        muxer="mp3",
        media_type="audio/mpeg",
        video_args=("-vn",),
        audio_args=("-c:a", "libmp3lame", "-b:a", "192k"),
        supports_copy=False,
        has_video=False,
    ),
}


def get_output_format(extension: str) -> OutputFormat:
    """Look up a known output format by extension.

    Raises:
        KeyError: If the extension has no registered format
    """
    return OUTPUT_FORMATS[extension.lower().lstrip(".")]


def media_type_for(extension: str) -> str:
    """Content type for an output extension, ``application/octet-stream`` if unknown."""
    fmt = OUTPUT_FORMATS.get(extension.lower().lstrip("."))
    return fmt.media_type if fmt else "application/octet-stream"
