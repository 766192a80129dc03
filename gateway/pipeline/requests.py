"""Job request types accepted by the pipeline builder."""

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional, Union


class JobKind(str, Enum):
    """Kinds of transcode job."""

    CLIP = "clip"
    REMUX = "remux"
    OVERLAY = "overlay"


class OverlayPosition(str, Enum):
    """Where the overlay box is drawn."""

    TOP = "top"
    BOTTOM = "bottom"


@dataclass(frozen=True)
class UploadSource:
    """An uploaded source file, as declared by the client."""

    filename: str
    content_type: Optional[str] = None

    @property
    def extension(self) -> str:
        """Lower-case extension of the declared filename, without the dot."""
        if "." not in self.filename:
            return ""
        return self.filename.rsplit(".", 1)[-1].lower()


@dataclass(frozen=True)
class ClipRequest:
    """Cut a time window out of an uploaded video.

    ``None`` for start or duration means "use the default".
    """

    kind: ClassVar[JobKind] = JobKind.CLIP

    source: Optional[UploadSource] = None
    start_s: Optional[float] = None
    duration_s: Optional[float] = None
    output_format: str = "mp4"
    reencode: bool = True


@dataclass(frozen=True)
class RemuxRequest:
    """Repackage a remote streaming manifest into a single file."""

    kind: ClassVar[JobKind] = JobKind.REMUX

    source_url: str = ""
    output_format: str = "mp4"


@dataclass(frozen=True)
class OverlayRequest:
    """Draw a filled box with text on top of an uploaded video."""

    kind: ClassVar[JobKind] = JobKind.OVERLAY

    text: str = ""
    source: Optional[UploadSource] = None
    box_color: Optional[str] = None
    box_height: Optional[int] = None
    font_color: Optional[str] = None
    font_size: Optional[int] = None
    position: OverlayPosition = OverlayPosition.TOP
    output_format: str = "mp4"


JobRequest = Union[ClipRequest, RemuxRequest, OverlayRequest]
