"""Translate validated job requests into pipeline specs."""

import logging
import math
from typing import Optional
from urllib.parse import urlsplit

from gateway.config import Settings, get_settings
from gateway.exceptions import (
    InvalidFieldValueError,
    InvalidSourceUrlError,
    MissingFieldError,
    UnsupportedFormatError,
    ValidationError,
)
from gateway.pipeline.filters import (
    Filter,
    render_chain,
    validate_color,
    validate_overlay_text,
    validate_positive_int,
)
from gateway.pipeline.formats import OUTPUT_FORMATS, get_output_format
from gateway.pipeline.requests import (
    ClipRequest,
    JobKind,
    JobRequest,
    OverlayPosition,
    OverlayRequest,
    RemuxRequest,
)
from gateway.pipeline.stages import EncodeMode, PipelineSpec, Stage, StageKind

logger = logging.getLogger(__name__)

ALLOWED_URL_SCHEMES = ("http", "https")
MAX_URL_LENGTH = 2048


class PipelineBuilder:
    """Builds a ``PipelineSpec`` from a ``JobRequest``.

    Pure and deterministic: the same request always yields an equal spec and
    nothing is read or written besides the request itself.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def build(self, request: JobRequest) -> PipelineSpec:
        """Validate a request and build its pipeline.

        Raises:
            ValidationError: If any field is missing, malformed or unsafe
        """
        if isinstance(request, ClipRequest):
            return self._build_clip(request)
        if isinstance(request, RemuxRequest):
            return self._build_remux(request)
        if isinstance(request, OverlayRequest):
            return self._build_overlay(request)
        raise ValidationError(f"Unsupported job type: {type(request).__name__}")

    # ------------------------------------------------------------------
    # Shared validation
    # ------------------------------------------------------------------

    def normalize_format(self, output_format: Optional[str]) -> str:
        """Lower-case an output extension and check it against the allow-list."""
        fmt = (output_format or "mp4").strip().lower().lstrip(".")
        allowed = [f.lower() for f in self.settings.allowed_output_formats]
        if fmt not in allowed or fmt not in OUTPUT_FORMATS:
            raise UnsupportedFormatError(fmt, sorted(set(allowed) & set(OUTPUT_FORMATS)))
        return fmt

    @staticmethod
    def _finite(value: Optional[float], field: str) -> Optional[float]:
        if value is None:
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise InvalidFieldValueError(field=field, value=value)
        if not math.isfinite(number):
            raise InvalidFieldValueError(field=field, value=value)
        return number

    # ------------------------------------------------------------------
    # Job kinds
    # ------------------------------------------------------------------

    def _build_clip(self, request: ClipRequest) -> PipelineSpec:
        fmt = self.normalize_format(request.output_format)
        output = get_output_format(fmt)

        start_s = self._finite(request.start_s, "start")
        if start_s is None or start_s < 0:
            start_s = self.settings.default_clip_start_s

        duration_s = self._finite(request.duration_s, "duration")
        if duration_s is None or duration_s <= 0:
            duration_s = self.settings.default_clip_duration_s

        mode = EncodeMode.REENCODE
        if not request.reencode and output.supports_copy:
            mode = EncodeMode.COPY

        stages = (
            Stage(StageKind.TRIM, {"start_s": start_s, "duration_s": duration_s}),
            Stage(StageKind.ENCODE, {"mode": mode}),
        )
        return PipelineSpec(job_kind=JobKind.CLIP, output_format=fmt, stages=stages)

    def _build_remux(self, request: RemuxRequest) -> PipelineSpec:
        fmt = self.normalize_format(request.output_format)
        url = self.validate_source_url(request.source_url)
        stages = (Stage(StageKind.REMUX, {"source": url, "codec": "copy"}),)
        return PipelineSpec(
            job_kind=JobKind.REMUX,
            output_format=fmt,
            stages=stages,
            source_url=url,
        )

    def _build_overlay(self, request: OverlayRequest) -> PipelineSpec:
        settings = self.settings
        fmt = self.normalize_format(request.output_format)
        if not get_output_format(fmt).has_video:
            raise UnsupportedFormatError(fmt)

        text = validate_overlay_text(request.text, max_length=settings.overlay_max_text_length)
        box_color = validate_color(
            request.box_color or settings.overlay_default_box_color, field="box_color"
        )
        font_color = validate_color(
            request.font_color or settings.overlay_default_font_color, field="font_color"
        )
        box_height = validate_positive_int(
            request.box_height if request.box_height is not None else settings.overlay_default_box_height,
            field="box_height",
            max_value=settings.overlay_max_box_height,
        )
        font_size = validate_positive_int(
            request.font_size if request.font_size is not None else settings.overlay_default_font_size,
            field="font_size",
            max_value=settings.overlay_max_font_size,
        )
        position = request.position

        graph = render_chain(
            self.overlay_filters(
                text=text,
                box_color=box_color,
                box_height=box_height,
                font_color=font_color,
                font_size=font_size,
                position=position,
            )
        )
        stages = (
            Stage(
                StageKind.FILTER_GRAPH,
                {
                    "graph": graph,
                    "text": text,
                    "box_color": box_color,
                    "box_height": box_height,
                    "position": position.value,
                },
            ),
            Stage(StageKind.ENCODE, {"mode": EncodeMode.REENCODE}),
        )
        return PipelineSpec(job_kind=JobKind.OVERLAY, output_format=fmt, stages=stages)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def validate_source_url(url: Optional[str]) -> str:
        """Check that a remote source is an absolute http(s) URL."""
        if url is None or not url.strip():
            raise MissingFieldError("url")

        candidate = url.strip()
        if len(candidate) > MAX_URL_LENGTH or any(ch.isspace() or ord(ch) < 32 for ch in candidate):
            raise InvalidSourceUrlError()

        parts = urlsplit(candidate)
        if parts.scheme.lower() not in ALLOWED_URL_SCHEMES or not parts.netloc:
            raise InvalidSourceUrlError()
        return candidate

    @staticmethod
    def parse_position(value: Optional[str]) -> OverlayPosition:
        """Map a client-supplied position name to an ``OverlayPosition``."""
        try:
            return OverlayPosition((value or "top").strip().lower())
        except ValueError:
            raise InvalidFieldValueError(field="position", value=value)

    def overlay_filters(
        self,
        *,
        text: str,
        box_color: str,
        box_height: int,
        font_color: str,
        font_size: int,
        position: OverlayPosition,
    ) -> list[Filter]:
        """Filters drawing a full-width box with centered text inside it.

        All values must already be validated.
        """
        if position is OverlayPosition.TOP:
            box_y = "0"
            text_y = f"({box_height}-text_h)/2"
        else:
            box_y = f"ih-{box_height}"
            text_y = f"h-{box_height}+({box_height}-text_h)/2"

        drawbox = Filter(
            "drawbox",
            (
                ("x", 0),
                ("y", box_y),
                ("w", "iw"),
                ("h", box_height),
                ("color", box_color),
                ("t", "fill"),
            ),
        )

        text_options: list[tuple[str, object]] = [
            ("text", text),
            ("expansion", "none"),
            ("fontcolor", font_color),
            ("fontsize", font_size),
            ("x", "(w-text_w)/2"),
            ("y", text_y),
        ]
        if self.settings.overlay_font_file:
            text_options.insert(1, ("fontfile", self.settings.overlay_font_file))
        drawtext = Filter("drawtext", tuple(text_options))

        return [drawbox, drawtext]
