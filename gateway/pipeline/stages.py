"""Engine-agnostic description of a processing pipeline."""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from gateway.pipeline.requests import JobKind


class StageKind(Enum):
    """Types of pipeline stage."""

    TRIM = "trim"
    FILTER_GRAPH = "filter_graph"
    ENCODE = "encode"
    REMUX = "remux"


class EncodeMode(str, Enum):
    """How streams are written to the output."""

    REENCODE = "reencode"
    COPY = "copy"


@dataclass(frozen=True)
class Stage:
    """A named operation plus its validated parameters."""

    kind: StageKind
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Freeze the parameter mapping so a built pipeline cannot be mutated.
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    def __getitem__(self, name: str) -> Any:
        return self.params[name]

    def get(self, name: str, default: Any = None) -> Any:
        return self.params.get(name, default)


@dataclass(frozen=True)
class PipelineSpec:
    """Ordered, immutable list of stages built for one request."""

    job_kind: JobKind
    output_format: str
    stages: tuple[Stage, ...]
    source_url: Optional[str] = None

    @property
    def needs_upload(self) -> bool:
        return self.source_url is None

    def stage(self, kind: StageKind) -> Optional[Stage]:
        """Return the first stage of the given kind, if any."""
        for stage in self.stages:
            if stage.kind is kind:
                return stage
        return None

    def describe(self) -> str:
        """Short one-line description for logs."""
        names = " -> ".join(stage.kind.value for stage in self.stages)
        return f"{self.job_kind.value}[{names}] -> .{self.output_format}"
