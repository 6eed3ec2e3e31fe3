from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, Iterator, Optional, Protocol, Tuple

from .errors import InvalidInputError


class Variant(str, Enum):
    ORIGINAL = "original"
    SIZED = "sized"
    THUMBNAIL = "thumbnail"


@dataclass(frozen=True)
class DerivativeSpec:
    variant: Variant
    max_width: int
    max_height: int

    def validate(self) -> None:
        for label, value in (("width", self.max_width), ("height", self.max_height)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidInputError(f"{self.variant.value} {label} must be an integer")
            if value <= 0:
                raise InvalidInputError(f"{self.variant.value} {label} must be positive, got {value}")


@dataclass(frozen=True)
class DerivativeRequest:
    source: bytes
    filename: str
    extension: str
    original: DerivativeSpec
    sized: DerivativeSpec
    thumbnail: DerivativeSpec
    container: str
    sub_directory: str = ""
    use_hash_for_filename: bool = False
    dedupe: bool = False
    connection: Optional[str] = None

    @property
    def specs(self) -> Tuple[DerivativeSpec, DerivativeSpec, DerivativeSpec]:
        return (self.original, self.sized, self.thumbnail)

    def validate(self) -> None:
        """Reject the request before any decoding or store access."""
        if not self.source:
            raise InvalidInputError("image payload is empty")
        if not self.container:
            raise InvalidInputError("container is required")
        if not self.extension or not self.extension.strip("."):
            raise InvalidInputError("extension is required")
        if not self.use_hash_for_filename and not self.filename:
            raise InvalidInputError("filename is required unless hash naming is enabled")
        expected = (Variant.ORIGINAL, Variant.SIZED, Variant.THUMBNAIL)
        for spec, variant in zip(self.specs, expected):
            if spec.variant is not variant:
                raise InvalidInputError(f"{variant.value} spec carries variant {spec.variant.value}")
            spec.validate()


def artifact_key(sub_directory: str, filename: str, variant: Variant, extension: str) -> str:
    """Storage key for one derivative. ``sub_directory`` is used verbatim."""
    return f"{sub_directory}{filename}_{variant.value}.{extension.lstrip('.')}"


def artifact_keys(sub_directory: str, filename: str, extension: str) -> Dict[Variant, str]:
    return {variant: artifact_key(sub_directory, filename, variant, extension) for variant in Variant}


@dataclass
class DerivativeResult:
    original: str
    sized: str
    thumbnail: str
    skipped: bool
    filename: str
    timings: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


class StepTimer:
    """Collects step durations (milliseconds) for a single pipeline call."""

    def __init__(self) -> None:
        self.timings: Dict[str, float] = {}

    @contextmanager
    def span(self, name: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.timings[name] = round((time.perf_counter() - started) * 1000.0, 3)


class BlobStore(Protocol):
    """Key/value byte store the pipeline writes derivatives into."""

    async def ensure_container(self, container: str) -> None:
        ...

    async def exists(self, container: str, key: str) -> bool:
        ...

    async def put(self, container: str, key: str, data: bytes, content_type: str) -> str:
        ...

    def url_for(self, container: str, key: str) -> str:
        ...
