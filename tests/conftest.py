from __future__ import annotations

import io
from typing import Dict, List, Optional, Tuple

import pytest
from PIL import Image


class MemoryBlobStore:
    """In-memory blob store that records every call made by the pipeline."""

    def __init__(self, fail: Optional[Dict[str, Exception]] = None, fail_keys: Optional[Dict[str, Exception]] = None):
        self.blobs: Dict[Tuple[str, str], Tuple[bytes, str]] = {}
        self.containers: set = set()
        self.calls: List[Tuple[str, ...]] = []
        self.fail = fail or {}
        self.fail_keys = fail_keys or {}

    def _maybe_fail(self, operation: str, key: Optional[str] = None) -> None:
        if operation in self.fail:
            raise self.fail[operation]
        if key is not None:
            for fragment, exc in self.fail_keys.items():
                if fragment in key:
                    raise exc

    async def ensure_container(self, container: str) -> None:
        self.calls.append(("ensure_container", container))
        self._maybe_fail("ensure_container")
        self.containers.add(container)

    async def exists(self, container: str, key: str) -> bool:
        self.calls.append(("exists", container, key))
        self._maybe_fail("exists")
        return (container, key) in self.blobs

    async def put(self, container: str, key: str, data: bytes, content_type: str) -> str:
        self.calls.append(("put", container, key))
        self._maybe_fail("put", key)
        self.blobs[(container, key)] = (data, content_type)
        return self.url_for(container, key)

    def url_for(self, container: str, key: str) -> str:
        return f"memory://{container}/{key}"

    async def health_check(self) -> bool:
        return True

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def image(self, container: str, key: str) -> Image.Image:
        data, _ = self.blobs[(container, key)]
        im = Image.open(io.BytesIO(data))
        im.load()
        return im


def encode(im: Image.Image, fmt: str, **params) -> bytes:
    buffer = io.BytesIO()
    im.save(buffer, format=fmt, **params)
    return buffer.getvalue()


def make_image_bytes(width: int, height: int, fmt: str = "JPEG", color=(200, 80, 40)) -> bytes:
    mode = "RGBA" if fmt == "PNG" else "RGB"
    fill = color + (255,) if mode == "RGBA" else color
    return encode(Image.new(mode, (width, height), fill), fmt)


def make_animated_gif(width: int, height: int, frame_count: int, duration: int = 100, loop: int = 0) -> bytes:
    frames = [
        Image.new("RGB", (width, height), ((index * 25) % 256, 255 - (index * 20) % 256, (index * 50) % 256))
        for index in range(frame_count)
    ]
    return encode(frames[0], "GIF", save_all=True, append_images=frames[1:], duration=duration, loop=loop)


def make_near_identical_gif(width: int, height: int, frame_count: int, durations: List[int], loop: int = 0) -> bytes:
    """Animated GIF whose frames differ from each other in a single pixel."""
    frames = []
    for index in range(frame_count):
        frame = Image.new("RGB", (width, height), (120, 60, 30))
        frame.putpixel((0, 0), (120 + index, 60, 30))
        frames.append(frame)
    return encode(frames[0], "GIF", save_all=True, append_images=frames[1:], duration=durations, loop=loop)


@pytest.fixture
def memory_store() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def jpeg_4k() -> bytes:
    return make_image_bytes(3840, 2160, "JPEG")
