"""
Decoding, max-fit resizing and encoding of source images.

A decoded source is either a ``SingleFrame`` or a ``MultiFrame`` (animated
GIF/WebP/APNG). Both carry a ``kind`` tag that ``resize`` dispatches on, so
callers never branch on the image type themselves.

Decoded sources are shared by every derivative of a request and are never
modified: each resize works on its own copy of the frame data.
"""

from __future__ import annotations

import io
import logging
import struct
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple, Union

from PIL import Image, ImageSequence, PngImagePlugin, UnidentifiedImageError

from .errors import DecodeError, InvalidInputError

logger = logging.getLogger(__name__)

SINGLE_FRAME = "single"
MULTI_FRAME = "multi"

JPEG_QUALITY = 85
RESAMPLE = Image.Resampling.LANCZOS


@dataclass(frozen=True)
class SingleFrame:
    image: Image.Image
    format: Optional[str]
    kind: str = field(default=SINGLE_FRAME, init=False)

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size


@dataclass(frozen=True)
class MultiFrame:
    frames: Tuple[Image.Image, ...]
    durations: Tuple[int, ...]
    loop: Optional[int]
    format: Optional[str]
    kind: str = field(default=MULTI_FRAME, init=False)

    @property
    def size(self) -> Tuple[int, int]:
        # All frames of an animation share the canvas size of the first.
        return self.frames[0].size

    @property
    def frame_count(self) -> int:
        return len(self.frames)


ImageSource = Union[SingleFrame, MultiFrame]


def probe_format(data: bytes) -> str:
    """
    Identify the image format from the header without decoding pixel data.

    Raises:
        DecodeError: Bytes are not a format Pillow can read
    """
    try:
        with Image.open(io.BytesIO(data)) as im:
            fmt = im.format
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"unsupported or corrupt image data: {exc}") from exc
    return fmt or "UNKNOWN"


def decode_image(data: bytes) -> ImageSource:
    """
    Decode raw bytes into an immutable image source.

    Args:
        data: Encoded image bytes

    Returns:
        ``MultiFrame`` for animated inputs, ``SingleFrame`` otherwise

    Raises:
        DecodeError: Bytes are not a format Pillow can read
    """
    try:
        im = Image.open(io.BytesIO(data))
        im.load()
        if getattr(im, "n_frames", 1) > 1:
            return _decode_frames(im)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"unsupported or corrupt image data: {exc}") from exc
    return SingleFrame(image=im, format=im.format)


def _decode_frames(im: Image.Image) -> MultiFrame:
    frames = []
    durations = []
    default_duration = int(im.info.get("duration", 0) or 0)
    for frame in ImageSequence.Iterator(im):
        # convert() composites the frame and returns an independent image
        frames.append(frame.convert("RGBA"))
        durations.append(int(frame.info.get("duration", default_duration) or 0))
    logger.debug(f"Decoded {len(frames)} frames from {im.format} source")
    return MultiFrame(
        frames=tuple(frames),
        durations=tuple(durations),
        loop=im.info.get("loop"),
        format=im.format,
    )


def compute_fit(src_width: int, src_height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """
    Size of the largest box with the source aspect ratio that fits the bounds.

    Never enlarges: a bounding box at least as large as the source in both
    dimensions yields the source size unchanged.

    Raises:
        InvalidInputError: A bound is zero or negative
    """
    if max_width <= 0 or max_height <= 0:
        raise InvalidInputError(f"resize bounds must be positive, got {max_width}x{max_height}")
    scale = min(max_width / src_width, max_height / src_height, 1.0)
    if scale >= 1.0:
        return src_width, src_height
    width = min(max_width, max(1, round(src_width * scale)))
    height = min(max_height, max(1, round(src_height * scale)))
    return width, height


def _resize_single(source: SingleFrame, max_width: int, max_height: int) -> SingleFrame:
    size = compute_fit(*source.size, max_width, max_height)
    working = source.image.copy()
    if size != working.size:
        working = working.resize(size, RESAMPLE)
    return SingleFrame(image=working, format=source.format)


def _resize_multi(source: MultiFrame, max_width: int, max_height: int) -> MultiFrame:
    # One scale for the whole sequence, taken from the base frame.
    size = compute_fit(*source.size, max_width, max_height)
    frames = []
    for frame in source.frames:
        working = frame.copy()
        if working.size != size:
            working = working.resize(size, RESAMPLE)
        frames.append(working)
    return MultiFrame(
        frames=tuple(frames),
        durations=source.durations,
        loop=source.loop,
        format=source.format,
    )


_RESIZERS: Dict[str, Callable[..., ImageSource]] = {
    SINGLE_FRAME: _resize_single,
    MULTI_FRAME: _resize_multi,
}


def resize(source: ImageSource, max_width: int, max_height: int) -> ImageSource:
    """Max-fit resize of ``source`` into ``max_width`` x ``max_height``."""
    try:
        resizer = _RESIZERS[source.kind]
    except KeyError:
        raise TypeError(f"unknown image source kind: {source.kind!r}") from None
    return resizer(source, max_width, max_height)


def output_format(extension: str, fallback: Optional[str] = None) -> str:
    """Pillow format name used to encode a derivative with ``extension``."""
    Image.init()
    fmt = Image.registered_extensions().get("." + extension.lstrip(".").lower())
    if fmt and fmt in Image.SAVE:
        return fmt
    if fallback and fallback in Image.SAVE:
        return fallback
    return "PNG"


# Modes each writer accepts as-is; anything else is converted before saving.
_WRITABLE_MODES: Dict[str, Tuple[str, ...]] = {
    "JPEG": ("L", "RGB", "CMYK"),
    "PNG": ("1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA"),
    "GIF": ("1", "L", "P", "RGB", "RGBA"),
    "WEBP": ("RGB", "RGBA"),
    "BMP": ("1", "L", "P", "RGB", "RGBA"),
}
_ALPHA_MODES = ("RGBA", "RGBa", "LA", "La", "PA")


def _prepare_for_format(image: Image.Image, fmt: str) -> Image.Image:
    writable = _WRITABLE_MODES.get(fmt)
    if writable is None or image.mode in writable:
        return image
    has_alpha = image.mode in _ALPHA_MODES or "transparency" in image.info
    target = "RGBA" if has_alpha and "RGBA" in writable else "RGB"
    logger.debug(f"Converting {image.mode} image to {target} for {fmt}")
    return image.convert(target)


def _skip_sub_blocks(data: bytes, pos: int) -> int:
    while True:
        size = data[pos]
        pos += 1
        if size == 0:
            return pos
        pos += size


def _gif_frame_blocks(data: bytes) -> Tuple[bytes, bytes]:
    """
    Split a single-frame GIF into its frame extensions and its image block.

    The global colour table is moved into the image descriptor as a local
    table so the block can sit in a file with its own palette per frame.
    Application extensions (the loop block) are dropped.
    """
    packed = data[10]
    pos = 13
    palette = b""
    if packed & 0x80:
        palette_size = 3 * (2 ** ((packed & 0x07) + 1))
        palette = data[pos:pos + palette_size]
        pos += palette_size

    extensions = []
    while pos < len(data):
        marker = data[pos]
        if marker == 0x21:
            end = _skip_sub_blocks(data, pos + 2)
            if data[pos + 1] != 0xFF:
                extensions.append(data[pos:end])
            pos = end
        elif marker == 0x2C:
            descriptor = bytearray(data[pos:pos + 10])
            pos += 10
            table = b""
            if descriptor[9] & 0x80:
                table_size = 3 * (2 ** ((descriptor[9] & 0x07) + 1))
                table = data[pos:pos + table_size]
                pos += table_size
            elif palette:
                descriptor[9] = (descriptor[9] & 0x78) | 0x80 | (packed & 0x07)
                table = palette
            end = _skip_sub_blocks(data, pos + 1)
            return b"".join(extensions), bytes(descriptor) + table + data[pos:end]
        else:
            break
    raise ValueError("GIF writer produced no image block")


def _encode_gif_frames(frames, durations, loop: Optional[int]) -> bytes:
    """
    Write an animated GIF holding exactly one image block per frame.

    Pillow's animated GIF writer folds a frame into the previous one when
    their pixels match after quantization, which loses frames of downscaled
    animations. Each frame is written on its own and the blocks are joined.
    """
    blocks = []
    screen = b""
    for frame, duration in zip(frames, durations):
        frame = frame.copy()
        frame.info = {}
        has_alpha = frame.mode in _ALPHA_MODES and frame.getchannel("A").getextrema()[0] < 255
        single = io.BytesIO()
        # disposal 2 clears transparent frames so the previous frame does not show through
        frame.save(single, format="GIF", duration=duration, disposal=2 if has_alpha else 1, interlace=False)
        data = single.getvalue()
        if not screen:
            screen = data[6:10] + bytes([data[10] & 0x70, 0, 0])
        blocks.append(b"".join(_gif_frame_blocks(data)))

    out = [b"GIF89a", screen]
    if loop is not None:
        out.append(b"!\xff\x0bNETSCAPE2.0\x03\x01" + struct.pack("<H", loop) + b"\x00")
    out.extend(blocks)
    out.append(b";")
    return b"".join(out)


def _animation_params(fmt: str, frame_count: int) -> Dict[str, object]:
    if fmt != "PNG":
        return {}
    # APNG folds identical consecutive frames only when disposal and blend
    # match, so the disposal op alternates. Every frame covers the full
    # canvas with OP_SOURCE, which makes the disposal op itself irrelevant.
    disposal = [
        PngImagePlugin.Disposal.OP_NONE if index % 2 == 0 else PngImagePlugin.Disposal.OP_BACKGROUND
        for index in range(frame_count)
    ]
    return {"disposal": disposal, "blend": PngImagePlugin.Blend.OP_SOURCE}


def encode_image(source: ImageSource, extension: str) -> bytes:
    """
    Encode a derivative in the format implied by ``extension``.

    Multi-frame sources keep every frame, in order and with its duration,
    when the target format can store an animation; otherwise only the first
    frame is written.
    """
    fmt = output_format(extension, source.format)
    params: Dict[str, object] = {}
    if fmt == "JPEG":
        params.update(quality=JPEG_QUALITY, optimize=True)

    buffer = io.BytesIO()
    try:
        if source.kind == MULTI_FRAME:
            frames = [_prepare_for_format(frame, fmt) for frame in source.frames]
            if len(frames) > 1 and fmt == "GIF":
                return _encode_gif_frames(frames, source.durations, source.loop)
            if len(frames) > 1 and fmt in Image.SAVE_ALL:
                params.update(save_all=True, append_images=frames[1:], duration=list(source.durations))
                params.update(_animation_params(fmt, len(frames)))
                if source.loop is not None:
                    params["loop"] = source.loop
            else:
                logger.warning(f"{fmt} cannot hold animations, writing first of {len(frames)} frames")
            frames[0].save(buffer, format=fmt, **params)
        else:
            _prepare_for_format(source.image, fmt).save(buffer, format=fmt, **params)
    except (OSError, ValueError, KeyError) as exc:
        raise InvalidInputError(f"cannot encode image as {fmt} for extension '{extension}': {exc}") from exc
    return buffer.getvalue()
