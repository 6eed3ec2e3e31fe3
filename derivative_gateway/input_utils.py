"""
Request parsing for the gateway.

The process endpoint accepts the same fields either as a JSON body (image
as base64) or as multipart/form-data (image as a file part). Both paths are
validated by the same pydantic model and turned into a DerivativeRequest.
"""

from __future__ import annotations

import base64
import binascii
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from fastapi import UploadFile
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from derivative_runner.core import DerivativeRequest, DerivativeSpec, Variant
from derivative_runner.errors import InvalidInputError

from .config_loader import GatewayConfig

UPLOAD_CHUNK_SIZE = 1024 * 1024


class ProcessImageFields(BaseModel):
    """Sizing and naming fields shared by the JSON and multipart forms."""

    model_config = ConfigDict(populate_by_name=True)

    file_name: Optional[str] = Field(None, alias="FileName")
    extension: Optional[str] = Field(None, alias="Extension")
    use_hash_for_file_name: bool = Field(False, alias="UseHashForFileName")
    de_dupe: bool = Field(False, alias="DeDupe")
    sub_directory: str = Field("", alias="SubDirectory")
    original_width: int = Field(..., alias="OriginalWidth")
    original_height: int = Field(..., alias="OriginalHeight")
    sized_width: int = Field(..., alias="SizedWidth")
    sized_height: int = Field(..., alias="SizedHeight")
    thumbnail_width: int = Field(..., alias="ThumbnailWidth")
    thumbnail_height: int = Field(..., alias="ThumbnailHeight")
    blob_container: Optional[str] = Field(None, alias="BlobContainer")
    blob_connection_string: Optional[str] = Field(None, alias="BlobConnectionString")


class ProcessImagePayload(ProcessImageFields):
    image_base64: str = Field(..., alias="ImageBase64")


class ProcessImageResponse(BaseModel):
    original: str
    sized: str
    thumbnail: str
    skipped: bool
    filename: str
    timings: Dict[str, float]


def _validation_message(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "body"
        problems.append(f"{location}: {error.get('msg')}")
    return "invalid request: " + "; ".join(problems)


def parse_fields(model: type, raw: Mapping[str, Any]):
    """Validate ``raw`` against ``model``, reporting problems as InvalidInputError."""
    try:
        return model.model_validate(dict(raw))
    except ValidationError as exc:
        raise InvalidInputError(_validation_message(exc)) from exc


def decode_base64_image(raw: str) -> bytes:
    """
    Decode a base64 image string, tolerating a ``data:...;base64,`` prefix.

    Raises:
        InvalidInputError: Empty or malformed base64
    """
    if not raw or not raw.strip():
        raise InvalidInputError("ImageBase64 is empty")
    text = raw.strip()
    if text.startswith("data:") and "," in text:
        text = text.split(",", 1)[1]
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInputError(f"invalid base64 image payload: {exc}") from exc


def check_payload_size(data: bytes, config: GatewayConfig) -> bytes:
    if not data:
        raise InvalidInputError("image payload is empty")
    if len(data) > config.max_payload_bytes:
        raise InvalidInputError(
            f"image payload of {len(data)} bytes exceeds limit of {config.max_payload_bytes} bytes"
        )
    return data


async def read_upload(file: UploadFile, config: GatewayConfig) -> bytes:
    """Read an uploaded file part, stopping as soon as the size limit is exceeded."""
    chunks = []
    total = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if total > config.max_payload_bytes:
            raise InvalidInputError(f"uploaded file exceeds limit of {config.max_payload_bytes} bytes")
        chunks.append(chunk)
    return check_payload_size(b"".join(chunks), config)


def build_request(
    source: bytes,
    fields: ProcessImageFields,
    config: GatewayConfig,
    upload_name: Optional[str] = None,
) -> DerivativeRequest:
    """
    Assemble the immutable DerivativeRequest for one call.

    The extension falls back to the uploaded file's suffix and the container
    to the configured default.
    """
    extension = fields.extension
    if not extension and upload_name:
        extension = Path(upload_name).suffix.lstrip(".") or None
    container = fields.blob_container or config.default_container
    if not container:
        raise InvalidInputError("BlobContainer is required")

    return DerivativeRequest(
        source=source,
        filename=fields.file_name or "",
        extension=(extension or "").lstrip("."),
        original=DerivativeSpec(Variant.ORIGINAL, fields.original_width, fields.original_height),
        sized=DerivativeSpec(Variant.SIZED, fields.sized_width, fields.sized_height),
        thumbnail=DerivativeSpec(Variant.THUMBNAIL, fields.thumbnail_width, fields.thumbnail_height),
        container=container,
        sub_directory=fields.sub_directory or "",
        use_hash_for_filename=fields.use_hash_for_file_name,
        dedupe=fields.de_dupe,
        connection=fields.blob_connection_string,
    )
