from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse
from starlette.datastructures import UploadFile

from derivative_runner import __version__
from derivative_runner.core import BlobStore, DerivativeRequest
from derivative_runner.errors import (
    DECODE_ERROR,
    INVALID_INPUT,
    PARTIAL_UPLOAD_FAILURE,
    STORE_UNAVAILABLE,
    DerivativeError,
    InvalidInputError,
)
from derivative_runner.pipeline import generate

from .blob_store import LocalBlobStore, build_blob_store
from .config_loader import GatewayConfig, get_storage_info
from .input_utils import (
    ProcessImageFields,
    ProcessImagePayload,
    ProcessImageResponse,
    build_request,
    check_payload_size,
    decode_base64_image,
    parse_fields,
    read_upload,
)

logger = logging.getLogger(__name__)

ERROR_STATUS: Dict[str, int] = {
    INVALID_INPUT: 400,
    DECODE_ERROR: 422,
    PARTIAL_UPLOAD_FAILURE: 502,
    STORE_UNAVAILABLE: 503,
}


@dataclass
class GatewayState:
    config: GatewayConfig
    store: Any

    def store_for(self, request: DerivativeRequest) -> BlobStore:
        """Blob store for one request; S3 requests may override the endpoint."""
        if request.connection and self.config.storage_type == "s3":
            return build_blob_store(self.config, connection=request.connection)
        return self.store


async def _parse_multipart(request: Request, config: GatewayConfig) -> DerivativeRequest:
    form = await request.form()
    upload = form.get("file")
    if not isinstance(upload, UploadFile):
        raise InvalidInputError("image file part 'file' is required")
    fields = {key: value for key, value in form.items() if not isinstance(value, UploadFile)}
    parsed = parse_fields(ProcessImageFields, fields)
    source = await read_upload(upload, config)
    return build_request(source, parsed, config, upload_name=upload.filename)


async def _parse_json(request: Request, config: GatewayConfig) -> DerivativeRequest:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidInputError(f"request body is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise InvalidInputError("request body must be a JSON object")
    payload = parse_fields(ProcessImagePayload, body)
    source = check_payload_size(decode_base64_image(payload.image_base64), config)
    return build_request(source, payload, config)


async def parse_process_request(request: Request, config: GatewayConfig) -> DerivativeRequest:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        return await _parse_multipart(request, config)
    return await _parse_json(request, config)


def create_app(config: Optional[GatewayConfig] = None, store: Optional[BlobStore] = None) -> FastAPI:
    cfg = config or GatewayConfig()
    state = GatewayState(config=cfg, store=store or build_blob_store(cfg))

    app = FastAPI(title="Derivative Gateway", version=__version__)

    def get_state() -> GatewayState:
        return state

    @app.exception_handler(DerivativeError)
    async def derivative_error_handler(request: Request, exc: DerivativeError) -> JSONResponse:
        status_code = ERROR_STATUS.get(exc.kind, 500)
        if status_code >= 500:
            logger.error(f"Error processing image: {exc.kind}: {exc.message}")
        else:
            logger.warning(f"Rejected image request: {exc.kind}: {exc.message}")
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.post("/v1/images/process", response_model=ProcessImageResponse)
    async def process_image(request: Request, state: GatewayState = Depends(get_state)) -> ProcessImageResponse:
        """
        Generate original/sized/thumbnail derivatives for one image.
        Accepts a JSON body with ImageBase64 or multipart form-data with a file part.
        """
        derivative_request = await parse_process_request(request, state.config)
        logger.info(
            f"Processing image for {derivative_request.container}/{derivative_request.sub_directory}"
            f" (hash_name={derivative_request.use_hash_for_filename}, dedupe={derivative_request.dedupe})"
        )
        result = await generate(derivative_request, state.store_for(derivative_request))
        logger.info(f"Image processing completed (skipped={result.skipped}): {result.original}")
        return ProcessImageResponse(**result.to_dict())

    @app.get("/v1/storage/{container}/{key:path}")
    async def get_blob(container: str, key: str, state: GatewayState = Depends(get_state)) -> FileResponse:
        store = state.store
        if not isinstance(store, LocalBlobStore):
            raise HTTPException(status_code=404, detail="local storage not enabled")
        path = store.path_for(container, key)
        if not path.is_file():
            raise HTTPException(status_code=404, detail="blob not found")
        return FileResponse(path, media_type=store.content_type(container, key))

    @app.get("/health")
    async def health_check(state: GatewayState = Depends(get_state)) -> JSONResponse:
        storage_status = "unknown"
        try:
            is_healthy = await state.store.health_check()
            storage_status = "healthy" if is_healthy else "unhealthy"
        except Exception as e:
            storage_status = f"error: {str(e)}"

        overall_status = "healthy" if storage_status == "healthy" else "degraded"
        response = {
            "status": overall_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {
                "gateway": {"status": "healthy", "version": __version__},
                "storage": {"status": storage_status, **get_storage_info(state.config)},
            },
        }
        return JSONResponse(content=response, status_code=200)

    return app
