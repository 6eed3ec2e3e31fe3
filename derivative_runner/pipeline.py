"""
Derivative pipeline: one source image in, three stored variants out.

Steps for a request:

1. validate fields and bounds, identify the image format from its header
2. fingerprint the bytes when hash naming is requested
3. build the three artifact keys
4. provision the container, then run the dedupe gate on the ``original`` key
5. decode once and build ``original``, ``sized`` and ``thumbnail``
   concurrently, each from the untouched decoded source
6. map the returned URIs back to their variants

Nothing touches the store before step 4. Uploads that succeed are kept
even if another variant fails; keys are deterministic, so a retry
overwrites them (or is skipped by the dedupe gate).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from .content_types import resolve_content_type
from .core import BlobStore, DerivativeRequest, DerivativeResult, DerivativeSpec, StepTimer, Variant, artifact_keys
from .dedupe import check_existing
from .errors import DerivativeError, PartialUploadFailure, StoreUnavailableError
from .fingerprint import fingerprint
from .resizer import ImageSource, decode_image, encode_image, probe_format, resize

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _store_call(
    operation: str,
    call: Callable[[], Awaitable[T]],
    variant: Optional[Variant] = None,
) -> T:
    try:
        return await call()
    except DerivativeError:
        raise
    except Exception as exc:  # noqa: BLE001
        target = f" for variant '{variant.value}'" if variant else ""
        raise StoreUnavailableError(
            f"blob store {operation} failed{target}: {exc}",
            operation=operation,
            variant=variant.value if variant else None,
        ) from exc


def render_variant(source: ImageSource, spec: DerivativeSpec, extension: str) -> bytes:
    """Resize ``source`` for ``spec`` and encode it for ``extension``."""
    return encode_image(resize(source, spec.max_width, spec.max_height), extension)


async def _build_variant(
    request: DerivativeRequest,
    source: ImageSource,
    spec: DerivativeSpec,
    key: str,
    store: BlobStore,
    timer: StepTimer,
) -> str:
    variant = spec.variant.value
    with timer.span(f"resize.{variant}"):
        payload = await asyncio.to_thread(render_variant, source, spec, request.extension)

    content_type = resolve_content_type(request.extension)
    with timer.span(f"upload.{variant}"):
        uri = await _store_call(
            "put",
            lambda: store.put(request.container, key, payload, content_type),
            variant=spec.variant,
        )
    logger.info(f"Uploaded {variant} ({len(payload)} bytes, {content_type}): {key}")
    return uri


def _raise_for_failures(failures: Dict[Variant, Exception], uploaded: Dict[Variant, str]) -> None:
    if not failures:
        return
    failed = [variant.value for variant in Variant if variant in failures]
    if uploaded:
        details = "; ".join(f"{variant.value}: {failures[variant]}" for variant in Variant if variant in failures)
        raise PartialUploadFailure(
            f"failed to store {', '.join(failed)} after other variants were uploaded ({details})",
            failed=failed,
            uploaded={variant.value: uri for variant, uri in uploaded.items()},
        )
    # Nothing stored: surface the first failure in variant order.
    for variant in Variant:
        if variant in failures:
            raise failures[variant]


async def generate(request: DerivativeRequest, store: BlobStore) -> DerivativeResult:
    """
    Generate and store the three derivatives described by ``request``.

    Args:
        request: Immutable per-call configuration
        store: Blob store the derivatives are written to

    Returns:
        DerivativeResult with one URI per variant; ``skipped`` is True when
        the dedupe gate found an existing artifact group

    Raises:
        InvalidInputError: Bad fields or bounds (before any store call)
        DecodeError: Bytes are not a supported image (before any store call)
        StoreUnavailableError: Provisioning, existence check or every upload failed
        PartialUploadFailure: Some, but not all, uploads failed
    """
    timer = StepTimer()
    request.validate()
    with timer.span("probe"):
        source_format = probe_format(request.source)

    filename = request.filename
    if request.use_hash_for_filename:
        with timer.span("fingerprint"):
            filename = fingerprint(request.source)
        logger.info(f"Using content fingerprint as filename: {filename}")

    keys = artifact_keys(request.sub_directory, filename, request.extension)

    await _store_call("ensure_container", lambda: store.ensure_container(request.container))

    with timer.span("dedupe"):
        skip = await check_existing(store, request.container, keys[Variant.ORIGINAL], request.dedupe)
    if skip:
        uris = {variant: store.url_for(request.container, key) for variant, key in keys.items()}
        return DerivativeResult(
            original=uris[Variant.ORIGINAL],
            sized=uris[Variant.SIZED],
            thumbnail=uris[Variant.THUMBNAIL],
            skipped=True,
            filename=filename,
            timings=timer.timings,
        )

    with timer.span("decode"):
        source = await asyncio.to_thread(decode_image, request.source)
    logger.info(f"Decoded {source_format} source {source.size[0]}x{source.size[1]} ({source.kind}-frame)")

    outcomes = await asyncio.gather(
        *(
            _build_variant(request, source, spec, keys[spec.variant], store, timer)
            for spec in request.specs
        ),
        return_exceptions=True,
    )

    uploaded: Dict[Variant, str] = {}
    failures: Dict[Variant, Exception] = {}
    for spec, outcome in zip(request.specs, outcomes):
        if isinstance(outcome, Exception):
            logger.error(f"Failed to build {spec.variant.value} variant: {outcome}")
            failures[spec.variant] = outcome
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            uploaded[spec.variant] = outcome
    _raise_for_failures(failures, uploaded)

    return DerivativeResult(
        original=uploaded[Variant.ORIGINAL],
        sized=uploaded[Variant.SIZED],
        thumbnail=uploaded[Variant.THUMBNAIL],
        skipped=False,
        filename=filename,
        timings=timer.timings,
    )
