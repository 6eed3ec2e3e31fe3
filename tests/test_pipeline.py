from __future__ import annotations

from dataclasses import replace

import pytest
from PIL import Image

from conftest import MemoryBlobStore, encode, make_animated_gif, make_image_bytes, make_near_identical_gif
from derivative_runner.core import DerivativeRequest, DerivativeSpec, Variant, artifact_key
from derivative_runner.errors import (
    DecodeError,
    InvalidInputError,
    PartialUploadFailure,
    StoreUnavailableError,
)
from derivative_runner.fingerprint import fingerprint
from derivative_runner.pipeline import generate

SUB = "/uploads/77777/"


def _request(source: bytes, /, **overrides) -> DerivativeRequest:
    params = dict(
        source=source,
        filename="jpg-test",
        extension="jpg",
        original=DerivativeSpec(Variant.ORIGINAL, 3840, 2160),
        sized=DerivativeSpec(Variant.SIZED, 1920, 1080),
        thumbnail=DerivativeSpec(Variant.THUMBNAIL, 300, 300),
        container="images",
        sub_directory=SUB,
    )
    params.update(overrides)
    return DerivativeRequest(**params)


def test_artifact_key_uses_sub_directory_verbatim():
    assert artifact_key("/uploads/77777/", "jpg-test", Variant.SIZED, "jpg") == "/uploads/77777/jpg-test_sized.jpg"
    assert artifact_key("", "a", Variant.THUMBNAIL, ".png") == "a_thumbnail.png"
    assert artifact_key("x", "a", Variant.ORIGINAL, "gif") == "xa_original.gif"


@pytest.mark.asyncio
async def test_generates_three_variants_for_4k_jpeg(memory_store, jpeg_4k):
    result = await generate(_request(jpeg_4k), memory_store)

    assert result.skipped is False
    assert result.filename == "jpg-test"
    assert result.original == f"memory://images/{SUB}jpg-test_original.jpg"
    assert result.sized == f"memory://images/{SUB}jpg-test_sized.jpg"
    assert result.thumbnail == f"memory://images/{SUB}jpg-test_thumbnail.jpg"

    assert memory_store.image("images", f"{SUB}jpg-test_original.jpg").size == (3840, 2160)
    assert memory_store.image("images", f"{SUB}jpg-test_sized.jpg").size == (1920, 1080)
    assert memory_store.image("images", f"{SUB}jpg-test_thumbnail.jpg").size == (300, 169)
    assert {content_type for _, content_type in memory_store.blobs.values()} == {"image/jpeg"}


@pytest.mark.asyncio
async def test_each_variant_is_built_from_the_untouched_source(memory_store):
    source = make_image_bytes(400, 200, "PNG")
    request = _request(
        source,
        extension="png",
        original=DerivativeSpec(Variant.ORIGINAL, 400, 200),
        sized=DerivativeSpec(Variant.SIZED, 200, 200),
        thumbnail=DerivativeSpec(Variant.THUMBNAIL, 50, 50),
    )
    await generate(request, memory_store)

    assert memory_store.image("images", f"{SUB}jpg-test_original.png").size == (400, 200)
    assert memory_store.image("images", f"{SUB}jpg-test_sized.png").size == (200, 100)
    assert memory_store.image("images", f"{SUB}jpg-test_thumbnail.png").size == (50, 25)


@pytest.mark.asyncio
async def test_hash_naming_uses_fingerprint_for_all_keys(memory_store):
    source = make_image_bytes(64, 64, "JPEG")
    result = await generate(_request(source, use_hash_for_filename=True), memory_store)

    expected = fingerprint(source)
    assert result.filename == expected
    for uri, variant in ((result.original, "original"), (result.sized, "sized"), (result.thumbnail, "thumbnail")):
        assert uri == f"memory://images/{SUB}{expected}_{variant}.jpg"
    assert "jpg-test" not in "".join(key for _, key in memory_store.blobs)


@pytest.mark.asyncio
async def test_hash_naming_does_not_require_filename(memory_store):
    source = make_image_bytes(64, 64, "JPEG")
    result = await generate(_request(source, filename="", use_hash_for_filename=True), memory_store)
    assert result.filename == fingerprint(source)


@pytest.mark.asyncio
async def test_dedupe_skips_second_run(memory_store):
    source = make_image_bytes(640, 360, "JPEG")
    request = _request(source, dedupe=True)

    first = await generate(request, memory_store)
    assert first.skipped is False
    assert memory_store.count("exists") == 1
    assert memory_store.count("put") == 3

    second = await generate(request, memory_store)
    assert second.skipped is True
    assert memory_store.count("exists") == 2
    assert memory_store.count("put") == 3
    assert (second.original, second.sized, second.thumbnail) == (first.original, first.sized, first.thumbnail)
    assert "decode" not in second.timings
    assert not any(name.startswith("resize.") for name in second.timings)


@pytest.mark.asyncio
async def test_dedupe_checks_only_the_original_key(memory_store):
    source = make_image_bytes(100, 100, "JPEG")
    await generate(_request(source, dedupe=True), memory_store)
    exists_calls = [call for call in memory_store.calls if call[0] == "exists"]
    assert exists_calls == [("exists", "images", f"{SUB}jpg-test_original.jpg")]


@pytest.mark.asyncio
async def test_without_dedupe_second_run_overwrites(memory_store):
    source = make_image_bytes(640, 360, "JPEG")
    request = _request(source)

    first = await generate(request, memory_store)
    second = await generate(request, memory_store)

    assert first.skipped is False and second.skipped is False
    assert (first.original, first.sized, first.thumbnail) == (second.original, second.sized, second.thumbnail)
    assert memory_store.count("exists") == 0
    assert memory_store.count("put") == 6


@pytest.mark.asyncio
async def test_container_is_provisioned_once_before_key_operations(memory_store):
    await generate(_request(make_image_bytes(32, 32, "JPEG"), dedupe=True), memory_store)
    assert memory_store.calls[0] == ("ensure_container", "images")
    assert memory_store.count("ensure_container") == 1


@pytest.mark.asyncio
async def test_animated_source_stays_animated(memory_store):
    source = make_animated_gif(200, 100, 10)
    request = _request(
        source,
        extension="gif",
        original=DerivativeSpec(Variant.ORIGINAL, 200, 100),
        sized=DerivativeSpec(Variant.SIZED, 100, 100),
        thumbnail=DerivativeSpec(Variant.THUMBNAIL, 40, 40),
    )
    await generate(request, memory_store)

    expected = {"original": (200, 100), "sized": (100, 50), "thumbnail": (40, 20)}
    for variant, size in expected.items():
        im = memory_store.image("images", f"{SUB}jpg-test_{variant}.gif")
        assert im.n_frames == 10
        assert im.size == size
    assert {ct for _, ct in memory_store.blobs.values()} == {"image/gif"}


@pytest.mark.asyncio
async def test_animated_thumbnail_keeps_near_identical_frames(memory_store):
    request = _request(
        make_near_identical_gif(200, 100, 10, [100] * 10),
        extension="gif",
        original=DerivativeSpec(Variant.ORIGINAL, 200, 100),
        sized=DerivativeSpec(Variant.SIZED, 50, 50),
        thumbnail=DerivativeSpec(Variant.THUMBNAIL, 20, 20),
    )
    await generate(request, memory_store)

    for variant in ("original", "sized", "thumbnail"):
        assert memory_store.image("images", f"{SUB}jpg-test_{variant}.gif").n_frames == 10


@pytest.mark.asyncio
async def test_cmyk_jpeg_requested_as_png(memory_store):
    source = encode(Image.new("CMYK", (400, 200), (0, 128, 255, 0)), "JPEG")
    request = _request(
        source,
        extension="png",
        original=DerivativeSpec(Variant.ORIGINAL, 400, 200),
        sized=DerivativeSpec(Variant.SIZED, 200, 200),
        thumbnail=DerivativeSpec(Variant.THUMBNAIL, 50, 50),
    )
    result = await generate(request, memory_store)

    assert result.thumbnail == f"memory://images/{SUB}jpg-test_thumbnail.png"
    assert memory_store.count("put") == 3
    assert {ct for _, ct in memory_store.blobs.values()} == {"image/png"}
    thumb = memory_store.image("images", f"{SUB}jpg-test_thumbnail.png")
    assert thumb.mode == "RGB"
    assert thumb.size == (50, 25)


@pytest.mark.asyncio
async def test_timings_are_reported_per_step(memory_store):
    result = await generate(_request(make_image_bytes(80, 60, "JPEG"), use_hash_for_filename=True), memory_store)
    for name in ("probe", "fingerprint", "dedupe", "decode"):
        assert name in result.timings
    for variant in ("original", "sized", "thumbnail"):
        assert result.timings[f"resize.{variant}"] >= 0
        assert result.timings[f"upload.{variant}"] >= 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"source": b""},
        {"filename": ""},
        {"extension": ""},
        {"container": ""},
        {"sized": DerivativeSpec(Variant.SIZED, 0, 100)},
        {"thumbnail": DerivativeSpec(Variant.THUMBNAIL, 100, -1)},
        {"original": DerivativeSpec(Variant.SIZED, 100, 100)},
    ],
)
async def test_invalid_input_touches_nothing(memory_store, overrides):
    request = _request(make_image_bytes(20, 20, "JPEG"), **overrides)
    with pytest.raises(InvalidInputError):
        await generate(request, memory_store)
    assert memory_store.calls == []


@pytest.mark.asyncio
async def test_undecodable_bytes_touch_nothing(memory_store):
    with pytest.raises(DecodeError):
        await generate(_request(b"this is not an image"), memory_store)
    assert memory_store.calls == []


@pytest.mark.asyncio
async def test_exists_failure_is_store_unavailable():
    store = MemoryBlobStore(fail={"exists": ConnectionError("network down")})
    with pytest.raises(StoreUnavailableError) as excinfo:
        await generate(_request(make_image_bytes(20, 20, "JPEG"), dedupe=True), store)
    assert excinfo.value.operation == "exists"
    assert excinfo.value.variant is None
    assert store.count("put") == 0


@pytest.mark.asyncio
async def test_container_failure_is_store_unavailable():
    store = MemoryBlobStore(fail={"ensure_container": PermissionError("denied")})
    with pytest.raises(StoreUnavailableError) as excinfo:
        await generate(_request(make_image_bytes(20, 20, "JPEG")), store)
    assert excinfo.value.operation == "ensure_container"


@pytest.mark.asyncio
async def test_single_upload_failure_reports_partial_result():
    store = MemoryBlobStore(fail_keys={"_sized.": TimeoutError("upload timed out")})
    with pytest.raises(PartialUploadFailure) as excinfo:
        await generate(_request(make_image_bytes(120, 80, "JPEG")), store)

    error = excinfo.value
    assert error.failed == ["sized"]
    assert set(error.uploaded) == {"original", "thumbnail"}
    assert ("images", f"{SUB}jpg-test_original.jpg") in store.blobs
    assert ("images", f"{SUB}jpg-test_thumbnail.jpg") in store.blobs
    assert error.to_dict()["code"] == "partial_upload_failure"


@pytest.mark.asyncio
async def test_all_uploads_failing_is_store_unavailable():
    store = MemoryBlobStore(fail={"put": ConnectionError("bucket gone")})
    with pytest.raises(StoreUnavailableError) as excinfo:
        await generate(_request(make_image_bytes(120, 80, "JPEG")), store)
    assert excinfo.value.operation == "put"
    assert excinfo.value.variant == "original"


@pytest.mark.asyncio
async def test_request_is_not_mutated(memory_store):
    request = _request(make_image_bytes(50, 50, "JPEG"), use_hash_for_filename=True)
    snapshot = replace(request)
    await generate(request, memory_store)
    assert request == snapshot
    assert request.filename == "jpg-test"
