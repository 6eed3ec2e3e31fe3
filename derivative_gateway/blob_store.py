"""Blob store adapters for writing derivatives to local disk or S3."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import aiofiles
import boto3
from botocore.exceptions import ClientError

from derivative_runner.content_types import DEFAULT_CONTENT_TYPE
from derivative_runner.errors import InvalidInputError

from .config_loader import GatewayConfig

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000"
META_SUFFIX = ".meta.json"

_MISSING_CODES = {"404", "NoSuchBucket", "NoSuchKey", "NotFound"}
_OWNED_CODES = {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class LocalBlobStore:
    """Store blobs as files under ``root/<container>/<key>``."""

    def __init__(self, root: Path, base_url: str = "http://localhost:8765/v1/storage"):
        """
        Initialize local storage.

        Args:
            root: Directory holding one sub-directory per container
            base_url: Public URL prefix the gateway serves the files under
        """
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized local blob storage at {self.root}")

    def _container_dir(self, container: str) -> Path:
        if not container or "/" in container or "\\" in container or container in {".", ".."}:
            raise InvalidInputError(f"invalid container name: {container!r}")
        return self.root / container

    def path_for(self, container: str, key: str) -> Path:
        """Filesystem path of ``key``; keys may not escape their container."""
        base = self._container_dir(container).resolve()
        path = (base / key.lstrip("/")).resolve()
        if base not in path.parents:
            raise InvalidInputError(f"artifact key escapes container: {key!r}")
        return path

    async def ensure_container(self, container: str) -> None:
        self._container_dir(container).mkdir(parents=True, exist_ok=True)

    async def exists(self, container: str, key: str) -> bool:
        return self.path_for(container, key).is_file()

    async def put(self, container: str, key: str, data: bytes, content_type: str) -> str:
        path = self.path_for(container, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "wb") as out:
            await out.write(data)
        async with aiofiles.open(path.with_name(path.name + META_SUFFIX), "w") as meta:
            await meta.write(json.dumps({"content_type": content_type}))
        logger.info(f"Stored blob locally: {path}")
        return self.url_for(container, key)

    def content_type(self, container: str, key: str) -> str:
        meta_path = self.path_for(container, key)
        meta_path = meta_path.with_name(meta_path.name + META_SUFFIX)
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))["content_type"]
        except (OSError, ValueError, KeyError):
            return DEFAULT_CONTENT_TYPE

    def url_for(self, container: str, key: str) -> str:
        return f"{self.base_url}/{container}/{quote(key.lstrip('/'), safe='/')}"

    async def health_check(self) -> bool:
        return self.root.is_dir()


class S3BlobStore:
    """Store blobs as S3 objects; containers map to buckets."""

    def __init__(
        self,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        cdn_base_url: Optional[str] = None,
        client=None,
    ):
        """
        Initialize S3 storage.

        Args:
            region: AWS region for the client and for new buckets
            endpoint_url: Custom endpoint (MinIO, LocalStack); None for AWS
            cdn_base_url: Public URL prefix used instead of the bucket URL
            client: Preconfigured boto3 S3 client
        """
        self.region = region
        self.endpoint_url = endpoint_url.rstrip("/") if endpoint_url else None
        self.cdn_base_url = cdn_base_url.rstrip("/") if cdn_base_url else None
        self.client = client or boto3.client("s3", region_name=region, endpoint_url=self.endpoint_url)
        logger.info(f"Initialized S3 storage client (region={region}, endpoint={self.endpoint_url or 'aws'})")

    def _ensure_bucket(self, bucket: str) -> None:
        try:
            self.client.head_bucket(Bucket=bucket)
            return
        except ClientError as exc:
            if _error_code(exc) not in _MISSING_CODES:
                raise

        params = {"Bucket": bucket}
        if self.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            self.client.create_bucket(**params)
            logger.info(f"Created S3 bucket {bucket}")
        except ClientError as exc:
            # Another request may have created it in the meantime.
            if _error_code(exc) not in _OWNED_CODES:
                raise

    def _head_object(self, bucket: str, key: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return False
            raise
        return True

    async def ensure_container(self, container: str) -> None:
        await asyncio.to_thread(self._ensure_bucket, container)

    async def exists(self, container: str, key: str) -> bool:
        return await asyncio.to_thread(self._head_object, container, key)

    async def put(self, container: str, key: str, data: bytes, content_type: str) -> str:
        await asyncio.to_thread(
            self.client.put_object,
            Bucket=container,
            Key=key,
            Body=data,
            ContentType=content_type,
            CacheControl=CACHE_CONTROL,
        )
        logger.info(f"Uploaded blob to S3: {container}/{key}")
        return self.url_for(container, key)

    def url_for(self, container: str, key: str) -> str:
        if self.cdn_base_url:
            base_url = f"{self.cdn_base_url}/{container}"
        elif self.endpoint_url:
            base_url = f"{self.endpoint_url}/{container}"
        else:
            base_url = f"https://{container}.s3.{self.region}.amazonaws.com"
        return f"{base_url}/{quote(key, safe='/')}"

    async def health_check(self) -> bool:
        try:
            await asyncio.to_thread(self.client.list_buckets)
            return True
        except Exception:
            return False


def build_blob_store(config: GatewayConfig, connection: Optional[str] = None):
    """
    Create the blob store configured for the gateway.

    Args:
        config: Gateway configuration
        connection: Per-request endpoint override for S3 storage

    Returns:
        LocalBlobStore or S3BlobStore
    """
    if config.storage_type == "s3":
        return S3BlobStore(
            region=config.s3_region,
            endpoint_url=connection or config.s3_endpoint_url,
            cdn_base_url=config.cdn_base_url,
        )
    if config.storage_type == "local":
        return LocalBlobStore(config.resolved_storage_dir(), base_url=config.local_storage_base_url)
    raise ValueError(f"unknown storage type: {config.storage_type!r}")
