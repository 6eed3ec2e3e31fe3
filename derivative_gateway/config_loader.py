"""Configuration for the derivative gateway - loads from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_MAX_PAYLOAD_BYTES = 50 * 1024 * 1024


@dataclass
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    # Storage settings
    storage_type: str = "local"  # "local" or "s3"
    local_storage_dir: Path = Path("blob_storage")
    local_storage_base_url: str = "http://localhost:8765/v1/storage"
    s3_region: str = "us-east-1"
    s3_endpoint_url: Optional[str] = None
    cdn_base_url: Optional[str] = None
    default_container: Optional[str] = None
    # Request limits
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES

    def resolved_storage_dir(self) -> Path:
        path = Path(self.local_storage_dir).resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value or None


def load_config_from_env() -> GatewayConfig:
    """
    Load GatewayConfig from environment variables.

    Loads .env file if present and reads configuration values.

    Environment Variables:
        HOST: Server host (default: 127.0.0.1)
        PORT: Server port (default: 8765)
        BLOB_STORAGE: Storage type - "local" or "s3" (default: local)
        LOCAL_STORAGE_DIR: Root directory for local storage (default: blob_storage)
        LOCAL_STORAGE_BASE_URL: Public URL prefix for local blobs
        S3_REGION: AWS region (default: us-east-1)
        S3_ENDPOINT_URL: Custom S3 endpoint, e.g. MinIO
        CDN_BASE_URL: CDN base URL used in returned S3 URLs
        DEFAULT_CONTAINER: Container used when a request names none
        MAX_PAYLOAD_BYTES: Largest accepted image payload (default: 52428800 = 50MB)

    Returns:
        GatewayConfig object with values from environment
    """
    load_dotenv()

    storage_type = os.getenv("BLOB_STORAGE", "local").lower()
    if storage_type not in {"local", "s3"}:
        raise ValueError(f"BLOB_STORAGE must be 'local' or 's3', got {storage_type!r}")

    port = os.getenv("PORT", "8765")
    config = GatewayConfig(
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(port),
        storage_type=storage_type,
        local_storage_dir=Path(os.getenv("LOCAL_STORAGE_DIR", "blob_storage")),
        local_storage_base_url=os.getenv("LOCAL_STORAGE_BASE_URL", f"http://localhost:{port}/v1/storage"),
        s3_region=os.getenv("S3_REGION", "us-east-1"),
        s3_endpoint_url=_optional("S3_ENDPOINT_URL"),
        cdn_base_url=_optional("CDN_BASE_URL"),
        default_container=_optional("DEFAULT_CONTAINER"),
        max_payload_bytes=int(os.getenv("MAX_PAYLOAD_BYTES", str(DEFAULT_MAX_PAYLOAD_BYTES))),
    )

    return config


def get_storage_info(config: GatewayConfig) -> dict:
    """Storage settings reported by the health endpoint."""
    return {
        "storage_type": config.storage_type,
        "local_storage_dir": str(config.local_storage_dir) if config.storage_type == "local" else None,
        "s3_region": config.s3_region if config.storage_type == "s3" else None,
        "s3_endpoint_url": config.s3_endpoint_url,
        "cdn_url": config.cdn_base_url,
        "default_container": config.default_container,
    }
