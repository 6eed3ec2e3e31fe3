from __future__ import annotations

import logging

from .core import BlobStore
from .errors import DerivativeError, StoreUnavailableError

logger = logging.getLogger(__name__)


async def check_existing(store: BlobStore, container: str, original_key: str, dedupe: bool) -> bool:
    """
    Return True when the artifact group already exists and generation can be skipped.

    Only the ``original`` key is queried: it stands in for the whole group,
    which shares one base name. No store call is made when ``dedupe`` is off.

    Raises:
        StoreUnavailableError: The existence check failed
    """
    if not dedupe:
        return False
    try:
        found = await store.exists(container, original_key)
    except DerivativeError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise StoreUnavailableError(
            f"could not check for existing artifact '{original_key}': {exc}",
            operation="exists",
        ) from exc
    if found:
        logger.info(f"Artifact already exists, skipping generation: {container}/{original_key}")
    else:
        logger.info(f"Artifact not found, generating derivatives: {container}/{original_key}")
    return bool(found)
