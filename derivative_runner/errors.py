"""Error types raised by the derivative pipeline."""

from __future__ import annotations

from typing import Dict, Optional, Sequence

INVALID_INPUT = "invalid_input"
DECODE_ERROR = "decode_error"
STORE_UNAVAILABLE = "store_unavailable"
PARTIAL_UPLOAD_FAILURE = "partial_upload_failure"


class DerivativeError(Exception):
    """Base exception for derivative generation errors."""

    kind: str = "derivative_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, object]:
        return {"code": self.kind, "message": self.message}


class InvalidInputError(DerivativeError):
    """Missing or malformed request field, or a non-positive resize bound."""

    kind = INVALID_INPUT


class DecodeError(DerivativeError):
    """Source bytes are not a supported image format."""

    kind = DECODE_ERROR


class StoreUnavailableError(DerivativeError):
    """Blob store call failed (provisioning, existence check or upload)."""

    kind = STORE_UNAVAILABLE

    def __init__(self, message: str, operation: str, variant: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.variant = variant

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data["operation"] = self.operation
        if self.variant:
            data["variant"] = self.variant
        return data


class PartialUploadFailure(DerivativeError):
    """Some variants were uploaded before another failed. Nothing is rolled back."""

    kind = PARTIAL_UPLOAD_FAILURE

    def __init__(self, message: str, failed: Sequence[str], uploaded: Dict[str, str]):
        super().__init__(message)
        self.failed = list(failed)
        self.uploaded = dict(uploaded)

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data["failed"] = self.failed
        data["uploaded"] = self.uploaded
        return data
