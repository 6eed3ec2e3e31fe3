from .__version__ import __version__
from .core import BlobStore, DerivativeRequest, DerivativeResult, DerivativeSpec, Variant, artifact_key
from .errors import (
    DecodeError,
    DerivativeError,
    InvalidInputError,
    PartialUploadFailure,
    StoreUnavailableError,
)
from .pipeline import generate

__all__ = [
    "__version__",
    "BlobStore",
    "DerivativeRequest",
    "DerivativeResult",
    "DerivativeSpec",
    "Variant",
    "artifact_key",
    "DecodeError",
    "DerivativeError",
    "InvalidInputError",
    "PartialUploadFailure",
    "StoreUnavailableError",
    "generate",
]
