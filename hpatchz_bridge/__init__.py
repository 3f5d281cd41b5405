"""hpatchz-bridge - runs bundled hpatchz builds against game asset diffs."""

__version__ = "0.3.0"

from .exceptions import (
    BaseError,
    ConfigurationError,
    DecodeError,
    PatcherClosedError,
    PatcherError,
    PatcherIOError,
    PayloadNotFoundError,
    SliceTruncatedError,
    SpawnError,
    ValidationError,
    WaitError,
)
from .config import PatcherSettings, load_settings
from .patching import (
    ABNORMAL_EXIT,
    DiffSlicer,
    OffsetPatchRequest,
    PatchOutcome,
    PatchRequest,
    PatcherHandle,
    PayloadStore,
    ProcessRunner,
    classify,
    open_patcher,
)
from .utils import CancelToken
from .variants import PatcherVariant

__all__ = [
    "ABNORMAL_EXIT",
    "BaseError",
    "CancelToken",
    "ConfigurationError",
    "DecodeError",
    "DiffSlicer",
    "OffsetPatchRequest",
    "PatchOutcome",
    "PatchRequest",
    "PatcherClosedError",
    "PatcherError",
    "PatcherHandle",
    "PatcherIOError",
    "PatcherSettings",
    "PatcherVariant",
    "PayloadNotFoundError",
    "PayloadStore",
    "ProcessRunner",
    "SliceTruncatedError",
    "SpawnError",
    "ValidationError",
    "WaitError",
    "__version__",
    "classify",
    "load_settings",
    "open_patcher",
]
