"""Patch invocation module.

Features:
- Payload materialization - bundled hpatchz images written to a stable path
- Diff slicing - one record cut out of a combined diff file
- Process runner - concurrent stdout/stderr draining, exit classification
- Output classifier - milestone filtering of patcher stdout
"""

from .diff_slicer import DiffSlicer, slice_name
from .output_classifier import classify
from .patcher import PatcherHandle, open_patcher
from .payload_store import LEGACY_FILE_NAME, PayloadStore
from .process_runner import (
    ABNORMAL_EXIT,
    OffsetPatchRequest,
    PatchOutcome,
    PatchRequest,
    ProcessRunner,
)

__all__ = [
    "ABNORMAL_EXIT",
    "DiffSlicer",
    "LEGACY_FILE_NAME",
    "OffsetPatchRequest",
    "PatchOutcome",
    "PatchRequest",
    "PatcherHandle",
    "PayloadStore",
    "ProcessRunner",
    "classify",
    "open_patcher",
    "slice_name",
]
