"""Decides which patcher stdout lines are worth surfacing.

hpatchz prints a line per file chunk; only lifecycle milestones are kept.
Unrecognised lines are dropped rather than logged at a lower level.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from ..config.models import DEFAULT_ALLOW_LIST


def classify(line: str, allow_list: Iterable[str] = DEFAULT_ALLOW_LIST) -> Optional[int]:
    """Return the logging level for a stdout line, or None to suppress it."""
    if not line or not line.strip():
        return None
    if any(marker in line for marker in allow_list):
        return logging.INFO
    return None
