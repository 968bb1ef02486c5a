"""Fire-and-forget wrapper for telemetry and cleanup side actions."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


@contextmanager
def best_effort(action: str) -> Iterator[None]:
    """Run the block, logging and discarding any ``Exception`` it raises.

    Fatal ``BaseException`` subclasses still propagate.
    """

    try:
        yield
    except Exception:
        logger.exception("Best-effort action failed: %s", action)
