from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

from backend.app.observability import MetricsRegistry

logger = logging.getLogger("wa_gateway.side_effects")

T = TypeVar("T")


def run_side_effect(
    name: str,
    action: Callable[[], T],
    *,
    metrics: Optional[MetricsRegistry] = None,
    **context: Any,
) -> Optional[T]:
    """Run a local side effect whose failure must not reach the caller.

    The primary response has already been decided when this runs; errors are
    logged with their context and counted, and None is returned.
    """
    try:
        return action()
    except Exception:
        details = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        logger.exception("side_effect_failed name=%s %s", name, details)
        if metrics:
            metrics.incr("side_effect_failed")
        return None
