"""
Reachability check run before any listing or mutation of the remote store.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from birthdaycal.models import ConnectivityError


logger = logging.getLogger(__name__)


def ensure_reachable(
    probe: Callable[[str], bool],
    base_url: str,
    max_retries: int,
    retry_delay: float,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Raise ConnectivityError unless ``probe(base_url)`` succeeds within ``max_retries + 1`` attempts."""
    attempts = max(0, int(max_retries)) + 1
    for attempt in range(1, attempts + 1):
        if probe(base_url):
            if attempt > 1:
                logger.info("%s reachable after %d attempts.", base_url, attempt)
            return
        if attempt < attempts:
            logger.warning(
                "%s unreachable (attempt %d/%d), retrying in %ss.",
                base_url,
                attempt,
                attempts,
                retry_delay,
            )
            sleep(retry_delay)
    logger.error("Access to %s timed out after %d attempts.", base_url, attempts)
    raise ConnectivityError(f"Access to {base_url} timed out after {attempts} attempts.")
