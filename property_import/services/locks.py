from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

"""Per-scope import lease.

Only one import may run per organisational scope at a time. The lease is
held through the store (an advisory lock in PostgreSQL, a threading.Lock in
memory) and is released when the import finishes or its connection dies.
"""

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"


class ImportLockedError(Exception):
    """Another import holds the lease for this scope."""

    def __init__(self, scope: str, waited_seconds: float) -> None:
        self.scope = scope
        self.waited_seconds = waited_seconds
        super().__init__(
            f"another import is running for scope '{scope}' (waited {waited_seconds:.0f}s)"
        )


def lock_key(scope: str | None) -> str:
    return f"property_import:{scope or GLOBAL_SCOPE}"


@contextmanager
def import_lease(
    store,
    scope: str | None,
    wait_seconds: float = 0.0,
    *,
    poll_interval: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Iterator[str]:
    """Hold the import lease for ``scope`` for the duration of the block.

    Raises ImportLockedError when it cannot be acquired within ``wait_seconds``.
    """
    key = lock_key(scope)
    start = clock()
    logger.debug("acquiring import lease %s", key)
    while not store.try_acquire_lock(key):
        waited = clock() - start
        if waited >= wait_seconds:
            raise ImportLockedError(scope or GLOBAL_SCOPE, waited)
        sleep(min(poll_interval, max(wait_seconds - waited, 0.0)))
    logger.debug("acquired import lease %s", key)
    try:
        yield key
    finally:
        store.release_lock(key)
        logger.debug("released import lease %s", key)
