"""Identifier allocation for the entity store."""
import logging
import threading
from typing import Dict, Iterable, Optional, Union

from notekeeper.models.schema import EntityKind

logger = logging.getLogger(__name__)


class IdentityAllocator:
    """Hands out positive, monotonically increasing identifiers per kind.

    Counters are seeded from the highest persisted identifier of each kind
    (``max + 1``, or 1 for an empty table), so identifiers are never reused
    across restarts unless the store is modified out of band. Identifiers
    that enter the store from elsewhere (imports, merged remote records)
    must be reported through :meth:`observe`.
    """

    def __init__(self, seeds: Optional[Dict[EntityKind, int]] = None):
        self._lock = threading.Lock()
        self._next: Dict[EntityKind, int] = {kind: 1 for kind in EntityKind}
        for kind, max_id in (seeds or {}).items():
            self.seed(kind, max_id)

    def seed(self, kind: Union[str, EntityKind], max_id: Optional[int]) -> None:
        """Set the counter from the highest identifier currently persisted."""
        kind = EntityKind.parse(kind)
        with self._lock:
            self._next[kind] = max(max_id or 0, 0) + 1
        logger.debug(f"Seeded {kind.value} allocator at {self._next[kind]}")

    def observe(self, kind: Union[str, EntityKind], ids: Iterable[Optional[int]]) -> None:
        """Advance the counter past identifiers written by someone else."""
        kind = EntityKind.parse(kind)
        highest = max((i for i in ids if i is not None and i > 0), default=0)
        with self._lock:
            if highest >= self._next[kind]:
                self._next[kind] = highest + 1

    def next(self, kind: Union[str, EntityKind]) -> int:
        """Allocate the next identifier for ``kind``."""
        kind = EntityKind.parse(kind)
        with self._lock:
            value = self._next[kind]
            self._next[kind] = value + 1
            return value

    def peek(self, kind: Union[str, EntityKind]) -> int:
        """Return the identifier the next call to :meth:`next` would hand out."""
        with self._lock:
            return self._next[EntityKind.parse(kind)]

