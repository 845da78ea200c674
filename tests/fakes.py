"""In-memory backend for controller and reconciliation tests.

Holds each collection as a list of wire dicts, exactly what a remote medium
would return, and can be told to fail at a given step.
"""
from typing import Any, Callable, Dict, List, Optional, Set, Union

from notekeeper.backends.base import BackendAdapter
from notekeeper.exceptions import ConnectivityError
from notekeeper.models.schema import EntityKind


class InMemoryBackend(BackendAdapter):
    """A remote medium that lives in a dict.

    Args:
        name: Backend name reported in errors.
        fail_on: Steps that raise ConnectivityError: "initialize", "fetch",
            "write".
        on_fetch: Called with the kind before every fetch, to interleave
            other work with a running pass.
    """

    def __init__(
        self,
        name: str = "memory",
        fail_on: Optional[Set[str]] = None,
        on_fetch: Optional[Callable[[EntityKind], None]] = None,
    ):
        self.name = name
        self.fail_on = set(fail_on or ())
        self.on_fetch = on_fetch
        self.collections: Dict[EntityKind, List[Dict[str, Any]]] = {
            kind: [] for kind in EntityKind
        }
        self.initialized = 0
        self.writes: List[EntityKind] = []
        self.closed = 0

    def _maybe_fail(self, step: str) -> None:
        if step in self.fail_on:
            raise ConnectivityError(
                f"{self.name} unavailable", backend=self.name, operation=step
            )

    def initialize(self) -> None:
        self._maybe_fail("initialize")
        self.initialized += 1

    def fetch_all(self, kind: Union[str, EntityKind]) -> List[Dict[str, Any]]:
        kind = EntityKind.parse(kind)
        if self.on_fetch is not None:
            self.on_fetch(kind)
        self._maybe_fail("fetch")
        return [dict(r) for r in self.collections[kind]]

    def write_all(self, kind: Union[str, EntityKind], records: List[Any]) -> None:
        kind = EntityKind.parse(kind)
        self._maybe_fail("write")
        self.collections[kind] = self.serialize(records)
        self.writes.append(kind)

    def close(self) -> None:
        self.closed += 1

    def ids(self, kind: EntityKind) -> List[int]:
        return [r["id"] for r in self.collections[kind]]
