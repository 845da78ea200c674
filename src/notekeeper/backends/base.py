"""Uniform interface shared by every storage backend."""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Union

from notekeeper.exceptions import ConnectivityError, ErrorCode, ValidationError
from notekeeper.models.schema import SYNC_ORDER, Dataset, EntityKind, coerce_records


class BackendAdapter(ABC):
    """A storage medium holding a serialized copy of the four entity tables.

    Adapters carry no business logic. ``write_all`` is an idempotent full
    replace: callers always pass the complete post-merge collection. Medium
    failures surface as :class:`~notekeeper.exceptions.ConnectivityError`.
    """

    name: str = "backend"

    @abstractmethod
    def initialize(self) -> None:
        """Connect, verify access and create any required structure."""

    @abstractmethod
    def fetch_all(self, kind: Union[str, EntityKind]) -> List[Dict[str, Any]]:
        """Return every record of ``kind`` as wire dicts (empty list if none)."""

    @abstractmethod
    def write_all(self, kind: Union[str, EntityKind], records: List[Any]) -> None:
        """Replace the whole collection of ``kind`` on the medium."""

    def fetch_dataset(self) -> Dataset:
        """Fetch and validate all four kinds.

        Raises:
            ConnectivityError: A collection holds a record that does not
                validate (``REMOTE_PAYLOAD_INVALID``).
        """
        dataset = Dataset()
        for kind in SYNC_ORDER:
            records = self.fetch_all(kind)
            try:
                dataset.set(kind, coerce_records(kind, records))
            except ValidationError as e:
                raise self._payload_error(
                    f"fetch {kind.value}",
                    f"{self.name} returned an invalid {kind.value} record: {e.message}",
                    original_error=e,
                )
        return dataset

    def write_dataset(self, dataset: Dataset) -> None:
        """Write all four kinds, parents first."""
        for kind in SYNC_ORDER:
            self.write_all(kind, dataset.get(kind))

    def _payload_error(self, operation: str, message: str, original_error=None):
        return ConnectivityError(
            message,
            backend=self.name,
            operation=operation,
            code=ErrorCode.REMOTE_PAYLOAD_INVALID,
            original_error=original_error,
        )

    def close(self) -> None:
        """Release any held resources."""

    @staticmethod
    def serialize(records: List[Any]) -> List[Dict[str, Any]]:
        """Convert models to wire dicts; dicts pass through untouched."""
        return [r.to_wire() if hasattr(r, "to_wire") else dict(r) for r in records]
