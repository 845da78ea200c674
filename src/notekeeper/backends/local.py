"""Backend adapter over the local entity store."""
import logging
from typing import Any, Dict, List, Union

from notekeeper.backends.base import BackendAdapter
from notekeeper.models.schema import Dataset, EntityKind
from notekeeper.storage.entity_store import EntityStore

logger = logging.getLogger(__name__)


class LocalBackend(BackendAdapter):
    """Exposes the entity store through the backend interface.

    ``write_dataset`` replaces all four tables in one transaction.
    """

    name = "local"

    def __init__(self, store: EntityStore):
        self.store = store

    def initialize(self) -> None:
        # The store is ready once constructed; touching it surfaces a broken database early.
        counts = {kind.value: self.store.count(kind) for kind in EntityKind}
        logger.debug(f"Local store ready: {counts}")

    def fetch_all(self, kind: Union[str, EntityKind]) -> List[Dict[str, Any]]:
        return self.serialize(self.store.get_all(kind))

    def write_all(self, kind: Union[str, EntityKind], records: List[Any]) -> None:
        self.store.replace_all(kind, records)

    def fetch_dataset(self) -> Dataset:
        return self.store.load_dataset()

    def write_dataset(self, dataset: Dataset) -> None:
        self.store.replace_dataset(dataset)
