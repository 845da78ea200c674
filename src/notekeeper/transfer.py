"""Export and import of the complete local dataset."""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

from pydantic import ValidationError as PydanticValidationError

from notekeeper import __version__
from notekeeper.exceptions import ErrorCode, StorageError, ValidationError
from notekeeper.models.schema import Dataset, EntityKind, utc_now
from notekeeper.observability import timed_operation
from notekeeper.services.reconciler import drop_dangling_links
from notekeeper.storage.entity_store import EntityStore

logger = logging.getLogger(__name__)

# Device-local settings that hold credentials stay out of exports
_PRIVATE_METADATA = frozenset({"webdav-config", "api-session"})


def export_dataset(store: EntityStore) -> Dict[str, Any]:
    """Snapshot every table as a JSON-ready document.

    Returns:
        A dict with ``notes``, ``folders``, ``tags``, ``noteTags``,
        ``metadata``, ``exportedAt`` and ``version``.
    """
    dataset = store.load_dataset()
    document = dataset.model_dump(mode="json", by_alias=True)
    document["metadata"] = {
        key: value
        for key, value in store.get_all_metadata().items()
        if key not in _PRIVATE_METADATA
    }
    document["exportedAt"] = utc_now().isoformat()
    document["version"] = __version__
    logger.info(f"Exported dataset: {dataset.counts()}")
    return document


def import_dataset(store: EntityStore, data: Dict[str, Any]) -> Dataset:
    """Replace the local dataset with an exported document.

    This is a full replace, not a merge. Links whose note or tag is missing
    from the document are dropped. Metadata in the document is ignored; the
    storage mode and remote settings belong to this device.

    Returns:
        The dataset as persisted.

    Raises:
        ValidationError: If the document is malformed.
    """
    if not isinstance(data, dict):
        raise ValidationError(
            "Import document must be a JSON object", field="document"
        )
    missing = [key for key in ("notes", "folders", "tags", "noteTags") if key not in data]
    if missing:
        raise ValidationError(
            f"Import document is missing: {', '.join(missing)}",
            field=missing[0],
            code=ErrorCode.FIELD_REQUIRED,
        )
    try:
        dataset = Dataset.model_validate(
            {key: data[key] for key in ("notes", "folders", "tags", "noteTags")}
        )
    except PydanticValidationError as e:
        first = e.errors()[0]
        raise ValidationError(
            f"Invalid import document: {first['msg']}",
            field=".".join(str(p) for p in first.get("loc", ())) or None,
        )

    links = dataset.note_tags
    dataset.note_tags = drop_dangling_links(
        links, dataset.ids(EntityKind.NOTES), dataset.ids(EntityKind.TAGS)
    )
    if len(links) != len(dataset.note_tags):
        logger.warning(f"Dropped {len(links) - len(dataset.note_tags)} invalid links on import")

    with timed_operation("transfer.import", version=data.get("version")) as op:
        persisted = store.replace_dataset(dataset)
        op.update(persisted.counts())
    logger.info(f"Imported dataset: {persisted.counts()}")
    return persisted


def export_to_file(store: EntityStore, path: Union[str, Path]) -> Path:
    """Write an export document to ``path`` atomically."""
    path = Path(path)
    document = export_dataset(store)
    temp_file = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
        temp_file.replace(path)
    except OSError as e:
        raise StorageError(
            f"Failed to write export to {path}",
            operation="export",
            original_error=e,
        )
    return path


def import_from_file(store: EntityStore, path: Union[str, Path]) -> Dataset:
    """Read an export document from ``path`` and replace the local dataset."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Import file {path.name} is not valid JSON: {e}", field="document")
    except OSError as e:
        raise StorageError(
            f"Failed to read import file {path}",
            operation="import",
            code=ErrorCode.STORAGE_READ_FAILED,
            original_error=e,
        )
    return import_dataset(store, data)
