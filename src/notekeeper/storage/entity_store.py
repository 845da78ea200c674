"""Local entity store backed by SQLite."""
import json
import logging
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from notekeeper.exceptions import (
    ErrorCode,
    NotFoundError,
    StorageError,
    ValidationError,
)
from notekeeper.models.db_models import (
    TABLE_FOR_KIND,
    DBMetadata,
    DBNote,
    DBNoteTag,
    get_session_factory,
    init_db,
)
from notekeeper.models.schema import (
    SYNC_ORDER,
    Dataset,
    EntityKind,
    EntityRecord,
    Pending,
    coerce_record,
    coerce_records,
)
from notekeeper.observability import timed_operation
from notekeeper.storage.id_allocator import IdentityAllocator

logger = logging.getLogger(__name__)

# (kind, index name) -> column
INDEXES: Dict[tuple, str] = {
    (EntityKind.NOTES, "by-folder"): "folder_id",
    (EntityKind.NOTES, "by-pinned"): "is_pinned",
    (EntityKind.NOTE_TAGS, "by-note"): "note_id",
    (EntityKind.NOTE_TAGS, "by-tag"): "tag_id",
}


class EntityStore:
    """Durable key-value tables for notes, folders, tags and note-tag links.

    Every record is addressed by a positive integer identifier handed out by
    an :class:`IdentityAllocator`. Single-record operations are atomic.
    Cascading deletes run one statement per step, so a crash part-way can
    leave orphaned references; readers treat a missing folder as "no folder"
    and ignore links to missing notes or tags.
    """

    def __init__(self, engine=None, allocator: Optional[IdentityAllocator] = None):
        """Initialize the store.

        Args:
            engine: SQLAlchemy engine. If None, uses the configured database.
            allocator: Identifier allocator. A fresh one is created if None.
        """
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)
        self.allocator = allocator or IdentityAllocator()
        self._load_id_counters()
        logger.info("EntityStore initialized")

    def _load_id_counters(self) -> None:
        """Seed the allocator with the highest persisted id of every kind."""
        with self.session_factory() as session:
            for kind, table in TABLE_FOR_KIND.items():
                max_id = session.scalar(select(func.max(table.id)))
                self.allocator.observe(kind, [max_id])

    @staticmethod
    def _to_row(kind: EntityKind, record: EntityRecord):
        table = TABLE_FOR_KIND[kind]
        columns = {c.key for c in table.__table__.columns}
        return table(**record.model_dump(include=columns))

    @staticmethod
    def _to_model(kind: EntityKind, row) -> EntityRecord:
        data = {c.key: getattr(row, c.key) for c in row.__table__.columns}
        return coerce_record(kind, data)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_all(self, kind: Union[str, EntityKind]) -> List[EntityRecord]:
        """Get every record of a kind, ordered by identifier."""
        kind = EntityKind.parse(kind)
        table = TABLE_FOR_KIND[kind]
        with self.session_factory() as session:
            rows = session.scalars(select(table).order_by(table.id)).all()
            return [self._to_model(kind, row) for row in rows]

    def get_by_id(
        self, kind: Union[str, EntityKind], entity_id: int
    ) -> Optional[EntityRecord]:
        """Get a record by identifier, or None if it does not exist."""
        kind = EntityKind.parse(kind)
        with self.session_factory() as session:
            row = session.get(TABLE_FOR_KIND[kind], entity_id)
            return self._to_model(kind, row) if row is not None else None

    def get_by_index(
        self, kind: Union[str, EntityKind], index_name: str, value: Any
    ) -> List[EntityRecord]:
        """Secondary lookup.

        Supported indexes: notes ``by-folder`` and ``by-pinned``,
        note_tags ``by-note`` and ``by-tag``. A ``None`` value matches
        records where the indexed column is empty.

        Raises:
            ValidationError: If the index does not exist for the kind.
        """
        kind = EntityKind.parse(kind)
        column_name = INDEXES.get((kind, index_name))
        if column_name is None:
            raise ValidationError(
                f"Unknown index '{index_name}' for {kind.value}",
                field="index_name",
                value=index_name,
                code=ErrorCode.INVALID_INDEX,
            )
        table = TABLE_FOR_KIND[kind]
        column = getattr(table, column_name)
        clause = column.is_(None) if value is None else column == value
        with self.session_factory() as session:
            rows = session.scalars(select(table).where(clause).order_by(table.id)).all()
            return [self._to_model(kind, row) for row in rows]

    def count(self, kind: Union[str, EntityKind]) -> int:
        kind = EntityKind.parse(kind)
        with self.session_factory() as session:
            return session.scalar(select(func.count()).select_from(TABLE_FOR_KIND[kind]))

    def load_dataset(self) -> Dataset:
        """Read all four tables."""
        dataset = Dataset()
        for kind in SYNC_ORDER:
            dataset.set(kind, self.get_all(kind))
        return dataset

    # =========================================================================
    # Writes
    # =========================================================================

    def put(self, kind: Union[str, EntityKind], record: Any) -> EntityRecord:
        """Insert or replace a record.

        Records with a missing or non-positive identifier get a fresh one
        from the allocator.

        Returns:
            The stored record, carrying its persisted identifier.

        Raises:
            ValidationError: If the record is malformed, or a note-tag link
                duplicates an existing (note, tag) pair.
            StorageError: If the database write fails.
        """
        kind = EntityKind.parse(kind)
        model = coerce_record(kind, record)
        if isinstance(model.identity, Pending):
            model = model.model_copy(update={"id": self.allocator.next(kind)})

        try:
            with self.session_factory() as session:
                if kind is EntityKind.NOTE_TAGS:
                    clash = session.scalar(
                        select(DBNoteTag.id).where(
                            (DBNoteTag.note_id == model.note_id)
                            & (DBNoteTag.tag_id == model.tag_id)
                            & (DBNoteTag.id != model.id)
                        )
                    )
                    if clash is not None:
                        raise ValidationError(
                            f"Tag {model.tag_id} is already added to note {model.note_id}",
                            field="tag_id",
                            value=model.tag_id,
                            code=ErrorCode.LINK_ALREADY_EXISTS,
                        )
                session.merge(self._to_row(kind, model))
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to write {kind.value} record {model.id}",
                operation="put",
                original_error=e,
            )

        self.allocator.observe(kind, [model.id])
        return model

    def delete(self, kind: Union[str, EntityKind], entity_id: int) -> bool:
        """Delete a record, cascading to dependents.

        Notes and tags lose their note-tag links first. Folders first release
        their notes (``folder_id`` set to empty); notes are never deleted by
        a folder delete.

        Raises:
            NotFoundError: If no record has this identifier.
        """
        kind = EntityKind.parse(kind)
        table = TABLE_FOR_KIND[kind]
        if self.get_by_id(kind, entity_id) is None:
            raise NotFoundError(kind.value, entity_id)

        try:
            # Each step commits on its own.
            if kind is EntityKind.NOTES:
                self._execute(delete(DBNoteTag).where(DBNoteTag.note_id == entity_id))
            elif kind is EntityKind.TAGS:
                self._execute(delete(DBNoteTag).where(DBNoteTag.tag_id == entity_id))
            elif kind is EntityKind.FOLDERS:
                released = self._execute(
                    update(DBNote)
                    .where(DBNote.folder_id == entity_id)
                    .values(folder_id=None)
                )
                logger.debug(f"Released {released} notes from folder {entity_id}")
            self._execute(delete(table).where(table.id == entity_id))
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to delete {kind.value} record {entity_id}",
                operation="delete",
                original_error=e,
            )
        return True

    def _execute(self, statement) -> int:
        with self.session_factory() as session:
            result = session.execute(statement)
            session.commit()
            return result.rowcount

    def replace_all(self, kind: Union[str, EntityKind], records: List[Any]) -> None:
        """Replace the whole table for one kind in a single transaction."""
        kind = EntityKind.parse(kind)
        dataset = self.load_dataset()
        dataset.set(kind, coerce_records(kind, records))
        self.replace_dataset(dataset, kinds=[kind])

    def replace_dataset(self, dataset: Dataset, kinds: Optional[List[EntityKind]] = None) -> Dataset:
        """Replace the given tables (all four by default) in one transaction.

        Pending identifiers are resolved first. If anything fails nothing is
        written.

        Returns:
            The dataset as persisted.

        Raises:
            ValidationError: On duplicate identifiers or duplicate note-tag pairs.
            StorageError: If the database write fails.
        """
        kinds = [EntityKind.parse(k) for k in (kinds or SYNC_ORDER)]
        dataset = self.resolve_pending_ids(dataset)
        self._check_unique(dataset, kinds)

        with timed_operation("store.replace_dataset", kinds=len(kinds)) as op:
            try:
                with self.session_factory() as session:
                    with session.begin():
                        for kind in kinds:
                            table = TABLE_FOR_KIND[kind]
                            session.execute(delete(table))
                            session.add_all(
                                self._to_row(kind, r) for r in dataset.get(kind)
                            )
            except SQLAlchemyError as e:
                raise StorageError(
                    "Failed to replace local dataset",
                    operation="replace_dataset",
                    original_error=e,
                )
            op["record_count"] = sum(len(dataset.get(k)) for k in kinds)

        for kind in kinds:
            self.allocator.observe(kind, (r.id for r in dataset.get(kind)))
        return dataset

    @staticmethod
    def _check_unique(dataset: Dataset, kinds: List[EntityKind]) -> None:
        for kind in kinds:
            seen = set()
            for record in dataset.get(kind):
                if record.id in seen:
                    raise ValidationError(
                        f"Duplicate {kind.value} identifier {record.id}",
                        field="id",
                        value=record.id,
                    )
                seen.add(record.id)
        if EntityKind.NOTE_TAGS in kinds:
            pairs = set()
            for link in dataset.note_tags:
                if link.pair in pairs:
                    raise ValidationError(
                        f"Duplicate link between note {link.note_id} and tag {link.tag_id}",
                        field="note_tags",
                        code=ErrorCode.LINK_ALREADY_EXISTS,
                    )
                pairs.add(link.pair)

    def resolve_pending_ids(self, dataset: Dataset) -> Dataset:
        """Give every placeholder-identified record a real identifier.

        References to a placeholder (a note's folder, a link's note or tag)
        are rewritten to the identifier it collapsed to.
        """
        resolved = Dataset()
        remap: Dict[EntityKind, Dict[int, int]] = {}
        for kind in SYNC_ORDER:
            mapping: Dict[int, int] = {}
            records = []
            for record in dataset.get(kind):
                identity = record.identity
                if isinstance(identity, Pending):
                    persisted = identity.collapse(self.allocator.next(kind))
                    mapping[identity.temp_id] = persisted.id
                    record = record.model_copy(update={"id": persisted.id})
                records.append(record)
            remap[kind] = mapping
            resolved.set(kind, records)

        if remap[EntityKind.FOLDERS]:
            resolved.notes = [
                n.model_copy(update={"folder_id": remap[EntityKind.FOLDERS][n.folder_id]})
                if n.folder_id in remap[EntityKind.FOLDERS] else n
                for n in resolved.notes
            ]
        if remap[EntityKind.NOTES] or remap[EntityKind.TAGS]:
            resolved.note_tags = [
                link.model_copy(update={
                    "note_id": remap[EntityKind.NOTES].get(link.note_id, link.note_id),
                    "tag_id": remap[EntityKind.TAGS].get(link.tag_id, link.tag_id),
                })
                for link in resolved.note_tags
            ]
        return resolved

    def clear(self) -> None:
        """Delete every record and all metadata.

        The allocator is not rewound, so identifiers issued earlier in this
        process are not handed out again.
        """
        with self.session_factory() as session:
            with session.begin():
                for table in TABLE_FOR_KIND.values():
                    session.execute(delete(table))
                session.execute(delete(DBMetadata))
        logger.info("Local store cleared")

    # =========================================================================
    # Metadata
    # =========================================================================

    def get_metadata(self, key: str, default: Any = None) -> Any:
        """Read a JSON metadata value."""
        with self.session_factory() as session:
            row = session.get(DBMetadata, key)
            if row is None:
                return default
            return json.loads(row.value)

    def set_metadata(self, key: str, value: Any) -> None:
        """Write a JSON metadata value. ``None`` removes the key."""
        with self.session_factory() as session:
            if value is None:
                session.execute(delete(DBMetadata).where(DBMetadata.key == key))
            else:
                session.merge(DBMetadata(key=key, value=json.dumps(value, default=str)))
            session.commit()

    def get_all_metadata(self) -> Dict[str, Any]:
        with self.session_factory() as session:
            rows = session.scalars(select(DBMetadata)).all()
            return {row.key: json.loads(row.value) for row in rows}
