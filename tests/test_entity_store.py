"""Tests for the SQLite entity store."""
import datetime
from datetime import timezone

import pytest
from sqlalchemy import create_engine, inspect

from notekeeper.backends.local import LocalBackend
from notekeeper.exceptions import ErrorCode, NotFoundError, ValidationError
from notekeeper.models.db_models import Base, init_db
from notekeeper.models.schema import (
    Dataset,
    EntityKind,
    Folder,
    Note,
    NoteTag,
    Tag,
)
from notekeeper.storage.entity_store import EntityStore


class TestPutAndGet:
    """Tests for single-record reads and writes."""

    def test_put_assigns_ids(self, store):
        first = store.put(EntityKind.NOTES, Note(title="One"))
        second = store.put(EntityKind.NOTES, {"title": "Two"})
        assert first.id == 1
        assert second.id == 2

    def test_put_replaces_placeholder_ids(self, store):
        note = store.put(EntityKind.NOTES, Note(id=-5, title="Draft"))
        assert note.id > 0

    def test_put_keeps_explicit_id_and_advances_allocator(self, store):
        """An explicit identifier is never handed out again."""
        store.put(EntityKind.TAGS, Tag(id=10, name="imported"))
        created = store.put(EntityKind.TAGS, Tag(name="new"))
        assert created.id == 11

    def test_get_by_id(self, store):
        created = store.put(EntityKind.FOLDERS, Folder(name="Work"))
        fetched = store.get_by_id(EntityKind.FOLDERS, created.id)
        assert fetched == created

    def test_get_missing_returns_none(self, store):
        assert store.get_by_id(EntityKind.NOTES, 99) is None

    def test_put_replaces_existing(self, store):
        note = store.put(EntityKind.NOTES, Note(title="Before"))
        store.put(EntityKind.NOTES, note.model_copy(update={"title": "After"}))
        assert store.get_by_id(EntityKind.NOTES, note.id).title == "After"
        assert store.count(EntityKind.NOTES) == 1

    def test_timestamps_survive_round_trip(self, store):
        stamp = datetime.datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)
        note = store.put(EntityKind.NOTES, Note(updated_at=stamp, created_at=stamp))
        assert store.get_by_id(EntityKind.NOTES, note.id).updated_at == stamp

    def test_get_all_ordered_by_id(self, store):
        store.put(EntityKind.TAGS, Tag(id=5, name="b"))
        store.put(EntityKind.TAGS, Tag(id=2, name="a"))
        assert [t.id for t in store.get_all(EntityKind.TAGS)] == [2, 5]

    def test_duplicate_pair_rejected(self, store):
        store.put(EntityKind.NOTE_TAGS, NoteTag(note_id=1, tag_id=1))
        with pytest.raises(ValidationError) as exc_info:
            store.put(EntityKind.NOTE_TAGS, NoteTag(note_id=1, tag_id=1))
        assert exc_info.value.code == ErrorCode.LINK_ALREADY_EXISTS

    def test_malformed_record_rejected(self, store):
        with pytest.raises(ValidationError):
            store.put(EntityKind.FOLDERS, {"name": ""})


class TestIndexes:
    """Tests for secondary index lookups."""

    def test_by_folder(self, store):
        store.put(EntityKind.NOTES, Note(title="a", folder_id=1))
        store.put(EntityKind.NOTES, Note(title="b", folder_id=2))
        store.put(EntityKind.NOTES, Note(title="c"))
        assert [n.title for n in store.get_by_index(EntityKind.NOTES, "by-folder", 1)] == ["a"]
        assert [n.title for n in store.get_by_index(EntityKind.NOTES, "by-folder", None)] == ["c"]

    def test_by_pinned(self, store):
        store.put(EntityKind.NOTES, Note(title="pinned", is_pinned=True))
        store.put(EntityKind.NOTES, Note(title="plain"))
        pinned = store.get_by_index(EntityKind.NOTES, "by-pinned", True)
        assert [n.title for n in pinned] == ["pinned"]

    def test_links_by_note_and_tag(self, store):
        store.put(EntityKind.NOTE_TAGS, NoteTag(note_id=1, tag_id=1))
        store.put(EntityKind.NOTE_TAGS, NoteTag(note_id=1, tag_id=2))
        store.put(EntityKind.NOTE_TAGS, NoteTag(note_id=2, tag_id=2))
        assert len(store.get_by_index("note_tags", "by-note", 1)) == 2
        assert len(store.get_by_index("note_tags", "by-tag", 2)) == 2

    def test_unknown_index(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.get_by_index(EntityKind.TAGS, "by-color", "red")
        assert exc_info.value.code == ErrorCode.INVALID_INDEX


class TestDelete:
    """Tests for deletes and their cascades."""

    def test_delete_missing(self, store):
        with pytest.raises(NotFoundError):
            store.delete(EntityKind.NOTES, 42)

    def test_delete_note_removes_links(self, store):
        note = store.put(EntityKind.NOTES, Note(title="n"))
        tag = store.put(EntityKind.TAGS, Tag(name="t"))
        store.put(EntityKind.NOTE_TAGS, NoteTag(note_id=note.id, tag_id=tag.id))

        assert store.delete(EntityKind.NOTES, note.id) is True
        assert store.count(EntityKind.NOTE_TAGS) == 0
        assert store.get_by_id(EntityKind.TAGS, tag.id) is not None

    def test_delete_tag_removes_links(self, store):
        note = store.put(EntityKind.NOTES, Note(title="n"))
        tag = store.put(EntityKind.TAGS, Tag(name="t"))
        store.put(EntityKind.NOTE_TAGS, NoteTag(note_id=note.id, tag_id=tag.id))

        store.delete(EntityKind.TAGS, tag.id)
        assert store.count(EntityKind.NOTE_TAGS) == 0
        assert store.get_by_id(EntityKind.NOTES, note.id) is not None

    def test_delete_folder_releases_notes(self, store):
        """Deleting a folder ungroups its notes instead of deleting them."""
        folder = store.put(EntityKind.FOLDERS, Folder(name="f"))
        notes = [
            store.put(EntityKind.NOTES, Note(title=str(i), folder_id=folder.id))
            for i in range(3)
        ]

        store.delete(EntityKind.FOLDERS, folder.id)

        assert store.get_by_id(EntityKind.FOLDERS, folder.id) is None
        for note in notes:
            assert store.get_by_id(EntityKind.NOTES, note.id).folder_id is None

    def test_deleted_ids_not_reused(self, store):
        note = store.put(EntityKind.NOTES, Note(title="gone"))
        store.delete(EntityKind.NOTES, note.id)
        assert store.put(EntityKind.NOTES, Note(title="next")).id == note.id + 1


class TestReload:
    """Identifiers stay monotonic across process restarts."""

    def test_allocator_seeded_from_persisted_max(self, engine):
        first = EntityStore(engine=engine)
        for _ in range(3):
            first.put(EntityKind.NOTES, Note())
        first.put(EntityKind.FOLDERS, Folder(id=20, name="f"))

        reopened = EntityStore(engine=engine)
        assert reopened.put(EntityKind.NOTES, Note()).id == 4
        assert reopened.put(EntityKind.FOLDERS, Folder(name="g")).id == 21
        assert reopened.put(EntityKind.TAGS, Tag(name="t")).id == 1

    def test_fresh_database(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'fresh.db'}")
        Base.metadata.create_all(engine)
        store = EntityStore(engine=engine)
        assert store.allocator.peek(EntityKind.NOTES) == 1
        engine.dispose()

    def test_init_db_creates_note_columns(self, tmp_path):
        engine = init_db(f"sqlite:///{tmp_path / 'init.db'}")
        columns = {c["name"] for c in inspect(engine).get_columns("notes")}
        assert {"title", "content", "font_size", "folder_id"} <= columns

        store = EntityStore(engine=engine)
        note = store.put(EntityKind.NOTES, Note(font_size="20px"))
        assert store.get_by_id(EntityKind.NOTES, note.id).font_size == "20px"
        engine.dispose()


class TestReplaceDataset:
    """Tests for whole-table replacement."""

    def test_replace_all_one_kind(self, store):
        store.put(EntityKind.TAGS, Tag(name="old"))
        store.put(EntityKind.NOTES, Note(title="kept"))
        store.replace_all(EntityKind.TAGS, [{"id": 7, "name": "new"}])

        assert [t.name for t in store.get_all(EntityKind.TAGS)] == ["new"]
        assert store.count(EntityKind.NOTES) == 1

    def test_pending_ids_resolved_and_references_remapped(self, store):
        dataset = Dataset(
            folders=[Folder(id=-1, name="draft folder")],
            tags=[Tag(id=-1, name="draft tag")],
            notes=[Note(id=-1, title="draft", folder_id=-1)],
            note_tags=[NoteTag(id=-1, note_id=-1, tag_id=-1)],
        )
        persisted = store.replace_dataset(dataset)

        folder = persisted.folders[0]
        note = persisted.notes[0]
        tag = persisted.tags[0]
        link = persisted.note_tags[0]
        assert folder.id > 0 and note.id > 0 and tag.id > 0 and link.id > 0
        assert note.folder_id == folder.id
        assert link.pair == (note.id, tag.id)
        assert store.load_dataset().counts() == persisted.counts()

    def test_duplicate_ids_rejected_without_writing(self, store):
        store.put(EntityKind.NOTES, Note(title="original"))
        dataset = Dataset(notes=[Note(id=3, title="a"), Note(id=3, title="b")])
        with pytest.raises(ValidationError):
            store.replace_dataset(dataset)
        assert [n.title for n in store.get_all(EntityKind.NOTES)] == ["original"]

    def test_duplicate_pairs_rejected(self, store):
        dataset = Dataset(
            note_tags=[NoteTag(id=1, note_id=1, tag_id=1), NoteTag(id=2, note_id=1, tag_id=1)]
        )
        with pytest.raises(ValidationError) as exc_info:
            store.replace_dataset(dataset)
        assert exc_info.value.code == ErrorCode.LINK_ALREADY_EXISTS

    def test_clear(self, store):
        store.put(EntityKind.NOTES, Note())
        store.set_metadata("storage-mode", "local")
        store.clear()
        assert store.count(EntityKind.NOTES) == 0
        assert store.get_all_metadata() == {}
        # The allocator is not rewound
        assert store.put(EntityKind.NOTES, Note()).id == 2


class TestMetadata:
    """Tests for the JSON metadata table."""

    def test_set_and_get(self, store):
        store.set_metadata("webdav-config", {"url": "https://dav.example.com"})
        assert store.get_metadata("webdav-config") == {"url": "https://dav.example.com"}

    def test_default(self, store):
        assert store.get_metadata("missing", "fallback") == "fallback"

    def test_none_removes(self, store):
        store.set_metadata("k", 1)
        store.set_metadata("k", None)
        assert store.get_metadata("k") is None


class TestLocalBackend:
    """The local adapter exposes the store through the backend interface."""

    def test_fetch_all_returns_wire_dicts(self, store):
        store.put(EntityKind.NOTES, Note(title="n", folder_id=3))
        backend = LocalBackend(store)
        backend.initialize()
        records = backend.fetch_all("notes")
        assert records[0]["title"] == "n"
        assert records[0]["folderId"] == 3

    def test_write_all_replaces_collection(self, store):
        store.put(EntityKind.FOLDERS, Folder(name="old"))
        backend = LocalBackend(store)
        backend.write_all(EntityKind.FOLDERS, [{"id": 4, "name": "new"}])
        assert [f.name for f in store.get_all(EntityKind.FOLDERS)] == ["new"]

    def test_dataset_round_trip(self, store):
        backend = LocalBackend(store)
        dataset = Dataset(
            folders=[Folder(id=1, name="f")],
            notes=[Note(id=1, folder_id=1)],
        )
        backend.write_dataset(dataset)
        assert backend.fetch_dataset().counts() == dataset.counts()
