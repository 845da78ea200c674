"""Service layer for notes, folders and tags."""

import logging
from typing import Any, Dict, List, Optional

from notekeeper.exceptions import ErrorCode, NotFoundError, ValidationError
from notekeeper.models.schema import (
    EntityKind,
    Folder,
    Note,
    NoteTag,
    Tag,
    derive_preview,
    utc_now,
)
from notekeeper.observability import traced
from notekeeper.storage.entity_store import EntityStore

logger = logging.getLogger(__name__)

_STYLE_FIELDS = frozenset({"background_color", "text_color", "font_family", "font_size"})

# Fields a caller may change through update_note
_NOTE_UPDATABLE = _STYLE_FIELDS | {"title", "content", "is_pinned", "folder_id"}

_SORT_KEYS = {
    "modified": lambda n: n.updated_at,
    "created": lambda n: n.created_at,
}


class NoteService:
    """CRUD over the entity store with the rules the note UI relies on."""

    def __init__(self, store: Optional[EntityStore] = None, engine: Optional[Any] = None):
        """Initialize the service.

        Args:
            store: Entity store. Created with defaults if None.
            engine: Pre-configured SQLAlchemy engine, only used when store is None.
        """
        self.store = store or EntityStore(engine=engine)

    def _require(self, kind: EntityKind, entity_id: int):
        record = self.store.get_by_id(kind, entity_id)
        if record is None:
            raise NotFoundError(kind.value, entity_id)
        return record

    # =========================================================================
    # Notes
    # =========================================================================

    @traced("notes.create")
    def create_note(
        self,
        title: Optional[str] = None,
        content: str = "",
        folder_id: Optional[int] = None,
        is_pinned: bool = False,
        user_id: Optional[int] = None,
        **style: Any,
    ) -> Note:
        """Create a note.

        Args:
            title: Note title. Blank titles become "Untitled Note".
            content: Rich note body; the preview is derived from it.
            folder_id: Folder to file the note under.
            is_pinned: Pin the note to the top of lists.
            user_id: Owning user, for remote API storage.
            **style: background_color, text_color, font_family, font_size.

        Returns:
            The stored note.

        Raises:
            NotFoundError: If ``folder_id`` names a missing folder.
        """
        unknown = set(style) - _STYLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown note fields: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        if folder_id is not None:
            self._require(EntityKind.FOLDERS, folder_id)

        now = utc_now()
        created = self.store.put(
            EntityKind.NOTES,
            dict(
                title=title or "Untitled Note",
                content=content,
                folder_id=folder_id,
                is_pinned=is_pinned,
                user_id=user_id,
                created_at=now,
                updated_at=now,
                **style,
            ),
        )
        logger.debug(f"Created note {created.id}")
        return created

    def get_note(self, note_id: int) -> Optional[Note]:
        """Retrieve a note by ID."""
        return self.store.get_by_id(EntityKind.NOTES, note_id)

    @traced("notes.update")
    def update_note(self, note_id: int, **changes: Any) -> Note:
        """Update a note and refresh its timestamp.

        A content change recomputes the preview.

        Raises:
            NotFoundError: If the note (or a new folder) does not exist.
            ValidationError: If a field cannot be updated.
        """
        note = self._require(EntityKind.NOTES, note_id)
        unknown = set(changes) - _NOTE_UPDATABLE
        if unknown:
            raise ValidationError(
                f"Cannot update note fields: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        if changes.get("folder_id") is not None:
            self._require(EntityKind.FOLDERS, changes["folder_id"])

        data = note.model_dump()
        data.update(changes)
        data["preview"] = derive_preview(data["content"])
        data["updated_at"] = utc_now()
        return self.store.put(EntityKind.NOTES, data)

    def get_all_notes(self, sort_by: str = "modified") -> List[Note]:
        """Get all notes, pinned first, then most recent first.

        Args:
            sort_by: "modified" or "created".
        """
        return self._sorted(self.store.get_all(EntityKind.NOTES), sort_by)

    @staticmethod
    def _sorted(notes: List[Note], sort_by: str) -> List[Note]:
        key = _SORT_KEYS.get(sort_by)
        if key is None:
            raise ValidationError(
                f"Unknown sort order '{sort_by}'", field="sort_by", value=sort_by
            )
        notes = sorted(notes, key=key, reverse=True)
        # Stable, so recency order survives within each group
        return sorted(notes, key=lambda n: not n.is_pinned)

    def get_notes_by_folder(self, folder_id: Optional[int]) -> List[Note]:
        """Get the notes filed under a folder.

        ``None`` returns ungrouped notes, including notes whose folder no
        longer exists.
        """
        if folder_id is not None:
            return self._sorted(
                self.store.get_by_index(EntityKind.NOTES, "by-folder", folder_id),
                "modified",
            )
        folder_ids = {f.id for f in self.store.get_all(EntityKind.FOLDERS)}
        return self._sorted(
            [
                n
                for n in self.store.get_all(EntityKind.NOTES)
                if n.folder_id is None or n.folder_id not in folder_ids
            ],
            "modified",
        )

    def get_pinned_notes(self) -> List[Note]:
        return self._sorted(
            self.store.get_by_index(EntityKind.NOTES, "by-pinned", True), "modified"
        )

    def toggle_pin(self, note_id: int) -> Note:
        """Flip a note's pinned flag."""
        note = self._require(EntityKind.NOTES, note_id)
        return self.update_note(note_id, is_pinned=not note.is_pinned)

    def move_note(self, note_id: int, folder_id: Optional[int]) -> Note:
        """File a note under another folder, or none."""
        return self.update_note(note_id, folder_id=folder_id)

    def delete_note(self, note_id: int) -> bool:
        """Delete a note along with its tag links."""
        return self.store.delete(EntityKind.NOTES, note_id)

    # =========================================================================
    # Folders
    # =========================================================================

    def create_folder(
        self, name: str, color: Optional[str] = None, user_id: Optional[int] = None
    ) -> Folder:
        if not name or not name.strip():
            raise ValidationError(
                "Folder name is required", field="name", code=ErrorCode.FIELD_REQUIRED
            )
        return self.store.put(
            EntityKind.FOLDERS, Folder(name=name.strip(), color=color, user_id=user_id)
        )

    def rename_folder(self, folder_id: int, name: str) -> Folder:
        folder = self._require(EntityKind.FOLDERS, folder_id)
        if not name or not name.strip():
            raise ValidationError(
                "Folder name is required", field="name", code=ErrorCode.FIELD_REQUIRED
            )
        return self.store.put(
            EntityKind.FOLDERS, folder.model_copy(update={"name": name.strip()})
        )

    def get_all_folders(self) -> List[Folder]:
        return sorted(self.store.get_all(EntityKind.FOLDERS), key=lambda f: f.name.lower())

    def delete_folder(self, folder_id: int) -> bool:
        """Delete a folder. Its notes become ungrouped, never deleted."""
        return self.store.delete(EntityKind.FOLDERS, folder_id)

    # =========================================================================
    # Tags
    # =========================================================================

    def create_tag(
        self, name: str, color: Optional[str] = None, user_id: Optional[int] = None
    ) -> Tag:
        """Create a tag.

        Raises:
            ValidationError: If the name is blank or already taken.
        """
        if not name or not name.strip():
            raise ValidationError(
                "Tag name is required", field="name", code=ErrorCode.FIELD_REQUIRED
            )
        if self._find_tag(name) is not None:
            raise ValidationError(
                f"Tag '{name.strip()}' already exists", field="name", value=name
            )
        data = {"name": name, "user_id": user_id}
        if color:
            data["color"] = color
        return self.store.put(EntityKind.TAGS, data)

    def _find_tag(self, name: str) -> Optional[Tag]:
        wanted = name.strip().lower()
        for tag in self.store.get_all(EntityKind.TAGS):
            if tag.name.lower() == wanted:
                return tag
        return None

    def get_or_create_tag(self, name: str, color: Optional[str] = None) -> Tag:
        """Return the tag with this name (case-insensitive), creating it if needed."""
        return self._find_tag(name) or self.create_tag(name, color=color)

    def update_tag(
        self, tag_id: int, name: Optional[str] = None, color: Optional[str] = None
    ) -> Tag:
        tag = self._require(EntityKind.TAGS, tag_id)
        changes: Dict[str, Any] = {}
        if name is not None:
            clash = self._find_tag(name)
            if clash is not None and clash.id != tag_id:
                raise ValidationError(
                    f"Tag '{name.strip()}' already exists", field="name", value=name
                )
            changes["name"] = name
        if color is not None:
            changes["color"] = color
        return self.store.put(EntityKind.TAGS, {**tag.model_dump(), **changes})

    def get_all_tags(self) -> List[Tag]:
        return sorted(self.store.get_all(EntityKind.TAGS), key=lambda t: t.name.lower())

    def delete_tag(self, tag_id: int) -> bool:
        """Delete a tag and every link to it."""
        return self.store.delete(EntityKind.TAGS, tag_id)

    # =========================================================================
    # Note-tag links
    # =========================================================================

    def _find_link(self, note_id: int, tag_id: int) -> Optional[NoteTag]:
        for link in self.store.get_by_index(EntityKind.NOTE_TAGS, "by-note", note_id):
            if link.tag_id == tag_id:
                return link
        return None

    def add_tag_to_note(self, note_id: int, tag_id: int) -> NoteTag:
        """Link a tag to a note.

        Raises:
            NotFoundError: If the note or tag does not exist.
            ValidationError: If the tag is already on the note.
        """
        self._require(EntityKind.NOTES, note_id)
        self._require(EntityKind.TAGS, tag_id)
        if self._find_link(note_id, tag_id) is not None:
            raise ValidationError(
                f"Tag {tag_id} is already added to note {note_id}",
                field="tag_id",
                value=tag_id,
                code=ErrorCode.LINK_ALREADY_EXISTS,
            )
        return self.store.put(EntityKind.NOTE_TAGS, NoteTag(note_id=note_id, tag_id=tag_id))

    def tag_note_by_name(self, note_id: int, name: str) -> Tag:
        """Attach a tag by name, creating the tag on first use.

        Tagging a note that already carries the tag is a no-op.
        """
        self._require(EntityKind.NOTES, note_id)
        tag = self.get_or_create_tag(name)
        if self._find_link(note_id, tag.id) is None:
            self.store.put(EntityKind.NOTE_TAGS, NoteTag(note_id=note_id, tag_id=tag.id))
        return tag

    def remove_tag_from_note(self, note_id: int, tag_id: int) -> bool:
        """Unlink a tag from a note.

        Raises:
            NotFoundError: If the note does not carry the tag.
        """
        link = self._find_link(note_id, tag_id)
        if link is None:
            raise NotFoundError(
                EntityKind.NOTE_TAGS.value,
                f"{note_id}:{tag_id}",
                message=f"Tag {tag_id} is not on note {note_id}",
                code=ErrorCode.LINK_NOT_FOUND,
            )
        return self.store.delete(EntityKind.NOTE_TAGS, link.id)

    def get_tags_for_note(self, note_id: int) -> List[Tag]:
        """Tags on a note. Links to missing tags are ignored."""
        tags = []
        for link in self.store.get_by_index(EntityKind.NOTE_TAGS, "by-note", note_id):
            tag = self.store.get_by_id(EntityKind.TAGS, link.tag_id)
            if tag is not None:
                tags.append(tag)
        return sorted(tags, key=lambda t: t.name.lower())

    def get_notes_for_tag(self, tag_id: int) -> List[Note]:
        """Notes carrying a tag. Links to missing notes are ignored."""
        notes = []
        for link in self.store.get_by_index(EntityKind.NOTE_TAGS, "by-tag", tag_id):
            note = self.store.get_by_id(EntityKind.NOTES, link.note_id)
            if note is not None:
                notes.append(note)
        return self._sorted(notes, "modified")
