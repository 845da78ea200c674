"""Data models for Notekeeper."""

import datetime
import re
from dataclasses import dataclass
from datetime import timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Type, Union

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from notekeeper.exceptions import ErrorCode, ValidationError

# Matches markup tags in rich note bodies
_TAG_PATTERN = re.compile(r"<[^>]*>")
_WHITESPACE_PATTERN = re.compile(r"\s+")

PREVIEW_LENGTH = 100


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    Remote payloads and SQLite both hand back naive datetimes; they are
    assumed to be UTC.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise unchanged.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def as_utc(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Normalize a datetime to UTC, treating naive values as UTC already."""
    return ensure_timezone_aware(dt_value).astimezone(timezone.utc)


def derive_preview(content: Optional[str]) -> str:
    """Derive the plain-text preview shown in note lists.

    Strips markup, collapses whitespace and keeps the first 100 characters.
    """
    if not content:
        return ""
    text = _TAG_PATTERN.sub(" ", content)
    text = _WHITESPACE_PATTERN.sub(" ", text).strip()
    return text[:PREVIEW_LENGTH]


class EntityKind(str, Enum):
    """The four entity tables reconciled across backends."""

    NOTES = "notes"
    FOLDERS = "folders"
    TAGS = "tags"
    NOTE_TAGS = "note_tags"

    @classmethod
    def parse(cls, value: Union[str, "EntityKind"]) -> "EntityKind":
        """Resolve a kind from its value, tolerating the camelCase wire name."""
        if isinstance(value, EntityKind):
            return value
        normalized = {"noteTags": "note_tags", "note-tags": "note_tags"}.get(
            value, value
        )
        try:
            return cls(normalized)
        except ValueError:
            raise ValidationError(
                f"Unknown entity kind '{value}'",
                field="kind",
                value=value,
                code=ErrorCode.INVALID_ENTITY_KIND,
            )


# Parents first so a full replace never writes a link before its note and tag
SYNC_ORDER = (
    EntityKind.FOLDERS,
    EntityKind.TAGS,
    EntityKind.NOTES,
    EntityKind.NOTE_TAGS,
)


class StorageMode(str, Enum):
    """Which backend is authoritative."""

    LOCAL = "local"
    REMOTE_DOCUMENT = "remote-document"  # WebDAV-style file store
    REMOTE_API = "remote-api"  # Authenticated cloud backend


@dataclass(frozen=True)
class Persisted:
    """An identifier assigned by a store; positive and never reused."""

    id: int

    def __post_init__(self) -> None:
        if self.id <= 0:
            raise ValueError(f"Persisted identifiers must be positive, got {self.id}")


@dataclass(frozen=True)
class Pending:
    """A placeholder identifier for a record not yet given a real one.

    Pending identifiers are never used as merge keys.
    """

    temp_id: int

    def collapse(self, assigned_id: int) -> Persisted:
        """Replace the placeholder once the store assigns a real identifier."""
        return Persisted(assigned_id)


Identity = Union[Persisted, Pending]


def identity_of(raw_id: Optional[int]) -> Identity:
    """Classify a raw integer identifier.

    Missing, zero and negative identifiers are all pending.
    """
    if raw_id is not None and raw_id > 0:
        return Persisted(raw_id)
    return Pending(raw_id or 0)


class EntityModel(BaseModel):
    """Base for the four entity records.

    Field names are snake_case in Python and camelCase on the wire
    (``folderId``, ``updatedAt``), matching the remote payloads.
    """

    KIND: ClassVar[EntityKind]

    id: Optional[int] = Field(default=None, description="Store-assigned identifier")

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "validate_assignment": True,
        "extra": "ignore",
    }

    @property
    def identity(self) -> Identity:
        return identity_of(self.id)

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with camelCase keys and ISO timestamps."""
        return self.model_dump(mode="json", by_alias=True)


class Folder(EntityModel):
    """A folder grouping notes."""

    KIND: ClassVar[EntityKind] = EntityKind.FOLDERS

    name: str = Field(..., description="Folder name")
    user_id: Optional[int] = Field(default=None, description="Owning user")
    color: Optional[str] = Field(default=None, description="Optional color tag")
    created_at: datetime.datetime = Field(default_factory=utc_now)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Folder name cannot be empty")
        return v

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v: datetime.datetime) -> datetime.datetime:
        return as_utc(v)


class Tag(EntityModel):
    """A tag attached to notes through NoteTag links."""

    KIND: ClassVar[EntityKind] = EntityKind.TAGS

    name: str = Field(..., description="Tag name")
    user_id: Optional[int] = Field(default=None, description="Owning user")
    color: Optional[str] = Field(default="#3B82F6", description="Display color")
    created_at: datetime.datetime = Field(default_factory=utc_now)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Tag name cannot be empty")
        return v.strip()

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v: datetime.datetime) -> datetime.datetime:
        return as_utc(v)

    def __str__(self) -> str:
        return self.name


class Note(EntityModel):
    """A note. The only kind carrying an update timestamp."""

    KIND: ClassVar[EntityKind] = EntityKind.NOTES

    title: str = Field(default="Untitled Note")
    content: str = Field(default="", description="Rich note body")
    preview: str = Field(default="", description="Plain-text preview of content")
    background_color: Optional[str] = Field(default="#ffffff")
    text_color: Optional[str] = Field(default="#000000")
    font_family: Optional[str] = Field(default="Inter")
    font_size: Optional[str] = Field(default="16px")
    is_pinned: bool = Field(default=False)
    folder_id: Optional[int] = Field(default=None, description="Owning folder")
    user_id: Optional[int] = Field(default=None, description="Owning user")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    @model_validator(mode="before")
    @classmethod
    def _fill_preview(cls, data: Any) -> Any:
        """Derive the preview from content when the caller did not supply one."""
        if isinstance(data, dict) and not data.get("preview"):
            data = dict(data)
            data["preview"] = derive_preview(data.get("content"))
        return data

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_timestamps(cls, v: datetime.datetime) -> datetime.datetime:
        return as_utc(v)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> str:
        if v is None or not v.strip():
            return "Untitled Note"
        return v

    def touch(self) -> None:
        """Refresh the update timestamp after a content or metadata change."""
        self.updated_at = utc_now()


class NoteTag(EntityModel):
    """Association between a note and a tag. The pair is unique."""

    KIND: ClassVar[EntityKind] = EntityKind.NOTE_TAGS

    note_id: int = Field(..., description="Linked note")
    tag_id: int = Field(..., description="Linked tag")

    @property
    def pair(self) -> tuple:
        return (self.note_id, self.tag_id)


EntityRecord = Union[Folder, Tag, Note, NoteTag]

MODEL_FOR_KIND: Dict[EntityKind, Type[EntityModel]] = {
    EntityKind.FOLDERS: Folder,
    EntityKind.TAGS: Tag,
    EntityKind.NOTES: Note,
    EntityKind.NOTE_TAGS: NoteTag,
}


def coerce_record(kind: Union[str, EntityKind], value: Any) -> EntityRecord:
    """Validate a raw record into the model for its kind.

    Raises:
        ValidationError: If the record is the wrong variant or fails validation.
    """
    kind = EntityKind.parse(kind)
    model = MODEL_FOR_KIND[kind]
    if isinstance(value, model):
        return value
    if isinstance(value, EntityModel):
        raise ValidationError(
            f"Expected a {model.__name__} record, got {type(value).__name__}",
            field="kind",
            value=kind.value,
            code=ErrorCode.INVALID_ENTITY_KIND,
        )
    try:
        return model.model_validate(value)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ValidationError(
            f"Invalid {kind.value} record: {first.get('msg', e)}",
            field=field,
            code=ErrorCode.FIELD_REQUIRED
            if first.get("type") == "missing"
            else ErrorCode.VALIDATION_FAILED,
        )


def coerce_records(
    kind: Union[str, EntityKind], values: Optional[Iterable[Any]]
) -> List[EntityRecord]:
    """Validate a list of raw records. ``None`` is treated as empty."""
    return [coerce_record(kind, value) for value in (values or [])]


class Dataset(BaseModel):
    """The complete contents of one store, all four kinds."""

    folders: List[Folder] = Field(default_factory=list)
    tags: List[Tag] = Field(default_factory=list)
    notes: List[Note] = Field(default_factory=list)
    note_tags: List[NoteTag] = Field(default_factory=list)

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    def get(self, kind: Union[str, EntityKind]) -> List[EntityRecord]:
        return getattr(self, EntityKind.parse(kind).value)

    def set(self, kind: Union[str, EntityKind], records: List[EntityRecord]) -> None:
        setattr(self, EntityKind.parse(kind).value, list(records))

    def ids(self, kind: Union[str, EntityKind]) -> set:
        return {r.id for r in self.get(kind) if r.id is not None}

    def counts(self) -> Dict[str, int]:
        return {kind.value: len(self.get(kind)) for kind in SYNC_ORDER}


class WebDAVSettings(BaseModel):
    """Connection settings for the WebDAV document store."""

    url: str = Field(..., description="WebDAV endpoint URL")
    username: Optional[str] = Field(default=None)
    password: Optional[str] = Field(default=None)
    root: str = Field(default="/notekeeper", description="Base collection")

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("WebDAV endpoint is required")
        if not v.startswith(("http://", "https://")):
            raise ValueError("WebDAV endpoint must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("root")
    @classmethod
    def validate_root(cls, v: str) -> str:
        v = "/" + v.strip().strip("/")
        if ".." in v:
            raise ValueError("WebDAV root cannot contain '..'")
        return v

    @property
    def data_dir(self) -> str:
        return f"{self.root}/data"

    @property
    def connection_test_path(self) -> str:
        return f"{self.root}/connection-test.json"


class ApiSession(BaseModel):
    """An authenticated session for the remote API backend."""

    user_id: int = Field(..., description="Authenticated user")
    token: str = Field(..., description="Bearer token for the session")
    username: Optional[str] = Field(default=None)

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("token")
    @classmethod
    def validate_token(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Session token cannot be empty")
        return v

    @property
    def is_authenticated(self) -> bool:
        return self.user_id > 0 and bool(self.token)
