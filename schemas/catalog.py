"""
Typed records for Drive catalog entries and permissions.

Raw Drive payloads and persisted rows are both converted to these records
so change detection compares like with like.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNTITLED = "Untitled"

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
SHORTCUT_MIME_TYPE = "application/vnd.google-apps.shortcut"
GOOGLE_APPS_PREFIX = "application/vnd.google-apps."


class EntryKind(str, Enum):
    FOLDER = "folder"
    SHORTCUT = "shortcut"
    NATIVE_DOCUMENT = "native_document"  # Docs, Sheets, Slides, ...
    FILE = "file"


def classify_entry(mime_type: Optional[str]) -> EntryKind:
    """Map a Drive mime type to the kind of entry it denotes."""
    if mime_type == FOLDER_MIME_TYPE:
        return EntryKind.FOLDER
    if mime_type == SHORTCUT_MIME_TYPE:
        return EntryKind.SHORTCUT
    if mime_type and mime_type.startswith(GOOGLE_APPS_PREFIX):
        return EntryKind.NATIVE_DOCUMENT
    return EntryKind.FILE


def is_container(mime_type: Optional[str]) -> bool:
    return classify_entry(mime_type) is EntryKind.FOLDER


def normalize_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC so comparisons stay stable."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class GranteeType(str, Enum):
    USER = "user"
    GROUP = "group"
    DOMAIN = "domain"
    ANYONE = "anyone"


class GrantRole(str, Enum):
    OWNER = "owner"
    ORGANIZER = "organizer"
    FILE_ORGANIZER = "fileOrganizer"
    WRITER = "writer"
    COMMENTER = "commenter"
    READER = "reader"


class CatalogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = UNTITLED
    mime_type: Optional[str] = None
    parent_ids: FrozenSet[str] = frozenset()
    size_bytes: Optional[int] = Field(default=None, ge=0)
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    trashed: bool = False

    @field_validator("name", mode="before")
    @classmethod
    def _default_name(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return UNTITLED
        return value

    @field_validator("parent_ids", mode="before")
    @classmethod
    def _parents_as_set(cls, value: Any) -> Any:
        if value is None:
            return frozenset()
        return value

    @field_validator("trashed", mode="before")
    @classmethod
    def _trashed_default(cls, value: Any) -> Any:
        return bool(value)

    @field_validator("created_at", "modified_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return normalize_timestamp(value)

    @property
    def kind(self) -> EntryKind:
        return classify_entry(self.mime_type)

    @property
    def is_container(self) -> bool:
        return is_container(self.mime_type)

    @classmethod
    def from_drive(cls, payload: Dict[str, Any]) -> "CatalogEntry":
        """Build an entry from a files().list / files().get resource."""
        return cls(
            id=payload["id"],
            name=payload.get("name"),
            mime_type=payload.get("mimeType") or None,
            parent_ids=payload.get("parents"),
            size_bytes=payload.get("size"),
            created_at=payload.get("createdTime"),
            modified_at=payload.get("modifiedTime"),
            trashed=payload.get("trashed", False),
        )

    @classmethod
    def from_row(cls, row) -> "CatalogEntry":
        return cls(
            id=row.id,
            name=row.name,
            mime_type=row.mime_type,
            parent_ids=row.parent_ids or (),
            size_bytes=row.size_bytes,
            created_at=row.created_at,
            modified_at=row.modified_at,
            trashed=row.trashed,
        )

    def to_row_values(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "mime_type": self.mime_type,
            "parent_ids": sorted(self.parent_ids),
            "size_bytes": self.size_bytes,
            "created_at": self.created_at,
            "modified_at": self.modified_at,
            "is_container": self.is_container,
            "trashed": self.trashed,
        }


class AccessGrant(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str = Field(min_length=1)
    entry_id: str = Field(min_length=1)
    grantee_type: GranteeType = Field(default=GranteeType.USER, validate_default=True)
    role: GrantRole = Field(default=GrantRole.READER, validate_default=True)
    email_address: Optional[str] = None
    domain: Optional[str] = None
    discoverable: bool = False

    @field_validator("grantee_type", "role", mode="before")
    @classmethod
    def _blank_to_default(cls, value: Any, info) -> Any:
        if value in (None, ""):
            return cls.model_fields[info.field_name].default
        return value

    @field_validator("email_address", "domain", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return value or None

    @field_validator("discoverable", mode="before")
    @classmethod
    def _discoverable_default(cls, value: Any) -> Any:
        return bool(value)

    @classmethod
    def from_drive(cls, entry_id: str, payload: Dict[str, Any]) -> "AccessGrant":
        """Build a grant from a permissions().list resource."""
        return cls(
            id=payload["id"],
            entry_id=entry_id,
            grantee_type=payload.get("type"),
            role=payload.get("role"),
            email_address=payload.get("emailAddress"),
            domain=payload.get("domain"),
            discoverable=payload.get("allowFileDiscovery", False),
        )

    @classmethod
    def from_row(cls, row) -> "AccessGrant":
        return cls(
            id=row.id,
            entry_id=row.entry_id,
            grantee_type=row.grantee_type,
            role=row.role,
            email_address=row.email_address,
            domain=row.domain,
            discoverable=row.discoverable,
        )

    def to_row_values(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "grantee_type": self.grantee_type,
            "role": self.role,
            "email_address": self.email_address,
            "domain": self.domain,
            "discoverable": self.discoverable,
        }


ENTRY_TRACKED_FIELDS = (
    "name",
    "mime_type",
    "parent_ids",
    "size_bytes",
    "created_at",
    "modified_at",
    "is_container",
    "trashed",
)

GRANT_TRACKED_FIELDS = (
    "entry_id",
    "grantee_type",
    "role",
    "email_address",
    "domain",
    "discoverable",
)
