"""Request bodies and response helpers for the HTTP API."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from realm_pkm.models.schema import Note, NoteLink, NoteVersion


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class ProfileUpdateRequest(BaseModel):
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    bio: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str


class NoteCreateRequest(BaseModel):
    title: str
    content: str = ""
    tags: List[str] = Field(default_factory=list)
    summary: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    is_public: bool = False
    is_favorite: bool = False


class NoteUpdateRequest(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    tags: Optional[List[str]] = None
    summary: Optional[str] = None
    category: Optional[str] = None
    is_public: Optional[bool] = None
    change_description: Optional[str] = None


class StatusRequest(BaseModel):
    status: str


class PriorityRequest(BaseModel):
    priority: str


class TagRequest(BaseModel):
    tag: str


class TagRenameRequest(BaseModel):
    new_name: str


class LinkCreateRequest(BaseModel):
    target_id: str
    link_type: Optional[str] = None
    context: Optional[str] = None
    strength: float = 1.0
    bidirectional: bool = False


class LinkUpdateRequest(BaseModel):
    link_type: Optional[str] = None
    context: Optional[str] = None
    strength: Optional[float] = None


def note_payload(note: Note, include_content: bool = True) -> Dict[str, Any]:
    """JSON view of a note with its computed display summary."""
    exclude = {"links"} if include_content else {"links", "content"}
    data = note.model_dump(mode="json", exclude=exclude)
    data["display_summary"] = note.display_summary
    data["link_count"] = len(note.links)
    return data


def notes_payload(notes: List[Note]) -> List[Dict[str, Any]]:
    return [note_payload(note, include_content=False) for note in notes]


def link_payload(link: NoteLink) -> Dict[str, Any]:
    data = link.model_dump(mode="json")
    data["display_name"] = link.link_type.display_name
    data["display_context"] = link.display_context
    return data


def version_payload(version: NoteVersion) -> Dict[str, Any]:
    return version.model_dump(mode="json", exclude={"content"})
