"""Storage layer for the Realm PKM service."""

from realm_pkm.storage.fts_index import FtsIndex
from realm_pkm.storage.link_repository import LinkRepository
from realm_pkm.storage.note_repository import NoteRepository
from realm_pkm.storage.tag_repository import TagRepository
from realm_pkm.storage.user_repository import UserRepository
from realm_pkm.storage.version_repository import VersionRepository

__all__ = [
    "FtsIndex",
    "NoteRepository",
    "LinkRepository",
    "TagRepository",
    "UserRepository",
    "VersionRepository",
]
