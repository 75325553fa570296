"""
Note endpoints: CRUD, tags, links, history and search.

Fixed paths (``/search``, ``/tags`` ...) are declared before ``/{note_id}``
so they are matched first.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from realm_pkm.api.dependencies import (
    get_current_user,
    get_note_service,
    get_relationship_service,
    get_search_service,
)
from realm_pkm.api.schemas import (
    LinkCreateRequest,
    LinkUpdateRequest,
    NoteCreateRequest,
    NoteUpdateRequest,
    PriorityRequest,
    StatusRequest,
    TagRenameRequest,
    TagRequest,
    link_payload,
    note_payload,
    notes_payload,
    version_payload,
)
from realm_pkm.exceptions import LinkNotFoundError
from realm_pkm.models.schema import User
from realm_pkm.services.note_service import NoteService
from realm_pkm.services.relationship_service import RelationshipService
from realm_pkm.services.search_service import SearchService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/notes", tags=["notes"])


# =============================================================================
# Collection
# =============================================================================


@router.get("")
def list_notes(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    """The caller's notes, most recently updated first."""
    return {
        "notes": notes_payload(notes.list_notes(user.id, limit=limit, offset=offset)),
        "total": notes.count_notes(user.id),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_note(
    request: NoteCreateRequest,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    note = notes.create_note(user.id, **request.model_dump())
    return note_payload(note)


@router.get("/search")
def search_notes(
    q: str = Query(default=""),
    limit: int = Query(default=50, ge=1),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    search: SearchService = Depends(get_search_service),
) -> Dict[str, Any]:
    """Full-text search with "phrases", #tags and status:/priority:/favorite:/after: filters."""
    return search.search(user.id, q, limit=limit, offset=offset).to_dict()


@router.get("/suggestions")
def search_suggestions(
    q: str = Query(default=""),
    limit: int = Query(default=10, ge=1, le=50),
    user: User = Depends(get_current_user),
    search: SearchService = Depends(get_search_service),
) -> List[str]:
    return search.get_suggestions(user.id, q, limit=limit)


@router.get("/tags")
def tags_with_counts(
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, int]:
    return notes.get_tags_with_counts(user.id)


@router.put("/tags/{tag_name}")
def rename_tag(
    tag_name: str,
    request: TagRenameRequest,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    changed = notes.rename_tag(user.id, tag_name, request.new_name)
    return {"renamed": changed}


@router.get("/tag/{tag_name}")
def notes_by_tag(
    tag_name: str,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> List[Dict[str, Any]]:
    return notes_payload(notes.find_by_tag(user.id, tag_name))


@router.get("/status/{note_status}")
def notes_by_status(
    note_status: str,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> List[Dict[str, Any]]:
    return notes_payload(notes.find_by_status(user.id, note_status))


@router.get("/favorites")
def favorite_notes(
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> List[Dict[str, Any]]:
    return notes_payload(notes.find_favorites(user.id))


@router.get("/recent")
def recent_notes(
    days: int = Query(default=7),
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> List[Dict[str, Any]]:
    return notes_payload(notes.find_recently_updated(user.id, days=days))


@router.get("/statistics")
def note_statistics(
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    return notes.get_note_statistics(user.id).model_dump(mode="json")


# =============================================================================
# Single note
# =============================================================================


@router.get("/{note_id}")
def get_note(
    note_id: str,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    return note_payload(notes.get_note(note_id, user.id))


@router.put("/{note_id}")
def update_note(
    note_id: str,
    request: NoteUpdateRequest,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    note = notes.update_note(note_id, user.id, **request.model_dump())
    return note_payload(note)


@router.delete("/{note_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_note(
    note_id: str,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> None:
    notes.delete_note(note_id, user.id)


@router.post("/{note_id}/favorite")
def toggle_favorite(
    note_id: str,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    return note_payload(notes.toggle_favorite(note_id, user.id))


@router.put("/{note_id}/status")
def update_status(
    note_id: str,
    request: StatusRequest,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    return note_payload(notes.update_status(note_id, user.id, request.status))


@router.put("/{note_id}/priority")
def update_priority(
    note_id: str,
    request: PriorityRequest,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    return note_payload(notes.update_priority(note_id, user.id, request.priority))


@router.post("/{note_id}/tags")
def add_tag(
    note_id: str,
    request: TagRequest,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    return note_payload(notes.add_tag(note_id, user.id, request.tag))


@router.delete("/{note_id}/tags/{tag_name}")
def remove_tag(
    note_id: str,
    tag_name: str,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    return note_payload(notes.remove_tag(note_id, user.id, tag_name))


@router.get("/{note_id}/analysis")
def analyze_note(
    note_id: str,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    return notes.analyze_note(note_id, user.id)


@router.post("/{note_id}/summary")
def generate_summary(
    note_id: str,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    return note_payload(notes.generate_summary(note_id, user.id))


@router.get("/{note_id}/history")
def note_history(
    note_id: str,
    limit: int = Query(default=10),
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> List[Dict[str, Any]]:
    return [version_payload(v) for v in notes.get_note_history(note_id, user.id, limit)]


@router.post("/{note_id}/history/{version_number}/restore")
def restore_version(
    note_id: str,
    version_number: int,
    user: User = Depends(get_current_user),
    notes: NoteService = Depends(get_note_service),
) -> Dict[str, Any]:
    return note_payload(notes.restore_version(note_id, user.id, version_number))


# =============================================================================
# Links
# =============================================================================


@router.get("/{note_id}/links")
def outgoing_links(
    note_id: str,
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> List[Dict[str, Any]]:
    return [link_payload(link) for link in relationships.get_outgoing_links(note_id, user.id)]


@router.post("/{note_id}/links", status_code=status.HTTP_201_CREATED)
def create_link(
    note_id: str,
    request: LinkCreateRequest,
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> Dict[str, Any]:
    link = relationships.link_notes(
        note_id,
        request.target_id,
        user.id,
        link_type=request.link_type,
        context=request.context,
        strength=request.strength,
        bidirectional=request.bidirectional,
    )
    return link_payload(link)


@router.put("/{note_id}/links/{link_id}")
def update_link(
    note_id: str,
    link_id: int,
    request: LinkUpdateRequest,
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> Dict[str, Any]:
    outgoing = relationships.get_outgoing_links(note_id, user.id)
    if all(link.id != link_id for link in outgoing):
        raise LinkNotFoundError(link_id, source_id=note_id)
    link = relationships.update_link(link_id, user.id, **request.model_dump())
    return link_payload(link)


@router.delete("/{note_id}/links/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_link(
    note_id: str,
    link_id: int,
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> None:
    relationships.remove_link(note_id, link_id, user.id)


@router.post("/{note_id}/links/{link_id}/traverse")
def traverse_link(
    note_id: str,
    link_id: int,
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> Dict[str, Any]:
    return link_payload(relationships.record_traversal(link_id, user.id))


@router.get("/{note_id}/backlinks")
def backlinks(
    note_id: str,
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> Dict[str, Any]:
    """Incoming links and the notes they come from."""
    return {
        "links": [link_payload(link) for link in relationships.get_backlinks(note_id, user.id)],
        "notes": notes_payload(relationships.find_backlink_notes(note_id, user.id)),
    }


@router.get("/{note_id}/linked")
def linked_notes(
    note_id: str,
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> List[Dict[str, Any]]:
    return notes_payload(relationships.find_linked_notes(note_id, user.id))


@router.get("/{note_id}/related")
def related_notes(
    note_id: str,
    depth: int = Query(default=2),
    limit: int = Query(default=20),
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> List[Dict[str, Any]]:
    return notes_payload(
        relationships.find_related_notes(note_id, user.id, depth=depth, limit=limit)
    )


@router.get("/{note_id}/link-suggestions")
def link_suggestions(
    note_id: str,
    limit: int = Query(default=5, ge=1, le=50),
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in relationships.suggest_related_notes(note_id, user.id, limit)]


@router.get("/{note_id}/strength/{other_id}")
def relationship_strength(
    note_id: str,
    other_id: str,
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> Dict[str, Any]:
    strength = relationships.calculate_relationship_strength(note_id, other_id, user.id)
    return {"source_id": note_id, "target_id": other_id, "strength": round(strength, 3)}


@router.get("/{note_id}/similar")
def similar_notes(
    note_id: str,
    limit: int = Query(default=10, ge=1, le=50),
    user: User = Depends(get_current_user),
    search: SearchService = Depends(get_search_service),
) -> List[Dict[str, Any]]:
    return [
        {**note_payload(note, include_content=False), "similarity": round(score, 3)}
        for note, score in search.find_similar_notes(note_id, user.id, limit=limit)
    ]


@router.get("/{note_id}/traverse")
def traverse_search(
    note_id: str,
    q: str = Query(default=""),
    depth: int = Query(default=3, ge=1, le=5),
    user: User = Depends(get_current_user),
    search: SearchService = Depends(get_search_service),
) -> List[Dict[str, Any]]:
    """Search only among notes reachable from this one."""
    return notes_payload(search.search_by_graph_traversal(note_id, user.id, q, depth))
