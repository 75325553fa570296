"""Graph payloads for the force-directed note view."""

import hashlib
import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from realm_pkm.config import config
from realm_pkm.models.schema import (
    GraphData,
    GraphEdge,
    GraphNode,
    GraphStats,
    LinkType,
    Note,
    NoteLink,
    utc_now,
)
from realm_pkm.observability import traced
from realm_pkm.services.note_service import NoteService
from realm_pkm.services.relationship_service import RelationshipService

logger = logging.getLogger(__name__)

BASE_NODE_SIZE = 30
PREVIEW_LENGTH = 100
MAX_SUBGRAPH_DEPTH = 3
MAX_SUBGRAPH_NOTES = 50
MAX_SEARCH_NODES = 20

TAG_PALETTE = (
    "#FF6B6B",
    "#4ECDC4",
    "#45B7D1",
    "#96CEB4",
    "#FFEAA7",
    "#DDA0DD",
    "#FFA07A",
    "#87CEEB",
    "#98FB98",
    "#F0E68C",
)

# (max age in days, colour) for untagged notes
AGE_COLORS = ((7, "#4CAF50"), (30, "#2196F3"), (90, "#FF9800"))
DEFAULT_NODE_COLOR = "#9E9E9E"

EDGE_COLORS: Dict[LinkType, str] = {
    LinkType.REFERENCES: "#999999",
    LinkType.SUPPORTS: "#4CAF50",
    LinkType.CONTRADICTS: "#F44336",
    LinkType.BUILDS_ON: "#2196F3",
    LinkType.RELATED_TO: "#9C27B0",
    LinkType.INSPIRED_BY: "#FF9800",
    LinkType.CLARIFIES: "#00BCD4",
    LinkType.QUESTION: "#CDDC39",
    LinkType.ANSWER: "#8BC34A",
    LinkType.EXAMPLE: "#795548",
}
DEFAULT_EDGE_COLOR = "#999999"


def node_size(content: str, degree: int) -> int:
    return BASE_NODE_SIZE + min(20, len(content or "") // 200) + min(15, degree * 3)


def tag_color(tag: str) -> str:
    """Palette colour for a tag, stable across processes."""
    if not tag:
        return DEFAULT_NODE_COLOR
    digest = hashlib.md5(tag.encode("utf-8")).hexdigest()
    return TAG_PALETTE[int(digest, 16) % len(TAG_PALETTE)]


def node_color(note: Note) -> str:
    """Colour by first tag, else by age of the note."""
    if note.tags:
        return tag_color(note.tags[0])
    age_days = (utc_now() - note.created_at).days
    for max_age, color in AGE_COLORS:
        if age_days < max_age:
            return color
    return DEFAULT_NODE_COLOR


def content_preview(note: Note) -> str:
    plain = " ".join(note.plain_text.split())
    if len(plain) <= PREVIEW_LENGTH:
        return plain
    return plain[:PREVIEW_LENGTH] + "..."


def edge_width(strength: float) -> float:
    return 1.0 + 3.0 * strength


class GraphService:
    """Builds node/edge payloads and graph statistics for one user."""

    def __init__(
        self,
        note_service: NoteService,
        relationship_service: Optional[RelationshipService] = None,
    ):
        self.notes = note_service
        self.repository = note_service.repository
        self.relationships = relationship_service or RelationshipService(note_service)
        self.links = self.relationships.links

    def _build_node(
        self,
        note: Note,
        degree: int,
        selected: bool = False,
        highlighted: bool = False,
    ) -> GraphNode:
        return GraphNode(
            id=note.id,
            title=note.title,
            content=content_preview(note),
            tags=list(note.tags),
            created_at=note.created_at,
            updated_at=note.updated_at,
            size=node_size(note.content, degree),
            color=node_color(note),
            connection_count=degree,
            is_favorite=note.is_favorite,
            status=note.status,
            selected=selected,
            highlighted=highlighted,
        )

    @staticmethod
    def _build_edges(links: Iterable[NoteLink], node_ids: Set[str]) -> List[GraphEdge]:
        """Edges for links whose both ends are drawn."""
        visible = [
            link for link in links
            if link.source_id in node_ids and link.target_id in node_ids
        ]
        pairs: Set[Tuple[str, str]] = {(link.source_id, link.target_id) for link in visible}
        return [
            GraphEdge(
                id=str(link.id),
                source=link.source_id,
                target=link.target_id,
                type=link.link_type,
                label=link.link_type.display_name,
                context=link.context,
                strength=link.strength,
                color=EDGE_COLORS.get(link.link_type, DEFAULT_EDGE_COLOR),
                width=edge_width(link.strength),
                bidirectional=(link.target_id, link.source_id) in pairs,
                created_at=link.created_at,
            )
            for link in visible
        ]

    def _degrees(self, user_id: str) -> Dict[str, int]:
        """Incoming plus outgoing link count per note."""
        return {
            note_id: out_count + in_count
            for note_id, (out_count, in_count) in self.links.get_degrees(user_id).items()
        }

    def _assemble(
        self,
        user_id: str,
        notes: List[Note],
        center_id: Optional[str] = None,
    ) -> GraphData:
        degrees = self._degrees(user_id)
        nodes = [
            self._build_node(
                note,
                degrees.get(note.id, 0),
                selected=note.id == center_id,
            )
            for note in notes
        ]
        node_ids = {note.id for note in notes}
        edges = self._build_edges(self.links.get_all_for_owner(user_id), node_ids)
        return GraphData(
            nodes=nodes,
            edges=edges,
            center_node_id=center_id,
            total_nodes=len(nodes),
            total_edges=len(edges),
        )

    @traced("get_graph_data")
    def get_graph_data(self, user_id: str, max_nodes: Optional[int] = None) -> GraphData:
        """The user's whole graph, newest notes first.

        Args:
            max_nodes: Keep at most this many notes. Zero or negative means
                no limit; None uses the configured default.
        """
        if max_nodes is None:
            max_nodes = config.graph_max_nodes
        limit = max_nodes if max_nodes > 0 else None
        notes = self.repository.list_for_owner(user_id, limit=limit)
        return self._assemble(user_id, notes)

    @traced("get_subgraph")
    def get_subgraph(self, user_id: str, center_id: str, depth: int = 2) -> GraphData:
        """Neighbourhood of one note. Unknown or foreign centres give an empty graph."""
        depth = max(1, min(depth, MAX_SUBGRAPH_DEPTH))
        center = self.repository.get(center_id)
        if center is None or not center.is_owned_by(user_id):
            logger.debug(f"Subgraph centre {center_id} unavailable to user {user_id}")
            return GraphData(center_node_id=center_id)

        related = self.relationships.find_related_notes(
            center_id, user_id, depth=depth, limit=MAX_SUBGRAPH_NOTES
        )
        return self._assemble(user_id, [center] + related, center_id=center_id)

    def search_nodes(self, user_id: str, query: str) -> List[GraphNode]:
        """Notes matching query, title matches first, as highlighted nodes."""
        term = (query or "").strip().lower()
        if not term:
            return []
        matches = [
            note for note in self.repository.list_for_owner(user_id)
            if note.contains_search_term(term)
        ]
        # list_for_owner is newest first and sort is stable
        matches.sort(key=lambda n: term not in n.title.lower())
        degrees = self._degrees(user_id)
        return [
            self._build_node(note, degrees.get(note.id, 0), highlighted=True)
            for note in matches[:MAX_SEARCH_NODES]
        ]

    @traced("get_graph_stats")
    def get_graph_stats(self, user_id: str) -> GraphStats:
        total_nodes = self.repository.count_for_owner(user_id)
        total_edges = self.links.count_for_owner(user_id)
        degrees = self._degrees(user_id)

        most_connected: Optional[str] = None
        max_connections = 0
        for note_id, degree in sorted(degrees.items()):
            if degree > max_connections:
                most_connected, max_connections = note_id, degree

        average = (2 * total_edges) / total_nodes if total_nodes else 0.0
        return GraphStats(
            total_nodes=total_nodes,
            total_edges=total_edges,
            avg_connections_per_node=round(average, 2),
            most_connected_node_id=most_connected,
            max_connections=max_connections,
            orphan_count=len(self.repository.find_orphaned_note_ids(user_id)),
            cluster_count=len(self.relationships.find_note_clusters(user_id)),
            link_type_distribution=self.links.get_type_distribution(user_id),
        )
