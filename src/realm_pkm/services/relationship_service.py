"""Service for links between notes and the graph they form."""

import logging
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from realm_pkm.exceptions import (
    ErrorCode,
    LinkError,
    LinkNotFoundError,
    ValidationError,
)
from realm_pkm.models.schema import (
    HubNote,
    LinkType,
    Note,
    NoteCluster,
    NoteLink,
    RelationshipAnalytics,
)
from realm_pkm.observability import traced
from realm_pkm.services.note_service import NoteService
from realm_pkm.storage.link_repository import LinkRepository
from realm_pkm.utils import jaccard_similarity, word_set

logger = logging.getLogger(__name__)

# Hierarchical links may not close a loop of up to this many hops
CIRCULAR_CHECK_DEPTH = 5
MAX_RELATED_DEPTH = 5
MAX_RELATED_LIMIT = 100
SUGGESTION_THRESHOLD = 0.2


def bfs_distances(
    adjacency: Dict[str, Iterable[str]], start_id: str, max_depth: int
) -> Dict[str, int]:
    """Hop distance from start_id to every node reachable within max_depth.

    The start node itself is included at distance 0.
    """
    distances = {start_id: 0}
    queue = deque([start_id])
    while queue:
        current = queue.popleft()
        depth = distances[current]
        if depth >= max_depth:
            continue
        for neighbor in adjacency.get(current, ()):
            if neighbor not in distances:
                distances[neighbor] = depth + 1
                queue.append(neighbor)
    return distances


def undirected(adjacency: Dict[str, List[str]]) -> Dict[str, Set[str]]:
    """Symmetric closure of a directed adjacency map."""
    result: Dict[str, Set[str]] = {}
    for source, targets in adjacency.items():
        for target in targets:
            result.setdefault(source, set()).add(target)
            result.setdefault(target, set()).add(source)
    return result


@dataclass
class LinkSuggestion:
    """An unlinked note that looks related to another one."""

    note: Note
    strength: float
    suggested_type: LinkType
    content_similarity: float
    tag_similarity: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "note_id": self.note.id,
            "title": self.note.title,
            "strength": round(self.strength, 3),
            "suggested_type": self.suggested_type.value,
            "content_similarity": round(self.content_similarity, 3),
            "tag_similarity": round(self.tag_similarity, 3),
        }


class RelationshipService:
    """Linking, backlinks and graph analysis over one user's notes."""

    def __init__(self, note_service: NoteService):
        self.notes = note_service
        self.repository = note_service.repository
        self.links = LinkRepository(self.repository.session_factory)

    def _get_owned_link(self, link_id: int, user_id: str) -> NoteLink:
        link = self.links.get(link_id)
        if link is None:
            raise LinkNotFoundError(link_id)
        # Ownership of a link is ownership of its source note
        self.notes.get_owned_note(link.source_id, user_id)
        return link

    @staticmethod
    def _check_strength(strength: float) -> None:
        if strength < 0.0 or strength > 1.0:
            raise ValidationError(
                "Strength must be between 0.0 and 1.0",
                field="strength",
                value=strength,
                code=ErrorCode.INVALID_RANGE,
            )

    @staticmethod
    def _parse_link_type(link_type: Any) -> LinkType:
        try:
            return LinkType.parse(link_type)
        except ValueError as e:
            raise ValidationError(
                str(e), field="link_type", value=link_type,
                code=ErrorCode.INVALID_LINK_TYPE,
            ) from e

    # =========================================================================
    # Link management
    # =========================================================================

    @traced("link_notes")
    def link_notes(
        self,
        source_id: str,
        target_id: str,
        user_id: str,
        link_type: Any = None,
        context: Optional[str] = None,
        strength: float = 1.0,
        bidirectional: bool = False,
    ) -> NoteLink:
        """Create a typed link from source to target.

        Args:
            source_id: ID of the source note
            target_id: ID of the target note
            user_id: Acting user; must own both notes
            link_type: Link type name, case-insensitive (default REFERENCES)
            context: Why the source points at the target
            strength: 0.0 to 1.0
            bidirectional: Also create the inverse link from target to source
                unless it already exists

        Returns:
            The new source -> target link.

        Raises:
            LinkError: Self links, duplicates and hierarchical cycles.
            ValidationError: Unknown link type or strength out of range.
        """
        if source_id == target_id:
            raise LinkError(
                "Cannot link a note to itself",
                source_id=source_id,
                target_id=target_id,
                code=ErrorCode.LINK_SELF_REFERENCE,
            )
        kind = self._parse_link_type(link_type)
        self._check_strength(strength)
        self.notes.get_owned_note(source_id, user_id)
        self.notes.get_owned_note(target_id, user_id)

        if self.links.find(source_id, target_id, kind):
            raise LinkError(
                "Link already exists",
                source_id=source_id,
                target_id=target_id,
                link_type=kind.value,
                code=ErrorCode.LINK_ALREADY_EXISTS,
            )
        if kind.is_hierarchical and self._path_exists(user_id, target_id, source_id):
            raise LinkError(
                f"A {kind.value} link here would create a circular dependency",
                source_id=source_id,
                target_id=target_id,
                link_type=kind.value,
                code=ErrorCode.LINK_CIRCULAR_DEPENDENCY,
            )

        link = self._create(NoteLink(
            source_id=source_id,
            target_id=target_id,
            link_type=kind,
            context=context,
            strength=strength,
        ))

        if bidirectional:
            inverse = kind.inverse
            if not self.links.find(target_id, source_id, inverse):
                self._create(NoteLink(
                    source_id=target_id,
                    target_id=source_id,
                    link_type=inverse,
                    context=context,
                    strength=strength,
                ))

        logger.info(f"Linked {source_id} -> {target_id} ({kind.value})")
        return link

    def _create(self, link: NoteLink) -> NoteLink:
        try:
            return self.links.create(link)
        except ValueError as e:
            raise LinkError(
                str(e),
                source_id=link.source_id,
                target_id=link.target_id,
                link_type=link.link_type.value,
                code=ErrorCode.LINK_ALREADY_EXISTS,
            ) from e

    def _path_exists(self, user_id: str, start_id: str, end_id: str) -> bool:
        adjacency = self.links.get_adjacency(user_id)
        distances = bfs_distances(adjacency, start_id, CIRCULAR_CHECK_DEPTH)
        return end_id in distances

    def remove_link(self, source_id: str, link_id: int, user_id: str) -> None:
        """Delete one outgoing link of source_id.

        Raises:
            LinkNotFoundError: If link_id is not an outgoing link of the source.
        """
        self.notes.get_owned_note(source_id, user_id)
        link = self.links.get(link_id)
        if link is None or link.source_id != source_id:
            raise LinkNotFoundError(link_id, source_id=source_id)
        self.links.delete(link_id)
        logger.info(f"Removed link {link_id} from {source_id}")

    def update_link(
        self,
        link_id: int,
        user_id: str,
        link_type: Any = None,
        context: Optional[str] = None,
        strength: Optional[float] = None,
    ) -> NoteLink:
        """Change type, context or strength of a link; None leaves a field as is."""
        link = self._get_owned_link(link_id, user_id)
        if link_type is not None:
            link.link_type = self._parse_link_type(link_type)
        if context is not None:
            link.context = context or None
        if strength is not None:
            self._check_strength(strength)
            link.strength = strength
        try:
            return self.links.update(link)
        except ValueError as e:
            raise LinkError(
                str(e), source_id=link.source_id, target_id=link.target_id,
                link_type=link.link_type.value, code=ErrorCode.LINK_ALREADY_EXISTS,
            ) from e

    def record_traversal(self, link_id: int, user_id: str) -> NoteLink:
        """Count one navigation along a link."""
        self._get_owned_link(link_id, user_id)
        return self.links.record_traversal(link_id)

    # =========================================================================
    # Neighbours
    # =========================================================================

    def get_outgoing_links(self, note_id: str, user_id: str) -> List[NoteLink]:
        self.notes.get_owned_note(note_id, user_id)
        return self.links.get_outgoing(note_id)

    def get_backlinks(self, note_id: str, user_id: str) -> List[NoteLink]:
        """Links from other notes pointing at this one."""
        self.notes.get_owned_note(note_id, user_id)
        return self.links.get_incoming(note_id)

    def find_linked_notes(self, note_id: str, user_id: str) -> List[Note]:
        self.notes.get_owned_note(note_id, user_id)
        return self.repository.find_linked_notes(note_id, "outgoing")

    def find_backlink_notes(self, note_id: str, user_id: str) -> List[Note]:
        self.notes.get_owned_note(note_id, user_id)
        return self.repository.find_linked_notes(note_id, "incoming")

    @traced("find_related_notes")
    def find_related_notes(
        self, note_id: str, user_id: str, depth: int = 2, limit: int = 20
    ) -> List[Note]:
        """Notes within ``depth`` hops, following links in either direction.

        Ordered by distance, then most recently updated first. The start
        note is excluded.
        """
        if depth < 1 or depth > MAX_RELATED_DEPTH:
            raise ValidationError(
                f"Depth must be between 1 and {MAX_RELATED_DEPTH}",
                field="depth", value=depth, code=ErrorCode.INVALID_RANGE,
            )
        if limit < 1 or limit > MAX_RELATED_LIMIT:
            raise ValidationError(
                f"Limit must be between 1 and {MAX_RELATED_LIMIT}",
                field="limit", value=limit, code=ErrorCode.INVALID_RANGE,
            )
        self.notes.get_owned_note(note_id, user_id)

        graph = undirected(self.links.get_adjacency(user_id))
        distances = bfs_distances(graph, note_id, depth)
        distances.pop(note_id, None)
        if not distances:
            return []

        notes = self.repository.get_by_ids(list(distances))
        notes.sort(key=lambda n: (distances[n.id], -n.updated_at.timestamp()))
        return notes[:limit]

    def find_shortest_path(
        self, start_id: str, end_id: str, user_id: str, max_depth: int = 6
    ) -> List[str]:
        """Shortest directed path of note IDs from start to end.

        Returns:
            ``[start_id]`` when both are the same note, ``[]`` when end is
            not reachable within max_depth hops.
        """
        self.notes.get_owned_note(start_id, user_id)
        self.notes.get_owned_note(end_id, user_id)
        if start_id == end_id:
            return [start_id]

        adjacency = self.links.get_adjacency(user_id)
        parents: Dict[str, Optional[str]] = {start_id: None}
        queue = deque([(start_id, 0)])
        while queue:
            current, depth = queue.popleft()
            if depth >= max_depth:
                continue
            for neighbor in adjacency.get(current, []):
                if neighbor in parents:
                    continue
                parents[neighbor] = current
                if neighbor == end_id:
                    path = [end_id]
                    while parents[path[-1]] is not None:
                        path.append(parents[path[-1]])
                    return list(reversed(path))
                queue.append((neighbor, depth + 1))
        return []

    # =========================================================================
    # Similarity
    # =========================================================================

    @staticmethod
    def _strength_between(
        first: Note, second: Note, adjacency: Dict[str, List[str]]
    ) -> Tuple[float, float, float]:
        """(strength, content similarity, tag similarity) of two notes."""
        first_targets = set(adjacency.get(first.id, []))
        second_targets = set(adjacency.get(second.id, []))

        score = 0.0
        if second.id in first_targets or first.id in second_targets:
            score += 0.5

        content_similarity = jaccard_similarity(
            word_set(first.content), word_set(second.content)
        )
        tag_similarity = jaccard_similarity(set(first.tags), set(second.tags))
        score += content_similarity * 0.3
        score += tag_similarity * 0.2

        all_targets = first_targets | second_targets
        if all_targets:
            score += len(first_targets & second_targets) / len(all_targets)

        return min(1.0, score), content_similarity, tag_similarity

    def calculate_relationship_strength(
        self, first_id: str, second_id: str, user_id: str
    ) -> float:
        """Score in 0..1 combining direct links, shared words, shared tags and shared targets."""
        first = self.notes.get_owned_note(first_id, user_id)
        second = self.notes.get_owned_note(second_id, user_id)
        adjacency = self.links.get_adjacency(user_id)
        return self._strength_between(first, second, adjacency)[0]

    @traced("suggest_related_notes")
    def suggest_related_notes(
        self, note_id: str, user_id: str, limit: int = 5
    ) -> List[LinkSuggestion]:
        """Unlinked notes whose relationship strength exceeds the threshold."""
        note = self.notes.get_owned_note(note_id, user_id)
        adjacency = self.links.get_adjacency(user_id)
        linked = set(adjacency.get(note_id, []))
        linked.update(source for source, targets in adjacency.items() if note_id in targets)

        suggestions = []
        for candidate in self.repository.list_for_owner(user_id):
            if candidate.id == note_id or candidate.id in linked:
                continue
            strength, content_sim, tag_sim = self._strength_between(
                note, candidate, adjacency
            )
            if strength <= SUGGESTION_THRESHOLD:
                continue
            suggested = (
                LinkType.RELATED_TO
                if content_sim > 0.3 or tag_sim > 0.5
                else LinkType.REFERENCES
            )
            suggestions.append(
                LinkSuggestion(candidate, strength, suggested, content_sim, tag_sim)
            )

        suggestions.sort(key=lambda s: s.strength, reverse=True)
        return suggestions[:limit]

    # =========================================================================
    # Graph analysis
    # =========================================================================

    @traced("find_note_clusters")
    def find_note_clusters(self, user_id: str, min_cluster_size: int = 2) -> List[NoteCluster]:
        """Weakly connected components of the user's link graph.

        Cohesion is internal directed links over n * (n - 1). Clusters are
        sorted by cohesion, then size, both descending.
        """
        adjacency = self.links.get_adjacency(user_id)
        graph = undirected(adjacency)

        seen: Set[str] = set()
        components: List[List[str]] = []
        for node_id in sorted(graph):
            if node_id in seen:
                continue
            component = list(bfs_distances(graph, node_id, len(graph)))
            seen.update(component)
            if len(component) >= min_cluster_size:
                components.append(sorted(component))
        if not components:
            return []

        notes_by_id = {
            n.id: n for n in self.repository.get_by_ids([i for c in components for i in c])
        }
        clusters = []
        for component in components:
            members = set(component)
            internal = sum(
                1
                for source in component
                for target in adjacency.get(source, [])
                if target in members
            )
            size = len(component)
            cohesion = internal / (size * (size - 1)) if size > 1 else 0.0
            tag_counts = Counter(
                tag for nid in component if nid in notes_by_id for tag in notes_by_id[nid].tags
            )
            clusters.append(
                NoteCluster(
                    note_ids=component,
                    size=size,
                    internal_links=internal,
                    cohesion=round(cohesion, 4),
                    dominant_tags=[tag for tag, _ in tag_counts.most_common(3)],
                )
            )

        clusters.sort(key=lambda c: (c.cohesion, c.size), reverse=True)
        return clusters

    def find_orphaned_notes(self, user_id: str) -> List[Note]:
        """Find notes with no incoming or outgoing links."""
        return self.repository.get_by_ids(self.repository.find_orphaned_note_ids(user_id))

    def find_hub_notes(
        self, user_id: str, min_connections: int = 5, limit: int = 10
    ) -> List[HubNote]:
        """Notes with the most connections (incoming + outgoing links)."""
        id_counts = self.repository.find_central_note_ids_with_counts(
            user_id, limit=limit, min_connections=min_connections
        )
        if not id_counts:
            return []
        titles = {n.id: n.title for n in self.repository.get_by_ids([i for i, _ in id_counts])}
        return [
            HubNote(note_id=note_id, title=titles[note_id], connection_count=count)
            for note_id, count in id_counts
            if note_id in titles
        ]

    @traced("relationship_analytics")
    def get_relationship_analytics(self, user_id: str) -> RelationshipAnalytics:
        total_notes = self.repository.count_for_owner(user_id)
        total_links = self.links.count_for_owner(user_id)
        average = total_links / total_notes if total_notes else 0.0
        return RelationshipAnalytics(
            total_notes=total_notes,
            total_relationships=total_links,
            avg_relationships_per_note=round(average, 2),
            top_hubs=self.find_hub_notes(user_id, min_connections=1, limit=10),
            link_type_distribution=self.links.get_type_distribution(user_id),
        )
