"""Tests for links, backlinks and graph analysis."""
import pytest

from realm_pkm.exceptions import (
    ErrorCode,
    LinkError,
    LinkNotFoundError,
    NoteAccessDeniedError,
    ValidationError,
)
from realm_pkm.models.schema import LinkType
from realm_pkm.services.relationship_service import bfs_distances, undirected


@pytest.fixture
def make_notes(note_service, user):
    """Create titled notes for the default user, in order."""
    def _make(*titles, **fields):
        return [note_service.create_note(user.id, title, **fields) for title in titles]
    return _make


class TestGraphHelpers:
    """Tests for the breadth-first helpers."""

    def test_bfs_distances_respects_depth(self):
        adjacency = {"a": ["b"], "b": ["c"], "c": ["d"]}
        assert bfs_distances(adjacency, "a", 2) == {"a": 0, "b": 1, "c": 2}

    def test_undirected(self):
        assert undirected({"a": ["b"]}) == {"a": {"b"}, "b": {"a"}}


class TestLinkNotes:
    """Tests for creating links."""

    def test_link_notes(self, relationship_service, make_notes, user):
        a, b = make_notes("A", "B")
        link = relationship_service.link_notes(
            a.id, b.id, user.id, link_type="supports", context="evidence", strength=0.6
        )
        assert link.id is not None
        assert link.link_type == LinkType.SUPPORTS
        assert link.context == "evidence"
        assert link.strength == 0.6
        assert [out.id for out in relationship_service.get_outgoing_links(a.id, user.id)] == [link.id]
        assert [out.id for out in relationship_service.get_backlinks(b.id, user.id)] == [link.id]
        assert [n.id for n in relationship_service.find_linked_notes(a.id, user.id)] == [b.id]
        assert [n.id for n in relationship_service.find_backlink_notes(b.id, user.id)] == [a.id]

    def test_default_type_is_references(self, relationship_service, make_notes, user):
        a, b = make_notes("A", "B")
        assert relationship_service.link_notes(a.id, b.id, user.id).link_type == LinkType.REFERENCES

    def test_self_link_rejected(self, relationship_service, make_notes, user):
        (a,) = make_notes("A")
        with pytest.raises(LinkError) as exc_info:
            relationship_service.link_notes(a.id, a.id, user.id)
        assert exc_info.value.code == ErrorCode.LINK_SELF_REFERENCE

    def test_invalid_type_and_strength(self, relationship_service, make_notes, user):
        a, b = make_notes("A", "B")
        with pytest.raises(ValidationError) as exc_info:
            relationship_service.link_notes(a.id, b.id, user.id, link_type="likes")
        assert exc_info.value.code == ErrorCode.INVALID_LINK_TYPE
        with pytest.raises(ValidationError) as exc_info:
            relationship_service.link_notes(a.id, b.id, user.id, strength=1.5)
        assert exc_info.value.code == ErrorCode.INVALID_RANGE

    def test_duplicate_rejected(self, relationship_service, make_notes, user):
        a, b = make_notes("A", "B")
        relationship_service.link_notes(a.id, b.id, user.id)
        with pytest.raises(LinkError) as exc_info:
            relationship_service.link_notes(a.id, b.id, user.id, link_type="references")
        assert exc_info.value.code == ErrorCode.LINK_ALREADY_EXISTS
        # Another type between the same notes is fine
        relationship_service.link_notes(a.id, b.id, user.id, link_type="clarifies")

    def test_foreign_notes_cannot_be_linked(
        self, relationship_service, note_service, make_notes, user, other_user
    ):
        (mine,) = make_notes("Mine")
        theirs = note_service.create_note(other_user.id, "Theirs")
        with pytest.raises(NoteAccessDeniedError):
            relationship_service.link_notes(mine.id, theirs.id, user.id)

    def test_bidirectional_creates_inverse(self, relationship_service, make_notes, user):
        a, b = make_notes("Question", "Answer")
        relationship_service.link_notes(a.id, b.id, user.id, link_type="question",
                                        bidirectional=True)
        back = relationship_service.get_outgoing_links(b.id, user.id)
        assert len(back) == 1
        assert back[0].link_type == LinkType.ANSWER
        assert back[0].target_id == a.id

    def test_hierarchical_cycle_rejected(self, relationship_service, make_notes, user):
        a, b, c = make_notes("A", "B", "C")
        relationship_service.link_notes(a.id, b.id, user.id, link_type="prerequisite")
        relationship_service.link_notes(b.id, c.id, user.id, link_type="prerequisite")
        with pytest.raises(LinkError) as exc_info:
            relationship_service.link_notes(c.id, a.id, user.id, link_type="generalizes")
        assert exc_info.value.code == ErrorCode.LINK_CIRCULAR_DEPENDENCY
        # Non-hierarchical links may close the loop
        relationship_service.link_notes(c.id, a.id, user.id, link_type="references")

    def test_builds_on_may_point_both_ways(self, relationship_service, make_notes, user):
        a, b = make_notes("A", "B")
        relationship_service.link_notes(a.id, b.id, user.id, link_type="builds_on")
        back = relationship_service.link_notes(b.id, a.id, user.id, link_type="builds_on")
        assert back.link_type == LinkType.BUILDS_ON
        assert back.target_id == a.id


class TestLinkMaintenance:
    """Tests for removing, updating and traversing links."""

    def test_remove_link(self, relationship_service, make_notes, user):
        a, b = make_notes("A", "B")
        link = relationship_service.link_notes(a.id, b.id, user.id)
        with pytest.raises(LinkNotFoundError):
            relationship_service.remove_link(b.id, link.id, user.id)
        relationship_service.remove_link(a.id, link.id, user.id)
        assert relationship_service.get_outgoing_links(a.id, user.id) == []
        with pytest.raises(LinkNotFoundError):
            relationship_service.remove_link(a.id, link.id, user.id)

    def test_update_link(self, relationship_service, make_notes, user):
        a, b = make_notes("A", "B")
        link = relationship_service.link_notes(a.id, b.id, user.id)
        updated = relationship_service.update_link(
            link.id, user.id, link_type="example", context="see here", strength=0.3
        )
        assert updated.link_type == LinkType.EXAMPLE
        assert updated.context == "see here"
        assert updated.strength == 0.3
        with pytest.raises(ValidationError):
            relationship_service.update_link(link.id, user.id, strength=-0.1)
        with pytest.raises(LinkNotFoundError):
            relationship_service.update_link(9999, user.id, context="x")

    def test_update_link_requires_ownership(
        self, relationship_service, make_notes, user, other_user
    ):
        a, b = make_notes("A", "B")
        link = relationship_service.link_notes(a.id, b.id, user.id)
        with pytest.raises(NoteAccessDeniedError):
            relationship_service.update_link(link.id, other_user.id, context="mine now")

    def test_record_traversal(self, relationship_service, make_notes, user):
        a, b = make_notes("A", "B")
        link = relationship_service.link_notes(a.id, b.id, user.id)
        relationship_service.record_traversal(link.id, user.id)
        traversed = relationship_service.record_traversal(link.id, user.id)
        assert traversed.traversal_count == 2


class TestNavigation:
    """Tests for related notes and shortest paths."""

    def test_find_related_notes(self, relationship_service, make_notes, user):
        a, b, c, d = make_notes("A", "B", "C", "D")
        relationship_service.link_notes(a.id, b.id, user.id)
        relationship_service.link_notes(b.id, c.id, user.id)
        relationship_service.link_notes(d.id, a.id, user.id)

        near = relationship_service.find_related_notes(a.id, user.id, depth=1)
        assert [n.id for n in near] == [d.id, b.id]
        wider = relationship_service.find_related_notes(a.id, user.id, depth=2)
        assert [n.id for n in wider] == [d.id, b.id, c.id]
        assert len(relationship_service.find_related_notes(a.id, user.id, depth=2, limit=1)) == 1

    def test_find_related_notes_bounds(self, relationship_service, make_notes, user):
        (a,) = make_notes("A")
        assert relationship_service.find_related_notes(a.id, user.id) == []
        with pytest.raises(ValidationError):
            relationship_service.find_related_notes(a.id, user.id, depth=6)
        with pytest.raises(ValidationError):
            relationship_service.find_related_notes(a.id, user.id, limit=101)

    def test_find_shortest_path(self, relationship_service, make_notes, user):
        a, b, c = make_notes("A", "B", "C")
        relationship_service.link_notes(a.id, b.id, user.id)
        relationship_service.link_notes(b.id, c.id, user.id)

        assert relationship_service.find_shortest_path(a.id, c.id, user.id) == [a.id, b.id, c.id]
        assert relationship_service.find_shortest_path(c.id, a.id, user.id) == []
        assert relationship_service.find_shortest_path(a.id, a.id, user.id) == [a.id]
        assert relationship_service.find_shortest_path(a.id, c.id, user.id, max_depth=1) == []


class TestSimilarity:
    """Tests for relationship strength and link suggestions."""

    def test_relationship_strength(self, relationship_service, note_service, user):
        a = note_service.create_note(user.id, "A", "<p>python data science</p>", ["py"])
        b = note_service.create_note(user.id, "B", "<p>python data analysis</p>", ["py"])
        # Half the words and all tags are shared
        assert relationship_service.calculate_relationship_strength(
            a.id, b.id, user.id
        ) == pytest.approx(0.35)
        relationship_service.link_notes(a.id, b.id, user.id)
        assert relationship_service.calculate_relationship_strength(
            a.id, b.id, user.id
        ) == pytest.approx(0.85)

    def test_suggest_related_notes(self, relationship_service, note_service, user):
        a = note_service.create_note(user.id, "A", "<p>python data science</p>", ["py"])
        b = note_service.create_note(user.id, "B", "<p>python data analysis</p>", ["py"])
        note_service.create_note(user.id, "C", "<p>gardening tips</p>")

        suggestions = relationship_service.suggest_related_notes(a.id, user.id)
        assert [s.note.id for s in suggestions] == [b.id]
        assert suggestions[0].suggested_type == LinkType.RELATED_TO
        assert suggestions[0].to_dict()["strength"] == pytest.approx(0.35)

        # Linked notes are no longer suggested
        relationship_service.link_notes(a.id, b.id, user.id)
        assert relationship_service.suggest_related_notes(a.id, user.id) == []


class TestGraphAnalysis:
    """Tests for clusters, orphans, hubs and analytics."""

    def test_find_note_clusters(self, relationship_service, make_notes, user):
        a, b, c, d, e, _ = make_notes("A", "B", "C", "D", "E", "Alone")
        relationship_service.link_notes(a.id, b.id, user.id)
        relationship_service.link_notes(b.id, c.id, user.id)
        relationship_service.link_notes(d.id, e.id, user.id)

        clusters = relationship_service.find_note_clusters(user.id)
        assert [cluster.size for cluster in clusters] == [2, 3]
        assert clusters[0].cohesion == 0.5
        assert clusters[1].internal_links == 2
        assert sorted(clusters[1].note_ids) == sorted([a.id, b.id, c.id])
        assert len(relationship_service.find_note_clusters(user.id, min_cluster_size=3)) == 1

    def test_cluster_dominant_tags(self, relationship_service, note_service, user):
        a = note_service.create_note(user.id, "A", tags=["ml", "stats"])
        b = note_service.create_note(user.id, "B", tags=["ml"])
        relationship_service.link_notes(a.id, b.id, user.id)
        (cluster,) = relationship_service.find_note_clusters(user.id)
        assert cluster.dominant_tags[0] == "ml"

    def test_orphans_and_hubs(self, relationship_service, make_notes, user):
        hub, *spokes = make_notes("Hub", "S1", "S2", "S3", "S4", "S5")
        (orphan,) = make_notes("Orphan")
        for spoke in spokes:
            relationship_service.link_notes(spoke.id, hub.id, user.id)

        assert [n.id for n in relationship_service.find_orphaned_notes(user.id)] == [orphan.id]
        hubs = relationship_service.find_hub_notes(user.id)
        assert len(hubs) == 1
        assert hubs[0].note_id == hub.id
        assert hubs[0].title == "Hub"
        assert hubs[0].connection_count == 5

    def test_relationship_analytics(self, relationship_service, make_notes, user):
        a, b, c = make_notes("A", "B", "C")
        relationship_service.link_notes(a.id, b.id, user.id, link_type="supports")
        relationship_service.link_notes(a.id, c.id, user.id)

        analytics = relationship_service.get_relationship_analytics(user.id)
        assert analytics.total_notes == 3
        assert analytics.total_relationships == 2
        assert analytics.avg_relationships_per_note == pytest.approx(0.67)
        assert analytics.top_hubs[0].note_id == a.id
        assert analytics.link_type_distribution == {"REFERENCES": 1, "SUPPORTS": 1}
