# tests/test_note_service.py
"""Tests for the NoteService class."""
import pytest

from realm_pkm.exceptions import (
    ErrorCode,
    NoteAccessDeniedError,
    NoteNotFoundError,
    NoteValidationError,
    TagError,
    ValidationError,
)
from realm_pkm.models.schema import NotePriority, NoteStatus


class TestCreateNote:
    """Tests for creating notes."""

    def test_create_note(self, note_service, user):
        """Test creating a note."""
        note = note_service.create_note(
            user.id,
            title="  Test Note ",
            content="<p>This is a test about #Python</p>",
            tags=["Test", "example"],
            status="published",
            priority="high",
        )
        assert note.id is not None
        assert note.owner_id == user.id
        assert note.title == "Test Note"
        assert note.tags == ["test", "example", "python"]
        assert note.status == NoteStatus.PUBLISHED
        assert note.priority == NotePriority.HIGH
        assert note.word_count == 6

    def test_create_note_strips_scripts(self, note_service, user):
        note = note_service.create_note(
            user.id, "Safe", "<p>ok</p><script>alert(1)</script>"
        )
        assert note.content == "<p>ok</p>"

    def test_create_note_keeps_tag_order(self, note_service, user):
        note = note_service.create_note(user.id, "Ordered", tags=["zeta", "alpha", "Zeta"])
        assert note.tags == ["zeta", "alpha"]
        assert note_service.get_note(note.id, user.id).tags == ["zeta", "alpha"]

    def test_create_note_validation(self, note_service, user):
        """Blank titles, long titles and bad enum values are rejected."""
        with pytest.raises(NoteValidationError) as exc_info:
            note_service.create_note(user.id, "   ")
        assert exc_info.value.code == ErrorCode.NOTE_TITLE_REQUIRED

        with pytest.raises(NoteValidationError) as exc_info:
            note_service.create_note(user.id, "x" * 201)
        assert exc_info.value.code == ErrorCode.NOTE_TITLE_TOO_LONG

        with pytest.raises(NoteValidationError) as exc_info:
            note_service.create_note(user.id, "Big", "x" * 100_001)
        assert exc_info.value.code == ErrorCode.NOTE_CONTENT_TOO_LONG

        with pytest.raises(ValidationError) as exc_info:
            note_service.create_note(user.id, "Bad", status="deleted")
        assert exc_info.value.code == ErrorCode.INVALID_STATUS


class TestReadAndOwnership:
    """Tests for reading notes and access control."""

    def test_get_note_records_access(self, note_service, user):
        note = note_service.create_note(user.id, "Read me")
        loaded = note_service.get_note(note.id, user.id)
        assert loaded.last_accessed_at is not None
        assert note_service.repository.get(note.id).last_accessed_at is not None

    def test_missing_note(self, note_service, user):
        with pytest.raises(NoteNotFoundError):
            note_service.get_note("nonexistent", user.id)

    def test_foreign_note_is_denied(self, note_service, user, other_user):
        note = note_service.create_note(user.id, "Private")
        with pytest.raises(NoteAccessDeniedError):
            note_service.get_note(note.id, other_user.id)
        with pytest.raises(NoteAccessDeniedError):
            note_service.update_note(note.id, other_user.id, title="Stolen")
        with pytest.raises(NoteAccessDeniedError):
            note_service.delete_note(note.id, other_user.id)

    def test_list_and_batch_fetch(self, note_service, user, other_user):
        first = note_service.create_note(user.id, "First")
        second = note_service.create_note(user.id, "Second")
        foreign = note_service.create_note(other_user.id, "Foreign")

        assert [n.id for n in note_service.list_notes(user.id)] == [second.id, first.id]
        assert note_service.count_notes(user.id) == 2
        fetched = note_service.get_notes_by_ids([first.id, foreign.id], user.id)
        assert [n.id for n in fetched] == [first.id]
        with pytest.raises(ValidationError):
            note_service.list_notes(user.id, offset=-1)


class TestUpdateNote:
    """Tests for updating notes and version snapshots."""

    def test_update_note(self, note_service, user):
        note = note_service.create_note(user.id, "Original", "<p>old text</p>", ["a"])
        updated = note_service.update_note(
            note.id, user.id, title="Updated", content="<p>new longer text</p>",
            tags=["b"], summary="Short", category=" Work ",
        )
        assert updated.title == "Updated"
        assert updated.content == "<p>new longer text</p>"
        assert updated.tags == ["b"]
        assert updated.summary == "Short"
        assert updated.category == "Work"
        assert updated.word_count == 3

    def test_blank_title_is_ignored(self, note_service, user):
        note = note_service.create_note(user.id, "Keep me")
        updated = note_service.update_note(note.id, user.id, title="   ", summary="s")
        assert updated.title == "Keep me"

    def test_update_snapshots_previous_state(self, note_service, user):
        note = note_service.create_note(user.id, "V1", "<p>first</p>")
        note_service.update_note(note.id, user.id, content="<p>second</p>",
                                 change_description="edit")

        history = note_service.get_note_history(note.id, user.id)
        assert len(history) == 1
        assert history[0].version_number == 1
        assert history[0].content == "<p>first</p>"
        assert history[0].change_description == "edit"

    def test_summary_only_change_is_not_versioned(self, note_service, user):
        note = note_service.create_note(user.id, "Stable", "<p>body</p>")
        note_service.update_note(note.id, user.id, summary="new summary")
        assert note_service.get_note_history(note.id, user.id) == []

    def test_restore_version(self, note_service, user):
        note = note_service.create_note(user.id, "Draft one", "<p>alpha</p>", ["x"])
        note_service.update_note(note.id, user.id, title="Draft two",
                                 content="<p>beta</p>", tags=["y"])

        restored = note_service.restore_version(note.id, user.id, 1)
        assert restored.title == "Draft one"
        assert restored.content == "<p>alpha</p>"
        assert restored.tags == ["x"]

        # The state before the restore became version 2
        history = note_service.get_note_history(note.id, user.id)
        assert [v.version_number for v in history] == [2, 1]
        assert history[0].title == "Draft two"

    def test_restore_missing_version(self, note_service, user):
        note = note_service.create_note(user.id, "No history")
        with pytest.raises(NoteValidationError) as exc_info:
            note_service.restore_version(note.id, user.id, 3)
        assert exc_info.value.code == ErrorCode.NOTE_VERSION_NOT_FOUND

    def test_history_limit_bounds(self, note_service, user):
        note = note_service.create_note(user.id, "Bounds")
        with pytest.raises(ValidationError):
            note_service.get_note_history(note.id, user.id, limit=0)
        with pytest.raises(ValidationError):
            note_service.get_note_history(note.id, user.id, limit=101)


class TestDeleteNote:
    """Tests for deleting notes."""

    def test_delete_note(self, note_service, user):
        note = note_service.create_note(user.id, "Doomed")
        note_service.delete_note(note.id, user.id)
        with pytest.raises(NoteNotFoundError):
            note_service.get_note(note.id, user.id)


class TestFindersAndFlags:
    """Tests for finders, favorites, status and priority."""

    def test_toggle_favorite(self, note_service, user):
        note = note_service.create_note(user.id, "Fav")
        assert note_service.toggle_favorite(note.id, user.id).is_favorite
        assert [n.id for n in note_service.find_favorites(user.id)] == [note.id]
        assert not note_service.toggle_favorite(note.id, user.id).is_favorite

    def test_update_status_and_priority(self, note_service, user):
        note = note_service.create_note(user.id, "Flags")
        assert note_service.update_status(note.id, user.id, "ARCHIVED").status == NoteStatus.ARCHIVED
        assert note_service.update_priority(note.id, user.id, "urgent").priority == NotePriority.URGENT
        assert [n.id for n in note_service.find_by_status(user.id, "archived")] == [note.id]
        with pytest.raises(ValidationError) as exc_info:
            note_service.update_priority(note.id, user.id, "meh")
        assert exc_info.value.code == ErrorCode.INVALID_PRIORITY

    def test_find_recently_updated(self, note_service, user):
        note = note_service.create_note(user.id, "Fresh")
        assert [n.id for n in note_service.find_recently_updated(user.id, 1)] == [note.id]
        with pytest.raises(ValidationError):
            note_service.find_recently_updated(user.id, 0)
        with pytest.raises(ValidationError):
            note_service.find_recently_updated(user.id, 366)

    def test_search_notes_is_scoped(self, note_service, user, other_user):
        note_service.create_note(user.id, "Shared words")
        note_service.create_note(other_user.id, "Shared words too")
        assert len(note_service.search_notes(user.id, content="shared")) == 1


class TestTags:
    """Tests for tag management."""

    def test_add_and_remove_tag(self, note_service, user):
        note = note_service.create_note(user.id, "Tagged", tags=["one"])
        assert note_service.add_tag(note.id, user.id, "Two").tags == ["one", "two"]
        assert note_service.add_tag(note.id, user.id, "two").tags == ["one", "two"]
        assert note_service.remove_tag(note.id, user.id, "one").tags == ["two"]
        assert [n.id for n in note_service.find_by_tag(user.id, "TWO")] == [note.id]
        assert note_service.find_by_tag(user.id, " ") == []
        with pytest.raises(TagError):
            note_service.add_tag(note.id, user.id, "  ")

    def test_tag_listing_and_rename(self, note_service, user, other_user):
        note_service.create_note(user.id, "A", tags=["ml", "ai"])
        note_service.create_note(user.id, "B", tags=["ml"])
        note_service.create_note(other_user.id, "C", tags=["secret"])

        assert note_service.get_all_tags(user.id) == ["ai", "ml"]
        assert note_service.get_tags_with_counts(user.id) == {"ml": 2, "ai": 1}
        assert note_service.rename_tag(user.id, "ml", "machine-learning") == 2
        assert note_service.get_all_tags(user.id) == ["ai", "machine-learning"]
        with pytest.raises(TagError):
            note_service.rename_tag(user.id, "ai", " ")


class TestStatisticsAndAnalysis:
    """Tests for statistics, summaries and content analysis."""

    def test_statistics(self, note_service, user):
        note_service.create_note(user.id, "One", "<p>a b</p>", is_favorite=True)
        note_service.create_note(user.id, "Two", "<p>c</p>", status="published")
        stats = note_service.get_note_statistics(user.id)
        assert stats.total_notes == 2
        assert stats.favorite_notes == 1
        assert stats.published_notes == 1
        assert stats.total_words == 3

    def test_generate_summary(self, note_service, user):
        note = note_service.create_note(user.id, "Sum", "<p>First sentence. Second one.</p>")
        updated = note_service.generate_summary(note.id, user.id)
        assert updated.summary == "First sentence. Second one."

    def test_analyze_note(self, note_service, user):
        note = note_service.create_note(
            user.id, "Analyzed", "<h1>Head</h1><p>Some text here. #idea</p>", ["x"]
        )
        analysis = note_service.analyze_note(note.id, user.id)
        assert analysis["note_id"] == note.id
        assert analysis["heading_count"] == 1
        assert analysis["hashtags"] == ["idea"]
        assert 0.0 < analysis["quality_score"] <= 1.0
