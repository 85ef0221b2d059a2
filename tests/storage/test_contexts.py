"""Tests for the saved-context store: identity, autosave, snapshots, cleanup,
import/export."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from storyloom.history import ConversationHistory
from storyloom.models import ModelConfig, SavedStoryContext
from storyloom.storage import (
    AUTOSAVE_PREFIX,
    CONTEXTS_KEY,
    IMPORTED_PREFIX,
    ContextImportError,
    ContextStore,
    FileBlobStore,
    LegacyId,
    PrimaryId,
    SnapshotId,
    SnapshotImmutableError,
    StorageError,
    VersionMismatchError,
    extract_genre,
    make_thumbnail,
    parse_context_id,
    story_title,
)

CONFIG = ModelConfig(model="gpt-4o")


def _history() -> ConversationHistory:
    history = ConversationHistory()
    history.append("system", "rules")
    history.append("user", "begin")
    return history


def _raw(store: ContextStore) -> dict:
    return store._read_raw()


def _put(store: ContextStore, context_id: str, state, *, is_auto_save=False, save_time=None):
    """Write a record directly, bypassing save() so legacy ids can be planted."""
    when = save_time or datetime(2026, 1, 1, tzinfo=timezone.utc)
    record = SavedStoryContext(
        id=context_id,
        title=context_id,
        story_state=state,
        save_time=when,
        last_play_time=when,
        version=1,
        is_auto_save=is_auto_save,
    )
    data = _raw(store)
    data[context_id] = record.dump()
    store._write_raw(data)


# ---------------------------------------------------------------------------
# Ids and metadata
# ---------------------------------------------------------------------------

class TestContextIds:
    def test_parse(self) -> None:
        assert parse_context_id("story_s1") == PrimaryId("s1")
        assert parse_context_id("snap_abc") == SnapshotId("abc")
        assert parse_context_id("auto_s1") == LegacyId("auto_s1")
        assert parse_context_id("story_") == LegacyId("story_")

    def test_new_snapshot_ids_are_unique(self) -> None:
        assert SnapshotId.new() != SnapshotId.new()


def test_extract_genre_from_scene(state_factory):
    assert extract_genre(state_factory(genre=None, current_scene="A robot waits.")) == "sci-fi"
    assert extract_genre(state_factory(genre=None, current_scene="Quiet.")) == "adventure"


def test_make_thumbnail(state_factory):
    assert make_thumbnail(state_factory(current_scene="x" * 150)) == "x" * 100 + "..."


def test_story_title(state):
    now = datetime(2026, 3, 4, tzinfo=timezone.utc)
    assert story_title(state, now) == "Aren Vale's fantasy adventure - Chapter 3 (2026-03-04)"


# ---------------------------------------------------------------------------
# Save identity
# ---------------------------------------------------------------------------

class TestSave:
    def test_default_id_is_primary(self, store, state) -> None:
        assert store.save(state, _history(), CONFIG) == "story_s1"

    def test_repeated_saves_keep_one_record(self, store, state_factory) -> None:
        for chapter in range(1, 6):
            store.save(state_factory(chapter=chapter), _history(), CONFIG)
        assert list(_raw(store)) == ["story_s1"]
        assert store.load("story_s1").story_state.chapter == 5

    def test_derived_fields(self, store, state) -> None:
        store.save(state, _history(), CONFIG, title="Mine")
        record = store.load("story_s1")
        assert record.title == "Mine"
        assert record.play_time == 900
        assert record.genre == "fantasy"
        assert record.version == 1
        assert record.ai_config.model == "gpt-4o"
        assert [m.content for m in record.conversation_history] == ["rules", "begin"]

    def test_foreign_primary_rejected(self, store, state) -> None:
        with pytest.raises(ValueError):
            store.save(state, None, CONFIG, context_id=PrimaryId("other"))

    def test_written_with_model_config_key(self, store, state, tmp_path) -> None:
        store.save(state, None, CONFIG)
        on_disk = json.loads((tmp_path / CONTEXTS_KEY).read_text())
        assert on_disk["story_s1"]["model_config"]["model"] == "gpt-4o"


class TestAutoSave:
    def test_creates_autosave(self, store, state) -> None:
        assert store.auto_save(state, _history(), CONFIG) == "story_s1"
        record = store.load("story_s1")
        assert record.is_auto_save
        assert record.title.startswith(AUTOSAVE_PREFIX)

    def test_manual_save_stays_manual(self, store, state_factory) -> None:
        store.save_progress(state_factory(), None, CONFIG, title="My save")
        store.auto_save(state_factory(chapter=4), None, CONFIG)

        record = store.load("story_s1")
        assert not record.is_auto_save
        assert record.title == "My save"
        assert record.story_state.chapter == 4

    def test_twice_over_manual_save(self, store, state) -> None:
        store.save_progress(state, None, CONFIG, title="My save")
        store.auto_save(state, None, CONFIG)
        first = _raw(store)["story_s1"]["last_play_time"]
        store.auto_save(state, None, CONFIG)

        data = _raw(store)
        assert list(data) == ["story_s1"]
        assert data["story_s1"]["title"] == "My save"
        assert data["story_s1"]["is_auto_save"] is False
        assert data["story_s1"]["last_play_time"] >= first

    def test_auto_then_manual_leaves_one_manual_record(self, store, state) -> None:
        store.auto_save(state, None, CONFIG)
        store.save_progress(state, None, CONFIG)
        data = _raw(store)
        assert list(data) == ["story_s1"]
        assert data["story_s1"]["is_auto_save"] is False

    def test_failure_returns_none(self, store, state, monkeypatch) -> None:
        def broken(*args, **kwargs):
            raise StorageError("disk full")

        monkeypatch.setattr(store, "_write_raw", broken)
        assert store.auto_save(state, None, CONFIG) is None


class TestSnapshots:
    def test_snapshot_is_a_separate_record(self, store, state) -> None:
        store.save_progress(state, None, CONFIG)
        snap = store.save_progress(state, None, CONFIG, create_snapshot=True)
        assert snap.startswith("snap_")
        assert set(_raw(store)) == {"story_s1", snap}

    def test_snapshot_never_overwritten(self, store, state) -> None:
        snap = SnapshotId.new()
        store.save(state, None, CONFIG, context_id=snap)
        with pytest.raises(SnapshotImmutableError):
            store.save(state, None, CONFIG, context_id=snap)

    def test_autosave_leaves_snapshot_alone(self, store, state_factory) -> None:
        snap = store.save_progress(state_factory(), None, CONFIG, create_snapshot=True)
        store.auto_save(state_factory(chapter=9), None, CONFIG)
        assert store.load(snap).story_state.chapter == 3


# ---------------------------------------------------------------------------
# Load / list / edit
# ---------------------------------------------------------------------------

class TestLoad:
    def test_missing_returns_none(self, store) -> None:
        assert store.load("story_nope") is None

    def test_touches_last_play_time(self, store, state) -> None:
        _put(store, "story_s1", state)
        record = store.load("story_s1")
        assert record.last_play_time > datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_snapshot_is_not_rewritten(self, store, state) -> None:
        _put(store, "snap_abc", state)
        before = _raw(store)["snap_abc"]
        record = store.load("snap_abc")
        assert record.last_play_time == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert _raw(store)["snap_abc"] == before

    def test_version_mismatch(self, store, state) -> None:
        _put(store, "story_s1", state)
        data = _raw(store)
        data["story_s1"]["version"] = 2
        store._write_raw(data)
        with pytest.raises(VersionMismatchError):
            store.load("story_s1")

    def test_corrupt_blob(self, tmp_path, state) -> None:
        (tmp_path / CONTEXTS_KEY).write_text("{not json")
        store = ContextStore(FileBlobStore(tmp_path))
        with pytest.raises(StorageError):
            store.load("story_s1")


class TestList:
    def test_most_recent_first(self, store, state_factory) -> None:
        store.save(state_factory(story_id="a"), None, CONFIG)
        store.save(state_factory(story_id="b"), None, CONFIG)
        store.load("story_a")
        assert [c.id for c in store.list_contexts()] == ["story_a", "story_b"]

    def test_invalid_records_skipped(self, store, state) -> None:
        store.save(state, None, CONFIG)
        data = _raw(store)
        data["broken"] = {"id": "broken"}
        store._write_raw(data)
        assert list(store.get_saved_contexts()) == ["story_s1"]


def test_rename_and_delete(store, state):
    store.save(state, None, CONFIG)
    assert store.rename("story_s1", "New title").title == "New title"
    assert store.rename("missing", "x") is None
    assert store.delete("story_s1")
    assert not store.delete("story_s1")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

def test_prune_auto_saves(store, state_factory):
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for i in range(5):
        _put(store, f"auto_{i}", state_factory(story_id=str(i)),
             is_auto_save=True, save_time=base + timedelta(hours=i))
    assert store.prune_auto_saves(keep=3) == 2
    assert set(_raw(store)) == {"auto_2", "auto_3", "auto_4"}
    assert store.prune_auto_saves(keep=3) == 0


class TestCleanupDuplicates:
    def test_legacy_autosave_migrates_to_primary(self, store, state) -> None:
        _put(store, "auto_s1", state, is_auto_save=True)
        assert store.cleanup_duplicates() == 1
        data = _raw(store)
        assert list(data) == ["story_s1"]
        assert data["story_s1"]["id"] == "story_s1"

    def test_legacy_autosave_dropped_when_primary_exists(self, store, state) -> None:
        store.save(state, None, CONFIG)
        _put(store, "auto_s1", state, is_auto_save=True)
        assert store.cleanup_duplicates() == 1
        assert list(_raw(store)) == ["story_s1"]

    def test_stray_autosaves_dropped(self, store, state) -> None:
        store.save(state, None, CONFIG)
        _put(store, "ctx_old", state, is_auto_save=True)
        _put(store, "ctx_manual", state)
        store.cleanup_duplicates()
        assert set(_raw(store)) == {"story_s1", "ctx_manual"}

    def test_newest_manual_promoted(self, store, state) -> None:
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        _put(store, "ctx_1", state, save_time=base)
        _put(store, "ctx_2", state, save_time=base + timedelta(days=1))
        assert store.cleanup_duplicates() == 1
        assert set(_raw(store)) == {"ctx_1", "story_s1"}
        assert _raw(store)["story_s1"]["title"] == "ctx_2"

    def test_snapshots_never_promoted(self, store, state) -> None:
        store.save(state, None, CONFIG, context_id=SnapshotId("keep"))
        assert store.cleanup_duplicates() == 0
        assert list(_raw(store)) == ["snap_keep"]

    def test_idempotent(self, store, state_factory) -> None:
        a, b = state_factory(story_id="a"), state_factory(story_id="b")
        _put(store, "auto_a", a, is_auto_save=True)
        _put(store, "ctx_b1", b)
        _put(store, "ctx_b2", b, is_auto_save=True)
        assert store.cleanup_duplicates() > 0
        snapshot = _raw(store)
        assert store.cleanup_duplicates() == 0
        assert _raw(store) == snapshot


# ---------------------------------------------------------------------------
# Import / export
# ---------------------------------------------------------------------------

class TestImportExport:
    def test_export_then_import(self, store, state) -> None:
        store.save(state, _history(), CONFIG, title="Tale")
        exported = store.export("story_s1")
        assert json.loads(exported)["id"] == "story_s1"

        new_id = store.import_context(exported)
        assert new_id.startswith("snap_")
        record = store.load(new_id)
        assert record.title == IMPORTED_PREFIX + "Tale"
        assert not record.is_auto_save
        assert record.story_state == state

    def test_import_never_overwrites(self, store, state) -> None:
        store.save(state, None, CONFIG, title="Original")
        store.import_context(store.export("story_s1"))
        assert store.load("story_s1").title == "Original"

    def test_export_missing(self, store) -> None:
        assert store.export("story_nope") is None

    @pytest.mark.parametrize("payload", ["not json", "[1, 2]", '{"version": 1}'])
    def test_import_rejects_bad_payload(self, store, payload) -> None:
        with pytest.raises(ContextImportError):
            store.import_context(payload)

    def test_import_rejects_other_version(self, store, state) -> None:
        store.save(state, None, CONFIG)
        data = json.loads(store.export("story_s1"))
        data["version"] = 99
        with pytest.raises(ContextImportError, match="version"):
            store.import_context(json.dumps(data))
