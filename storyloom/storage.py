"""Saved story contexts, persisted as one JSON blob.

The whole collection lives under a single key ("saved-contexts.json") as a
map of id -> SavedStoryContext. Every write is a full read-modify-write of
that map; the last writer wins.

Id space:

    story_<story_id>    PrimaryId   the one canonical save of a story
    snap_<hex>          SnapshotId  explicit "keep this moment" copies,
                                    never overwritten once written
    auto_<story_id>     legacy autosave ids   } only ever read, and
    ctx_<...>           legacy manual ids     } folded away by cleanup_duplicates()

save()/auto_save() only ever write a PrimaryId for the state's own story, so
they cannot introduce a second primary record.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, Union

from pydantic import TypeAdapter, ValidationError

from storyloom.history import ConversationHistory
from storyloom.models import ModelConfig, SavedStoryContext, StoryState, SummaryState, utcnow

logger = logging.getLogger(__name__)

CONTEXT_VERSION = 1
CONTEXTS_KEY = "saved-contexts.json"
THUMBNAIL_LENGTH = 100
SECONDS_PER_CHAPTER = 5 * 60

AUTOSAVE_PREFIX = "[autosave] "
SNAPSHOT_PREFIX = "[snapshot] "
IMPORTED_PREFIX = "[imported] "

_datetime = TypeAdapter(datetime)


def _aware(value: datetime) -> datetime:
    """Legacy records may carry naive timestamps; treat them as UTC."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class StorageError(RuntimeError):
    """The context blob could not be read or written."""


class VersionMismatchError(StorageError):
    """A saved record was written by an incompatible schema version."""


class SnapshotImmutableError(StorageError):
    """An existing snapshot was about to be overwritten."""


class ContextImportError(ValueError):
    """An import payload is not a valid saved context."""


# ---------------------------------------------------------------------------
# Context ids
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PrimaryId:
    story_id: str

    @property
    def key(self) -> str:
        return f"story_{self.story_id}"


@dataclass(frozen=True)
class SnapshotId:
    token: str

    @classmethod
    def new(cls) -> SnapshotId:
        return cls(uuid.uuid4().hex)

    @property
    def key(self) -> str:
        return f"snap_{self.token}"


@dataclass(frozen=True)
class LegacyId:
    raw: str

    @property
    def key(self) -> str:
        return self.raw


ContextId = Union[PrimaryId, SnapshotId]


def parse_context_id(key: str) -> PrimaryId | SnapshotId | LegacyId:
    if key.startswith("story_") and len(key) > len("story_"):
        return PrimaryId(key[len("story_"):])
    if key.startswith("snap_") and len(key) > len("snap_"):
        return SnapshotId(key[len("snap_"):])
    return LegacyId(key)


# ---------------------------------------------------------------------------
# Blob backend
# ---------------------------------------------------------------------------

class BlobStore(Protocol):
    def read(self, key: str) -> str | None: ...

    def write(self, key: str, data: str) -> None: ...


class FileBlobStore:
    """One file per key under base_path."""

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._base / key

    def read(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

    def write(self, key: str, data: str) -> None:
        path = self._path(key)
        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_text(data, encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e


# ---------------------------------------------------------------------------
# Derived metadata
# ---------------------------------------------------------------------------

_GENRE_CUES = (
    ("fantasy", ("magic", "dragon", "spell", "enchant")),
    ("sci-fi", ("future", "planet", "starship", "robot", "hologram")),
    ("martial arts", ("martial", "sect", "kung fu")),
    ("mystery", ("mystery", "clue", "detective", "riddle")),
)


def extract_genre(state: StoryState) -> str:
    if state.genre:
        return state.genre
    scene = state.current_scene.lower()
    for genre, cues in _GENRE_CUES:
        if any(cue in scene for cue in cues):
            return genre
    return "adventure"


def make_thumbnail(state: StoryState) -> str:
    scene = state.current_scene
    if len(scene) > THUMBNAIL_LENGTH:
        return scene[:THUMBNAIL_LENGTH] + "..."
    return scene


def play_time(chapter: int) -> int:
    """Estimated seconds of play, five minutes per chapter."""
    return chapter * SECONDS_PER_CHAPTER


def story_title(state: StoryState, now: datetime | None = None) -> str:
    genre = extract_genre(state)
    date = (now or utcnow()).strftime("%Y-%m-%d")
    if state.characters:
        return f"{state.characters[0].name}'s {genre} adventure - Chapter {state.chapter} ({date})"
    return f"A {genre} story - Chapter {state.chapter} ({date})"


def _history_messages(history: ConversationHistory | list | None) -> list:
    if history is None:
        return []
    if isinstance(history, ConversationHistory):
        return history.messages
    return list(history)


# ---------------------------------------------------------------------------
# ContextStore
# ---------------------------------------------------------------------------

class ContextStore:
    def __init__(self, blob: BlobStore, key: str = CONTEXTS_KEY) -> None:
        self._blob = blob
        self._key = key

    # ── Blob I/O ──

    def _read_raw(self) -> dict[str, dict[str, Any]]:
        text = self._blob.read(self._key)
        if not text:
            return {}
        try:
            data = json.loads(text)
        except ValueError as e:
            raise StorageError(f"Saved contexts are corrupt: {e}") from e
        if not isinstance(data, dict):
            raise StorageError("Saved contexts must be a JSON object")
        return data

    def _write_raw(self, data: dict[str, dict[str, Any]]) -> None:
        try:
            text = json.dumps(data, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cannot serialise saved contexts: {e}") from e
        self._blob.write(self._key, text)

    @staticmethod
    def _validate(context_id: str, raw: dict[str, Any]) -> SavedStoryContext:
        try:
            return SavedStoryContext.model_validate(raw)
        except ValidationError as e:
            raise StorageError(f"Saved context {context_id} is invalid: {e}") from e

    # ── Save ──

    def save(
        self,
        state: StoryState,
        history: ConversationHistory | list | None,
        config: ModelConfig,
        *,
        title: str | None = None,
        is_auto_save: bool = False,
        context_id: ContextId | None = None,
        summary_state: SummaryState | None = None,
    ) -> str:
        """Write a full record and return its id (the primary id by default)."""
        target = context_id or PrimaryId(state.story_id)
        if isinstance(target, PrimaryId) and target.story_id != state.story_id:
            raise ValueError(
                f"Primary id {target.key} does not belong to story {state.story_id}"
            )
        contexts = self._read_raw()
        if isinstance(target, SnapshotId) and target.key in contexts:
            raise SnapshotImmutableError(f"Snapshot {target.key} already exists")

        now = utcnow()
        record = SavedStoryContext(
            id=target.key,
            title=title or story_title(state, now),
            story_state=state,
            conversation_history=_history_messages(history),
            ai_config=config,
            save_time=now,
            last_play_time=now,
            version=CONTEXT_VERSION,
            is_auto_save=is_auto_save,
            play_time=play_time(state.chapter),
            thumbnail=make_thumbnail(state),
            genre=extract_genre(state),
            summary_state=summary_state,
        )
        contexts[target.key] = record.dump()
        self._write_raw(contexts)
        logger.info("Saved context %s (%s)", target.key, "auto" if is_auto_save else "manual")
        return target.key

    def auto_save(
        self,
        state: StoryState,
        history: ConversationHistory | list | None,
        config: ModelConfig,
        summary_state: SummaryState | None = None,
    ) -> str | None:
        """Update the primary save. A manual save there keeps its title and status.

        Returns None when the write failed; the failure is logged.
        """
        primary = PrimaryId(state.story_id)
        try:
            existing = self._read_raw().get(primary.key)
            if existing is not None and not existing.get("is_auto_save", False):
                title = existing.get("title") or story_title(state)
                is_auto_save = False
            else:
                title = AUTOSAVE_PREFIX + story_title(state)
                is_auto_save = True
            return self.save(
                state, history, config,
                title=title, is_auto_save=is_auto_save,
                context_id=primary, summary_state=summary_state,
            )
        except StorageError as e:
            logger.error("Autosave of story %s failed: %s", state.story_id, e)
            return None

    def save_progress(
        self,
        state: StoryState,
        history: ConversationHistory | list | None,
        config: ModelConfig,
        *,
        title: str | None = None,
        create_snapshot: bool = False,
        summary_state: SummaryState | None = None,
    ) -> str:
        """Manual save: upgrade the primary save, or write a new snapshot."""
        if create_snapshot:
            return self.save(
                state, history, config,
                title=title or SNAPSHOT_PREFIX + story_title(state),
                context_id=SnapshotId.new(), summary_state=summary_state,
            )
        return self.save(
            state, history, config,
            title=title, context_id=PrimaryId(state.story_id),
            summary_state=summary_state,
        )

    # ── Read ──

    def load(self, context_id: str) -> SavedStoryContext | None:
        """Return the record, or None when missing.

        Loading touches last_play_time on every record except snapshots,
        which are stored exactly as taken.
        """
        contexts = self._read_raw()
        raw = contexts.get(context_id)
        if raw is None:
            logger.warning("Saved context %s not found", context_id)
            return None
        version = raw.get("version")
        if version != CONTEXT_VERSION:
            raise VersionMismatchError(
                f"Saved context {context_id} has version {version}, expected {CONTEXT_VERSION}"
            )
        record = self._validate(context_id, raw)
        if isinstance(parse_context_id(context_id), SnapshotId):
            return record
        record.last_play_time = utcnow()
        contexts[context_id] = record.dump()
        self._write_raw(contexts)
        return record

    def get_saved_contexts(self) -> dict[str, SavedStoryContext]:
        """Every record that validates; unreadable records are skipped with a warning."""
        result = {}
        for context_id, raw in self._read_raw().items():
            try:
                result[context_id] = SavedStoryContext.model_validate(raw)
            except ValidationError as e:
                logger.warning("Skipping invalid saved context %s: %s", context_id, e)
        return result

    def list_contexts(self) -> list[SavedStoryContext]:
        """All records, most recently played first."""
        return sorted(
            self.get_saved_contexts().values(),
            key=lambda c: _aware(c.last_play_time),
            reverse=True,
        )

    # ── Edit ──

    def delete(self, context_id: str) -> bool:
        contexts = self._read_raw()
        if context_id not in contexts:
            return False
        del contexts[context_id]
        self._write_raw(contexts)
        logger.info("Deleted context %s", context_id)
        return True

    def rename(self, context_id: str, title: str) -> SavedStoryContext | None:
        contexts = self._read_raw()
        raw = contexts.get(context_id)
        if raw is None:
            return None
        record = self._validate(context_id, raw)
        record.title = title
        contexts[context_id] = record.dump()
        self._write_raw(contexts)
        return record

    # ── Maintenance ──

    def prune_auto_saves(self, keep: int = 3) -> int:
        """Delete all but the `keep` newest autosaves. Returns the number deleted."""
        contexts = self._read_raw()
        autos = sorted(
            (cid for cid, raw in contexts.items() if raw.get("is_auto_save")),
            key=lambda cid: self._save_time(contexts[cid]),
            reverse=True,
        )
        stale = autos[keep:]
        if not stale:
            return 0
        for cid in stale:
            del contexts[cid]
        self._write_raw(contexts)
        logger.info("Pruned %d old autosaves", len(stale))
        return len(stale)

    @staticmethod
    def _save_time(raw: dict[str, Any]) -> datetime:
        try:
            return _aware(_datetime.validate_python(raw.get("save_time")))
        except ValidationError:
            return datetime.min.replace(tzinfo=timezone.utc)

    def cleanup_duplicates(self) -> int:
        """Fold legacy and duplicate records into one primary save per story.

        Per story:
          - legacy autosave and no primary: move it to the primary id
          - legacy autosave and a primary: drop the legacy autosave
          - any other autosave that is not the primary: drop it
          - no primary and no legacy autosave: promote the newest manual
            save (snapshots excluded) to the primary id

        Returns the number of changes; running it again returns 0.
        """
        contexts = self._read_raw()
        groups: dict[str, list[str]] = {}
        for cid, raw in contexts.items():
            story_id = (raw.get("story_state") or {}).get("story_id")
            if story_id:
                groups.setdefault(story_id, []).append(cid)

        changes = 0
        for story_id, ids in groups.items():
            primary = PrimaryId(story_id).key
            legacy_auto = f"auto_{story_id}"
            has_primary = primary in ids
            has_legacy = legacy_auto in ids

            if has_legacy and not has_primary:
                contexts[primary] = {**contexts.pop(legacy_auto), "id": primary}
                logger.info("Migrated %s to %s", legacy_auto, primary)
                has_primary = True
                changes += 1
            elif has_legacy:
                del contexts[legacy_auto]
                logger.info("Dropped legacy autosave %s", legacy_auto)
                changes += 1

            for cid in ids:
                if cid in (primary, legacy_auto) or cid not in contexts:
                    continue
                if contexts[cid].get("is_auto_save"):
                    del contexts[cid]
                    logger.info("Dropped duplicate autosave %s", cid)
                    changes += 1

            if not has_primary and not has_legacy:
                manual = [
                    cid for cid in ids
                    if cid in contexts
                    and not isinstance(parse_context_id(cid), SnapshotId)
                    and not contexts[cid].get("is_auto_save")
                ]
                if manual:
                    newest = max(manual, key=lambda cid: self._save_time(contexts[cid]))
                    contexts[primary] = {**contexts.pop(newest), "id": primary}
                    logger.info("Promoted manual save %s to %s", newest, primary)
                    changes += 1

        if changes:
            self._write_raw(contexts)
        logger.info("Duplicate cleanup finished with %d changes", changes)
        return changes

    # ── Import / export ──

    def export(self, context_id: str) -> str | None:
        record = self.load(context_id)
        if record is None:
            return None
        return json.dumps(record.dump(), indent=2, ensure_ascii=False)

    def import_context(self, data: str | bytes) -> str:
        """Store an exported record under a fresh snapshot id and return it."""
        try:
            raw = json.loads(data)
        except ValueError as e:
            raise ContextImportError(f"Import is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise ContextImportError("Import must be a JSON object")
        if raw.get("version") != CONTEXT_VERSION:
            raise ContextImportError(
                f"Import has version {raw.get('version')}, expected {CONTEXT_VERSION}"
            )
        try:
            record = SavedStoryContext.model_validate(raw)
        except ValidationError as e:
            raise ContextImportError(f"Import is not a saved story context: {e}") from e

        new_id = SnapshotId.new().key
        record.id = new_id
        record.title = IMPORTED_PREFIX + record.title
        record.is_auto_save = False
        contexts = self._read_raw()
        contexts[new_id] = record.dump()
        self._write_raw(contexts)
        logger.info("Imported context as %s", new_id)
        return new_id
