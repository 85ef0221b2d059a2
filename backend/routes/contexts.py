"""Saved story context endpoints: CRUD, autosave, snapshots, import/export, cleanup."""

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from backend import stores
from storyloom.storage import ContextImportError, SnapshotImmutableError, VersionMismatchError

from .models import RenameContext, SaveContextBody

router = APIRouter(prefix="/contexts")


@router.get("")
async def list_contexts():
    """All saved contexts, most recently played first."""
    return [c.dump() for c in stores.contexts().list_contexts()]


@router.post("")
async def save_context(body: SaveContextBody):
    """Save to the story's primary record."""
    context_id = stores.contexts().save(
        body.state, body.history, body.ai_config,
        title=body.title, is_auto_save=body.is_auto_save,
        summary_state=body.summary_state,
    )
    return {"id": context_id}


@router.post("/autosave")
async def autosave(body: SaveContextBody):
    """Autosave; a manual save at the primary id keeps its title and status."""
    context_id = stores.contexts().auto_save(
        body.state, body.history, body.ai_config, body.summary_state,
    )
    if context_id is None:
        raise HTTPException(500, "Autosave failed")
    return {"id": context_id}


@router.post("/snapshot")
async def snapshot(body: SaveContextBody):
    """Write an immutable snapshot under a fresh id."""
    try:
        context_id = stores.contexts().save_progress(
            body.state, body.history, body.ai_config,
            title=body.title, create_snapshot=True,
            summary_state=body.summary_state,
        )
    except SnapshotImmutableError as e:
        raise HTTPException(409, str(e))
    return {"id": context_id}


@router.post("/import")
async def import_context(request: Request):
    """Import an exported context; it always gets a fresh id."""
    try:
        context_id = stores.contexts().import_context(await request.body())
    except ContextImportError as e:
        raise HTTPException(400, str(e))
    return {"id": context_id}


@router.post("/cleanup")
async def cleanup(keep_auto_saves: int | None = None):
    """Fold duplicate and legacy records; optionally prune old autosaves."""
    store = stores.contexts()
    result = {"changes": store.cleanup_duplicates()}
    if keep_auto_saves is not None:
        result["pruned"] = store.prune_auto_saves(keep_auto_saves)
    return result


@router.get("/{context_id}")
async def get_context(context_id: str):
    """Load a saved context (updates its last play time)."""
    try:
        context = stores.contexts().load(context_id)
    except VersionMismatchError as e:
        raise HTTPException(409, str(e))
    if context is None:
        raise HTTPException(404, "Context not found")
    return context.dump()


@router.patch("/{context_id}")
async def rename_context(context_id: str, body: RenameContext):
    """Rename a saved context."""
    context = stores.contexts().rename(context_id, body.title)
    if context is None:
        raise HTTPException(404, "Context not found")
    return context.dump()


@router.delete("/{context_id}")
async def delete_context(context_id: str):
    """Delete a saved context."""
    if not stores.contexts().delete(context_id):
        raise HTTPException(404, "Context not found")
    return {"ok": True}


@router.get("/{context_id}/export")
async def export_context(context_id: str):
    """Download a saved context as a pretty-printed JSON file."""
    try:
        data = stores.contexts().export(context_id)
    except VersionMismatchError as e:
        raise HTTPException(409, str(e))
    if data is None:
        raise HTTPException(404, "Context not found")
    return Response(
        content=data,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{context_id}.json"'},
    )
