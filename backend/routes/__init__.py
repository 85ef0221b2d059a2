"""FastAPI API endpoints under /api.

Endpoint groups:
  stories  : initial, next, choices, should-end, ending,
             continue, summary, character, turn
  contexts : saved contexts, CRUD, autosave, snapshot, import/export,
             cleanup
  settings : health, app settings
"""

from fastapi import APIRouter

from .contexts import router as contexts_router
from .settings import router as settings_router
from .stories import router as stories_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(stories_router)
router.include_router(contexts_router)
