import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend import stores
from backend.routes import router
from storyloom.storage import StorageError

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("Storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def create_app(data_dir: Path | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    stores.init_storage(resolved)

    app = FastAPI(title="Storyloom")
    app.include_router(router, prefix="/api")
    app.add_exception_handler(StorageError, _storage_error)
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
