"""Storyloom launcher. Serves the story API with uvicorn."""

import argparse
import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
BACKEND_PORT = int(os.getenv("BACKEND_PORT", "13013"))


def main():
    parser = argparse.ArgumentParser(description="Storyloom story server")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=BACKEND_PORT)
    parser.add_argument("--log-level", default="info",
                        choices=["debug", "info", "warning", "error"])
    parser.add_argument("--reload", action="store_true",
                        help="Restart the server when source files change")
    parser.add_argument("--cleanup", action="store_true",
                        help="Fold duplicate saved contexts, then exit")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # The app module reads DATA_DIR when uvicorn imports it
    if args.data_dir:
        os.environ["DATA_DIR"] = str(args.data_dir.resolve())

    if args.cleanup:
        from backend import stores
        stores.init_storage(args.data_dir or ROOT / "data")
        changes = stores.contexts().cleanup_duplicates()
        print(f"Cleanup finished: {changes} change(s)")
        return

    print(f"Starting backend on http://localhost:{args.port} ...")
    uvicorn.run(
        "backend.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
