# src/pharmacy_webapp/main.py

import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, status
from fastapi.responses import FileResponse, PlainTextResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import Scope

from .config import settings
from .logging_utils import configure_logging

logger = logging.getLogger(__name__)


class BundleStaticFiles(StaticFiles):
    """
    Static files from the build output. A path with no matching file gets
    ``index.html`` so the client-side router can resolve it.
    """

    async def get_response(self, path: str, scope: Scope) -> Response:
        try:
            response = await super().get_response(path, scope)
        except StarletteHTTPException as e:
            if e.status_code != status.HTTP_404_NOT_FOUND:
                raise
            return self.index_response()
        if response.status_code == status.HTTP_404_NOT_FOUND:
            return self.index_response()
        return response

    def index_response(self) -> Response:
        index_path = Path(self.directory) / "index.html"
        if not index_path.is_file():
            logger.error("index.html not found at %s", index_path)
            return PlainTextResponse("index.html not found", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
        return FileResponse(index_path, media_type="text/html")


def create_app(dist_dir: Optional[Path] = None, port: Optional[int] = None) -> FastAPI:
    """
    Serves the pre-built single-page bundle from ``dist_dir``. Unknown paths
    get ``index.html`` so the client-side router can resolve them.
    """
    dist_path = Path(dist_dir or settings.DIST_DIR).resolve()
    port = port if port is not None else settings.PORT

    app = FastAPI(
        title="Pharmacy Admin Web",
        description="Static server for the pharmacy admin dashboard bundle.",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.dist_path = dist_path
    app.state.started_at = time.monotonic()

    # --- Health check ---
    @app.get("/health")
    async def health():
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": time.monotonic() - app.state.started_at,
            "port": port,
        }

    # --- Bundle + client-side router fallback ---
    # Mounted last so /health keeps priority; dist may not exist until the frontend is built
    app.mount("/", BundleStaticFiles(directory=dist_path, check_dir=False), name="bundle")

    @app.on_event("startup")
    async def startup_event():
        logger.info("--- Pharmacy Admin Web Starting Up ---")
        logger.info("Serving from: %s", dist_path)
        logger.info("Health check: http://0.0.0.0:%s/health", port)

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the bundle, or exit 1 if it was never built."""
    configure_logging()
    logger.info("PORT: %s", settings.PORT)

    dist_path = Path(settings.DIST_DIR)
    if not dist_path.exists():
        logger.error("dist folder not found at %s", dist_path)
        logger.error("Make sure the frontend build completed successfully")
        sys.exit(1)

    uvicorn.run(create_app(dist_path, settings.PORT), host="0.0.0.0", port=settings.PORT)


if __name__ == "__main__":
    run()
