"""FastAPI backend for the YouTube stream downloader.

This service exposes:
- GET /api/info     : returns metadata and the downloadable qualities for a URL
- GET /api/download : streams an MP4 at the requested quality
- GET /api/audio    : streams an MP3 of the audio track
- GET /health       : liveness document

yt-dlp runs as a subprocess writing media bytes to stdout; the bytes are
forwarded to the client as they arrive, nothing is written to disk.

Run with:
    uvicorn server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import sys
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, Dict, List, Optional

import yt_dlp.version
from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles

from errors import ClientAborted, DownloaderError
from extractor import Extractor
from media import FormatSelection, MediaLocator, build_filename, content_disposition, select_format, validate_locator
from pipeline import SessionRegistry, SessionStreamingResponse, wait_for_disconnect

APP_NAME = "YouTube Stream Downloader API"
APP_VERSION = "1.0.0"


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    try:
        return max(float(os.getenv(name, "") or default), minimum)
    except ValueError:
        return default


def _default_command() -> List[str]:
    configured = os.getenv("YTDLP_COMMAND")
    if configured:
        return shlex.split(configured)
    executable = shutil.which("yt-dlp")
    if executable:
        return [executable]
    return [sys.executable, "-m", "yt_dlp"]


LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()
YTDLP_COMMAND = _default_command()
METADATA_TIMEOUT = _env_float("METADATA_TIMEOUT", 30.0, minimum=1.0)
TITLE_TIMEOUT = _env_float("TITLE_TIMEOUT", 15.0, minimum=1.0)
CHUNK_SIZE = int(_env_float("STREAM_CHUNK_SIZE", 1024 * 256, minimum=1024))
SHUTDOWN_GRACE = _env_float("SHUTDOWN_GRACE", 10.0)
STATIC_DIR = os.getenv("STATIC_DIR")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000") or "8000")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger("server")

registry = SessionRegistry()
extractor = Extractor(
    YTDLP_COMMAND,
    metadata_timeout=METADATA_TIMEOUT,
    title_timeout=TITLE_TIMEOUT,
    chunk_size=CHUNK_SIZE,
    registry=registry,
)


def get_extractor() -> Extractor:
    return extractor


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Startup: yt-dlp command=%s version=%s", " ".join(YTDLP_COMMAND), yt_dlp.version.__version__)
    if not shutil.which("ffmpeg"):
        logger.warning("Startup: ffmpeg not found on PATH; merging and MP3 extraction will fail")
    try:
        yield
    finally:
        await registry.shutdown(SHUTDOWN_GRACE)


app = FastAPI(title=APP_NAME, version=APP_VERSION, lifespan=lifespan)

# Allow the frontend to connect from any origin and read the attachment filename
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "HEAD", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)


@app.exception_handler(DownloaderError)
async def downloader_error_handler(request: Request, exc: DownloaderError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "details": str(exc)})


@app.get("/")
async def root() -> Dict[str, Any]:
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "endpoints": {
            "GET /api/info?url=URL": "Get video information",
            "GET /api/download?url=URL&quality=720": "Download video (2160/1440/1080/720/360/144)",
            "GET /api/audio?url=URL": "Download MP3 audio",
            "GET /health": "Health check",
        },
    }


@app.get("/health")
async def healthcheck(extractor: Extractor = Depends(get_extractor)) -> Dict[str, Any]:
    """Return liveness plus tool versions and the number of streams in flight."""
    return {
        "status": "healthy",
        "message": f"{APP_NAME} is running",
        "yt_dlp": yt_dlp.version.__version__,
        "ffmpeg": shutil.which("ffmpeg") or "missing",
        "active_downloads": len(extractor.registry),
    }


@app.get("/api/info")
async def fetch_info(
    url: Optional[str] = Query(None, description="YouTube video URL"),
    extractor: Extractor = Depends(get_extractor),
) -> Dict[str, Any]:
    """Return title, channel, duration and the qualities actually available for the URL."""
    locator = validate_locator(url)
    metadata = await extractor.fetch_metadata(locator)
    return metadata.to_dict()


async def stream_media(
    request: Request,
    extractor: Extractor,
    locator: MediaLocator,
    selection: FormatSelection,
    label: str,
) -> Response:
    """
    Start yt-dlp and hand its stdout to the client.

    - The title lookup runs first and only affects the filename
    - The response is built only after the first chunk arrives, so an early
      yt-dlp failure is still reported as JSON
    """
    title = await extractor.fetch_title(locator)
    filename = build_filename(title, selection)
    session = await extractor.open_stream(locator, selection, filename, label=label)
    try:
        await session.prime(disconnected=partial(wait_for_disconnect, request.receive))
    except ClientAborted:
        return Response(status_code=ClientAborted.status_code)

    return SessionStreamingResponse(
        session,
        media_type=selection.mime_type,
        headers={"Content-Disposition": content_disposition(filename)},
    )


@app.get("/api/download")
async def download_video(
    request: Request,
    url: Optional[str] = Query(None, description="YouTube video URL"),
    quality: str = Query("720", description="Target height: 2160, 1440, 1080, 720, 360 or 144"),
    extractor: Extractor = Depends(get_extractor),
) -> Response:
    locator = validate_locator(url)
    selection = select_format(quality)
    return await stream_media(request, extractor, locator, selection, label="Download")


@app.get("/api/audio")
async def download_audio(
    request: Request,
    url: Optional[str] = Query(None, description="YouTube video URL"),
    extractor: Extractor = Depends(get_extractor),
) -> Response:
    locator = validate_locator(url)
    selection = select_format(is_audio=True)
    return await stream_media(request, extractor, locator, selection, label="Audio download")


if STATIC_DIR and os.path.isdir(STATIC_DIR):
    app.mount("/", StaticFiles(directory=STATIC_DIR, html=True), name="static")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("server:app", host=HOST, port=PORT, reload=False, timeout_graceful_shutdown=int(SHUTDOWN_GRACE) or None)
