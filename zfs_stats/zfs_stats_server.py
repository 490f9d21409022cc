#!/usr/bin/env python3
"""ZFS Stats Server (FastAPI).

Serves the aggregated `zfs list` view to the web UI.
- GET /api/zfs runs one `zfs list -t all -j` per request (no caching)
- Static UI assets with single-page-app fallback
- Live log stream over WebSocket, plus a recent-lines endpoint
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import datetime as dt
import logging
import mimetypes
import os
import tempfile
import threading
from collections import deque
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

try:
    from zfs_stats.zfs_stats_engine import (
        APP_NAME,
        DEFAULT_ZFS_BIN,
        ZfsStatsError,
        env_timeout,
        get_zfs_stats,
        now_utc_iso,
        parse_log_level,
        pool_summary,
    )
    from zfs_stats.zfs_stats_models import to_wire
except ModuleNotFoundError:
    from zfs_stats_engine import (
        APP_NAME,
        DEFAULT_ZFS_BIN,
        ZfsStatsError,
        env_timeout,
        get_zfs_stats,
        now_utc_iso,
        parse_log_level,
        pool_summary,
    )
    from zfs_stats_models import to_wire


# ------------------------------ Log Stream ---------------------------------- #


class LogBroadcaster(logging.Handler):
    """Keeps recent log lines and fans new ones out to WebSocket subscribers."""

    def __init__(self, backlog_size: int = 500, queue_size: int = 200):
        super().__init__()
        self._backlog: deque[dict[str, Any]] = deque(maxlen=backlog_size)
        self._subs: dict[asyncio.Queue, asyncio.AbstractEventLoop] = {}
        self._queue_size = queue_size
        self._lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "event": "log",
                "timestamp": dt.datetime.fromtimestamp(record.created, dt.timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
                "line": self.format(record),
            }
            with self._lock:
                self._backlog.append(entry)
                subs = list(self._subs.items())

            for q, loop in subs:
                if loop.is_closed():
                    continue
                loop.call_soon_threadsafe(_queue_put_nowait_safe, q, entry)
        except Exception:  # pylint: disable=broad-except
            self.handleError(record)

    def backlog(self, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            entries = list(self._backlog)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def subscribe(self) -> tuple[asyncio.Queue, list[dict[str, Any]]]:
        """Register a queue and return it with the backlog at that instant.

        Records already in the backlog are never queued as well, and nothing
        logged after the snapshot is missed.
        """
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        with self._lock:
            self._subs[q] = asyncio.get_running_loop()
            backlog = list(self._backlog)
        return q, backlog

    def unsubscribe(self, q: asyncio.Queue) -> None:
        with self._lock:
            self._subs.pop(q, None)


def _queue_put_nowait_safe(q: asyncio.Queue, payload: dict[str, Any]) -> None:
    try:
        q.put_nowait(payload)
    except asyncio.QueueFull:
        with contextlib.suppress(asyncio.QueueEmpty):
            _ = q.get_nowait()
        with contextlib.suppress(asyncio.QueueFull):
            q.put_nowait(payload)


BROADCASTER = LogBroadcaster()


# ------------------------------- Logging ------------------------------------ #


def configure_logging(log_file: Path, level: int = logging.INFO) -> logging.Logger:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        log_file = Path(tempfile.gettempdir()) / APP_NAME / "server.log"
        log_file.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(APP_NAME)
    if BROADCASTER in logger.handlers:
        return logger
    logger.setLevel(level)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)

    BROADCASTER.setFormatter(formatter)
    logger.addHandler(BROADCASTER)
    return logger


LOG_FILE = Path(os.getenv("ZFS_STATS_LOG_FILE", str(Path(tempfile.gettempdir()) / APP_NAME / "server.log")))
LOGGER = configure_logging(LOG_FILE, parse_log_level(os.getenv("ZFS_STATS_LOG_LEVEL", "info")))

DIST_DIR = Path(os.getenv("ZFS_STATS_DIST_DIR", str(Path(__file__).resolve().parent / "dist")))
ZFS_BIN = DEFAULT_ZFS_BIN
COMMAND_TIMEOUT = env_timeout()
INPUT_FILE = os.getenv("ZFS_STATS_INPUT_FILE") or None
CACHE_CONTROL = "public, max-age=3600"


# ---------------------------- Response Helpers ------------------------------ #


def api_ok(data: Any, *, meta: dict[str, Any] | None = None, warnings: list[str] | None = None) -> JSONResponse:
    body = {
        "status": "ok",
        "timestamp": now_utc_iso(),
        "meta": meta or {},
        "warnings": warnings or [],
        "data": data,
    }
    return JSONResponse(body)


def api_error(code: str, message: str, status_code: int = 400, details: dict[str, Any] | None = None) -> JSONResponse:
    body = {
        "status": "error",
        "timestamp": now_utc_iso(),
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
    }
    return JSONResponse(body, status_code=status_code)


def zfs_error_response(exc: ZfsStatsError) -> JSONResponse:
    details: dict[str, Any] = {}
    returncode = getattr(exc, "returncode", None)
    if returncode is not None:
        details["returncode"] = returncode
    return api_error(exc.code, str(exc), status_code=500, details=details)


# ------------------------------ Static Assets ------------------------------- #


def embed_file(path: str) -> FileResponse | None:
    try:
        root = DIST_DIR.resolve()
        candidate = (root / path).resolve()
        if not candidate.is_relative_to(root) or not candidate.is_file():
            return None
    except (OSError, ValueError):
        return None
    media_type = mimetypes.guess_type(candidate.name)[0] or "application/octet-stream"
    return FileResponse(candidate, media_type=media_type, headers={"Cache-Control": CACHE_CONTROL})


def index_response() -> FileResponse | JSONResponse:
    resp = embed_file("index.html")
    if resp is None:
        return api_error(
            "UI_NOT_BUILT",
            f"index.html not found in {DIST_DIR}; build the UI into that directory first",
            status_code=404,
        )
    return resp


# ------------------------------- Application -------------------------------- #


app = FastAPI(
    title="ZFS Stats Server",
    version="1.0.0",
    description="Pools, filesystems, snapshots and bookmarks from `zfs list`.",
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost",
        "http://127.0.0.1",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "*",  # local UI dev servers
    ],
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    LOGGER.exception("Unhandled server error: %s", exc)
    return api_error("INTERNAL_SERVER_ERROR", str(exc), status_code=500)


# -------------------------------- ZFS APIs ---------------------------------- #


async def fetch_stats():
    source = Path(INPUT_FILE) if INPUT_FILE else None
    return await run_in_threadpool(get_zfs_stats, source, ZFS_BIN, COMMAND_TIMEOUT, LOGGER)


@app.get("/api/zfs", summary="Aggregated ZFS stats")
async def get_zfs_stats_handler():
    try:
        stats = await fetch_stats()
    except ZfsStatsError as exc:
        LOGGER.error("ZFS error: %s", exc)
        return zfs_error_response(exc)
    return JSONResponse(to_wire(stats))


@app.get("/api/zfs/pools/{pool}", summary="Filesystems of one pool with usage percentages")
async def get_pool_summary(pool: str):
    try:
        stats = await fetch_stats()
    except ZfsStatsError as exc:
        LOGGER.error("ZFS error: %s", exc)
        return zfs_error_response(exc)
    try:
        summary = pool_summary(stats, pool)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Pool not found: {pool}")
    return api_ok(summary)


# -------------------------------- Log APIs ---------------------------------- #


@app.get("/api/logs", summary="Recent log lines")
async def recent_logs(limit: int = 200):
    return api_ok({"entries": BROADCASTER.backlog(limit)})


@app.post("/api/logs/test", summary="Emit one log line per level")
async def emit_test_logs():
    levels = [logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL]
    for level in levels:
        name = logging.getLevelName(level)
        LOGGER.log(level, "%s: example %s message", name.capitalize(), name.lower())
    return api_ok({"emitted": [logging.getLevelName(level) for level in levels if LOGGER.isEnabledFor(level)]})


@app.websocket("/api/ws/logs")
async def ws_logs(websocket: WebSocket):
    await websocket.accept()
    q, backlog = BROADCASTER.subscribe()
    sender: asyncio.Task | None = None
    try:
        await websocket.send_json({"event": "connected"})
        for entry in backlog:
            await websocket.send_json(entry)
        sender = asyncio.create_task(_forward_logs(websocket, q))
        # Inbound frames are ignored; receiving only detects the disconnect.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        BROADCASTER.unsubscribe(q)
        if sender is not None:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sender


async def _forward_logs(websocket: WebSocket, q: asyncio.Queue) -> None:
    with contextlib.suppress(WebSocketDisconnect, RuntimeError):
        while True:
            payload = await q.get()
            await websocket.send_json(payload)


# ------------------------------ Health & Root ------------------------------- #


@app.get("/healthz", summary="Liveness endpoint")
async def healthz():
    return api_ok({"service": "zfs-stats-server", "healthy": True})


@app.get("/", summary="UI index", include_in_schema=False)
async def index_handler():
    return index_response()


@app.get("/{path:path}", include_in_schema=False)
async def static_handler(path: str):
    resp = embed_file(path)
    if resp is not None:
        return resp
    if path.endswith("/"):
        resp = embed_file(f"{path}index.html")
        if resp is not None:
            return resp
    return index_response()


# --------------------------------- Runner ---------------------------------- #


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run ZFS Stats FastAPI server")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")))
    parser.add_argument("--reload", action="store_true")
    parser.add_argument("--log-level", default=os.getenv("ZFS_STATS_LOG_LEVEL", "info"))
    return parser.parse_args()


def main() -> None:
    import uvicorn

    args = parse_args()
    LOGGER.setLevel(parse_log_level(args.log_level))
    LOGGER.info("Starting server at http://%s:%s", args.host, args.port)
    uvicorn.run(
        "zfs_stats.zfs_stats_server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
