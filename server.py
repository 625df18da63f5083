#!/usr/bin/env python3
"""Server entrypoint for the engine's HTTP API.

Environment: HOST, PORT, WORKERS, RELOAD, LOG_LEVEL. The batch scheduler
lives inside the app process, so more than one worker means more than one
scheduler; keep WORKERS=1 unless scheduler_enabled is off.
"""

import logging
import os

import uvicorn

logger = logging.getLogger(__name__)


def _as_bool(value: str, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def server_options(environ=os.environ) -> dict:
    workers = int(environ.get("WORKERS", "1"))
    reload = _as_bool(environ.get("RELOAD"), default=False)
    if reload and workers > 1:
        workers = 1
    if workers > 1:
        logger.warning(f"Running {workers} workers; each one starts its own batch scheduler")
    return {
        "host": environ.get("HOST", "0.0.0.0"),
        "port": int(environ.get("PORT", "8000")),
        "workers": workers,
        "reload": reload,
        "log_level": environ.get("LOG_LEVEL", "info"),
    }


def main():
    uvicorn.run("app:app", **server_options())


if __name__ == "__main__":
    main()
