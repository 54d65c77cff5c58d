"""
API service entrypoint.
Runs the FastAPI application under uvicorn. PORT, when set by the platform,
overrides LT_API_PORT.
"""
from __future__ import annotations

import os

import uvicorn

from shared.config import get_settings


def main() -> None:
    settings = get_settings()
    port = int(os.environ.get("PORT", settings.api_port))

    # One worker per process: WebSocket connections and the fan-out listener are per-process.
    uvicorn.run(
        "api.app:app",
        host=settings.api_host,
        port=port,
        workers=1,
        log_level=settings.log_level.lower(),
        access_log=False,
        ws_ping_interval=settings.ws_heartbeat_interval_s,
        ws_ping_timeout=10.0,
        timeout_keep_alive=30,
    )


if __name__ == "__main__":
    main()
