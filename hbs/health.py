"""Liveness and readiness probes."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from threading import Thread

import uvicorn
from fastapi import FastAPI, HTTPException

from . import __version__

log = logging.getLogger(__name__)


def create_app(is_ready: Callable[[], bool]) -> FastAPI:
    app = FastAPI(title="HAProxy Backend Sync", version=__version__)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/readyz")
    def readyz() -> dict[str, str]:
        """Ready once the mirror has synced and workers are running."""
        if not is_ready():
            raise HTTPException(status_code=503, detail="not ready")
        return {"status": "ok"}

    return app


class HealthServer:
    """Runs the probe app with uvicorn on a daemon thread."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 8080):
        self.config = uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
        self.server = uvicorn.Server(self.config)
        self.thread = Thread(target=self._serve, name="health", daemon=True)

    def start(self, timeout: float = 5.0) -> bool:
        """Start serving; False (and an error log) if uvicorn did not come up."""
        self.thread.start()
        deadline = time.monotonic() + timeout
        while not self.server.started and self.thread.is_alive() and time.monotonic() < deadline:
            time.sleep(0.05)
        if not self.server.started:
            log.error(
                "Health server failed to start on %s:%d; probes are unavailable",
                self.config.host, self.config.port,
            )
            return False
        log.info("Health server listening on %s:%d", self.config.host, self.config.port)
        return True

    def _serve(self) -> None:
        try:
            self.server.run()
        except SystemExit as e:
            # uvicorn calls sys.exit when it cannot bind; start() reports it.
            log.debug("Health server exited with %s", e.code)

    def stop(self) -> None:
        self.server.should_exit = True
        self.thread.join(timeout=5)
